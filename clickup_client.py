"""
ClickUp Integration Module
Creates and updates ClickUp tasks, locates the list a new task belongs in,
and resolves workspace members. This is the target-system side of the sync.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)


class ClickUpError(Exception):
    """ClickUp API call failed after retries"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ClickUpClient:
    """ClickUp v2 API client"""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize ClickUp client with configuration

        Args:
            config: Configuration dictionary with api_token, workspace_id and
                optional base_url, timeout, max_retries
        """
        self.api_token = config.get("api_token", "")
        self.workspace_id = config.get("workspace_id")
        self.base_url = config.get("base_url", "https://api.clickup.com/api/v2").rstrip("/")
        self.timeout = config.get("timeout", 30)
        self.max_retries = config.get("max_retries", 5)
        self.session = requests.Session()
        # Personal tokens are sent without a scheme
        self.session.headers.update({
            "Authorization": self.api_token,
            "Content-Type": "application/json",
        })
        if not self.api_token:
            logger.warning("ClickUp client initialized without API token")

    def _request_with_retry(self, method: str, path: str, **kwargs) -> requests.Response:
        """Make request, retrying rate limits, server errors and network failures"""
        backoff_factor = 1.5

        for attempt in range(self.max_retries):
            last_attempt = attempt == self.max_retries - 1
            try:
                response = self.session.request(method, f"{self.base_url}{path}",
                                                timeout=self.timeout, **kwargs)
            except requests.exceptions.RequestException as e:
                logger.error(f"ClickUp request failed (attempt {attempt + 1}/{self.max_retries}): {e}")
                if last_attempt:
                    raise ClickUpError(f"ClickUp {method} {path} failed: {e}") from e
                time.sleep(min(backoff_factor ** attempt, 15))
                continue

            if response.status_code == 429 and not last_attempt:
                reset = response.headers.get("X-RateLimit-Reset")
                if reset and reset.isdigit():
                    wait_time = max(0.0, min(int(reset) - time.time(), 60))
                else:
                    wait_time = min(backoff_factor ** attempt, 30)
                logger.warning(f"ClickUp rate limited. Waiting {wait_time:.1f} seconds "
                               f"(attempt {attempt + 1}/{self.max_retries})...")
                time.sleep(wait_time)
                continue

            if response.status_code >= 500 and not last_attempt:
                logger.warning(f"ClickUp error {response.status_code}, retrying: {response.text}")
                time.sleep(min(backoff_factor ** attempt, 15))
                continue

            if response.status_code >= 400:
                if response.status_code != 404:
                    logger.error(f"ClickUp error {response.status_code}: {response.text}")
                raise ClickUpError(f"ClickUp {method} {path} returned {response.status_code}",
                                   status_code=response.status_code)

            return response

        raise ClickUpError(f"ClickUp {method} {path}: max retries exceeded")

    # ==================== TASKS ====================

    def create_task(self, list_id: str, task_data: Dict[str, Any]) -> str:
        """Create a task in list_id and return its id"""
        body = {k: v for k, v in task_data.items() if v is not None}
        if isinstance(body.get("description"), dict):
            body["description"] = json.dumps(body["description"])
        response = self._request_with_retry("POST", f"/list/{list_id}/task", json=body)
        task_id = response.json().get("id")
        if not task_id:
            raise ClickUpError(f"ClickUp create task in list {list_id} returned no id")
        logger.info(f"✓ Created ClickUp task {task_id} in list {list_id}")
        return str(task_id)

    def update_task_field(self, task_id: str, property_name: str, value: Any) -> Dict[str, Any]:
        """PUT a single task property"""
        if isinstance(value, dict) and property_name == "description":
            value = json.dumps(value)
        response = self._request_with_retry("PUT", f"/task/{task_id}", json={property_name: value})
        logger.info(f"✓ ClickUp task {task_id} updated: {property_name}")
        return response.json()

    def set_custom_field(self, task_id: str, field_id: str, value: Any) -> None:
        self._request_with_retry("POST", f"/task/{task_id}/field/{field_id}", json={"value": value})

    # ==================== PLACEMENT ====================

    def _get_or_none(self, path: str) -> Optional[Dict[str, Any]]:
        """GET path; None when ClickUp answers 404"""
        try:
            return self._request_with_retry("GET", path).json()
        except ClickUpError as e:
            if e.status_code == 404:
                return None
            raise

    def find_space_by_company_name(self, company_name: str) -> Optional[Dict[str, Any]]:
        """First space, across all teams, whose name contains company_name"""
        if not company_name:
            return None
        wanted = company_name.lower()
        teams = (self._get_or_none("/team") or {}).get("teams", [])
        for team in teams:
            spaces = (self._get_or_none(f"/team/{team['id']}/space") or {}).get("spaces", [])
            for space in spaces:
                if wanted in (space.get("name") or "").lower():
                    return space
        return None

    def find_list_in_space(self, space_id: str, keyword: str) -> Optional[Dict[str, Any]]:
        """First list whose name contains keyword; foldered lists are searched first"""
        wanted = keyword.lower()

        folders = (self._get_or_none(f"/space/{space_id}/folder") or {}).get("folders", [])
        for folder in folders:
            lists = (self._get_or_none(f"/folder/{folder['id']}/list") or {}).get("lists", [])
            for lst in lists:
                if wanted in (lst.get("name") or "").lower():
                    return lst

        lists = (self._get_or_none(f"/space/{space_id}/list") or {}).get("lists", [])
        for lst in lists:
            if wanted in (lst.get("name") or "").lower():
                return lst
        return None

    # ==================== MEMBERS ====================

    def list_members(self) -> List[Dict[str, Any]]:
        if not self.workspace_id:
            logger.warning("ClickUp workspace_id not configured; member lookups disabled")
            return []
        data = self._request_with_retry("GET", f"/team/{self.workspace_id}").json()
        return [m.get("user") or {} for m in (data.get("team") or {}).get("members", [])]

    def resolve_directory_id_by_email(self, email: str) -> Optional[int]:
        """Email -> ClickUp user id"""
        wanted = email.strip().lower()
        for user in self.list_members():
            if (user.get("email") or "").lower() == wanted:
                return user.get("id")
        return None

