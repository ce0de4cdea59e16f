"""
HubSpot Integration Module
Reads tickets, tasks, companies, owners and property history, and writes
single properties back. This is the source-system side of the sync.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import requests

from field_mapper import to_epoch_ms

logger = logging.getLogger(__name__)

OBJECT_PATHS = {
    "ticket": "tickets",
    "task": "tasks",
}

# HubSpot object type ids used in record URLs and webhooks
OBJECT_TYPE_IDS = {
    "ticket": "0-5",
    "task": "0-27",
}

TICKET_PROPERTIES = [
    "subject",
    "content",
    "closed_date",
    "hubspot_owner_id",
    "hs_ticket_priority",
    "hs_pipeline_stage",
]

TASK_PROPERTIES = [
    "hs_task_subject",
    "hs_task_body",
    "hs_timestamp",
    "hubspot_owner_id",
    "hs_task_priority",
    "hs_task_status",
]


class HubSpotError(Exception):
    """HubSpot API call failed after retries"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class HubSpotClient:
    """HubSpot CRM v3 client with retry, backoff and throttling"""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize HubSpot client with configuration

        Args:
            config: Configuration dictionary with access_token and optional
                portal_id, base_url, timeout, max_retries, throttle_seconds
        """
        self.access_token = config.get("access_token", "")
        self.portal_id = config.get("portal_id")
        self.base_url = config.get("base_url", "https://api.hubapi.com").rstrip("/")
        self.timeout = config.get("timeout", 30)
        self.max_retries = config.get("max_retries", 5)
        self.throttle_seconds = config.get("throttle_seconds", 0.15)
        self.session = requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        if self.access_token:
            self.session.headers["Authorization"] = f"Bearer {self.access_token}"
        else:
            logger.warning("HubSpot client initialized without API credentials")

    def _request_with_retry(self, method: str, path: str, **kwargs) -> requests.Response:
        """Make request with exponential backoff on 429/5xx and network errors"""
        backoff_factor = 1.5

        # HubSpot allows ~100 requests per 10 seconds
        if self.throttle_seconds:
            time.sleep(self.throttle_seconds)

        for attempt in range(self.max_retries):
            last_attempt = attempt == self.max_retries - 1
            try:
                response = self.session.request(method, f"{self.base_url}{path}",
                                                timeout=self.timeout, **kwargs)
            except requests.exceptions.RequestException as e:
                logger.error(f"HubSpot request failed (attempt {attempt + 1}/{self.max_retries}): {e}")
                if last_attempt:
                    raise HubSpotError(f"HubSpot {method} {path} failed: {e}") from e
                time.sleep(min(backoff_factor ** attempt, 15))
                continue

            if response.status_code == 429 and not last_attempt:
                retry_after = response.headers.get("Retry-After")
                wait_time = float(retry_after) if retry_after else min(backoff_factor ** attempt, 30)
                logger.warning(f"HubSpot rate limited. Waiting {wait_time:.1f} seconds "
                               f"(attempt {attempt + 1}/{self.max_retries})...")
                time.sleep(wait_time)
                continue

            if response.status_code >= 500 and not last_attempt:
                logger.warning(f"HubSpot error {response.status_code}, retrying: {response.text}")
                time.sleep(min(backoff_factor ** attempt, 15))
                continue

            if response.status_code >= 400:
                # 404 is an expected answer for lookups; callers decide
                if response.status_code != 404:
                    logger.error(f"HubSpot error {response.status_code}: {response.text}")
                raise HubSpotError(f"HubSpot {method} {path} returned {response.status_code}",
                                   status_code=response.status_code)

            return response

        raise HubSpotError(f"HubSpot {method} {path}: max retries exceeded")

    # ==================== OBJECTS ====================

    def get_object(self, object_type: str, object_id: str, properties: List[str],
                   associations: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        """Fetch a CRM object; None if it does not exist"""
        params: Dict[str, Any] = {"properties": ",".join(properties)}
        if associations:
            params["associations"] = ",".join(associations)
        try:
            response = self._request_with_retry(
                "GET", f"/crm/v3/objects/{OBJECT_PATHS.get(object_type, object_type)}/{object_id}",
                params=params)
        except HubSpotError as e:
            if e.status_code == 404:
                logger.warning(f"HubSpot {object_type} {object_id} not found")
                return None
            raise
        return response.json()

    def get_source_object(self, object_type: str, object_id: str) -> Optional[Dict[str, Any]]:
        """Ticket or task with its sync properties and company associations"""
        properties = TICKET_PROPERTIES if object_type == "ticket" else TASK_PROPERTIES
        return self.get_object(object_type, object_id, properties, associations=["companies"])

    def get_company(self, company_id: str) -> Optional[Dict[str, Any]]:
        return self.get_object("companies", company_id, ["name", "domain"])

    def update_object_field(self, object_type: str, object_id: str, property_name: str, value: Any) -> Dict[str, Any]:
        """PATCH a single property on a ticket or task"""
        response = self._request_with_retry(
            "PATCH", f"/crm/v3/objects/{OBJECT_PATHS.get(object_type, object_type)}/{object_id}",
            json={"properties": {property_name: value}})
        logger.info(f"✓ HubSpot {object_type} {object_id} updated: {property_name} = {value}")
        return response.json()

    def fetch_property_history(self, object_type: str, object_id: str, property_name: str) -> List[Dict[str, Any]]:
        """
        Property history for one object, oldest first.

        Each entry carries at least ``timestamp`` and ``value``.
        """
        try:
            response = self._request_with_retry(
                "GET", f"/crm/v3/objects/{OBJECT_PATHS.get(object_type, object_type)}/{object_id}",
                params={"propertiesWithHistory": property_name, "archived": "false"})
        except HubSpotError as e:
            if e.status_code == 404:
                return []
            raise
        history = (response.json().get("propertiesWithHistory") or {}).get(property_name) or []
        return sorted(history, key=lambda entry: to_epoch_ms(entry.get("timestamp")) or 0)

    def record_url(self, object_type: str, object_id: str) -> Optional[str]:
        """Link to the record in the HubSpot UI"""
        if not self.portal_id:
            return None
        type_id = OBJECT_TYPE_IDS.get(object_type, object_type)
        return f"https://app.hubspot.com/contacts/{self.portal_id}/record/{type_id}/{object_id}"

    # ==================== OWNERS ====================

    def list_owners(self) -> List[Dict[str, Any]]:
        owners: List[Dict[str, Any]] = []
        after = None
        while True:
            params: Dict[str, Any] = {"limit": 500}
            if after:
                params["after"] = after
            data = self._request_with_retry("GET", "/crm/v3/owners", params=params).json()
            owners.extend(data.get("results", []))
            after = ((data.get("paging") or {}).get("next") or {}).get("after")
            if not after:
                return owners

    def resolve_email_by_directory_id(self, owner_id: str) -> Optional[str]:
        """HubSpot owner id -> email"""
        for owner in self.list_owners():
            if str(owner.get("id")) == str(owner_id):
                return owner.get("email")
        logger.warning(f"HubSpot owner with ID {owner_id} not found.")
        return None

    def resolve_directory_id_by_email(self, email: str) -> Optional[str]:
        """Email -> HubSpot owner id"""
        wanted = email.strip().lower()
        for owner in self.list_owners():
            if (owner.get("email") or "").lower() == wanted:
                return str(owner.get("id"))
        logger.warning(f"No HubSpot owner found for email: {email}")
        return None
