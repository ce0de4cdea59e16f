"""
HubSpot <-> ClickUp Field Mapping
Static property tables per HubSpot object type plus the value transforms
(status, priority, owner, due date, rich text) applied when a single field
crosses from one system to the other.

Every transform returns either a FieldChange ready to write or SKIP.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from dateutil import parser as dtparser

import content_translator

logger = logging.getLogger(__name__)


class ObjectType(str, Enum):
    """HubSpot object types that are mirrored as ClickUp tasks"""
    TICKET = "ticket"
    TASK = "task"


class _Skip:
    """Sentinel: the field must not be written"""

    def __repr__(self) -> str:
        return "SKIP"

    def __bool__(self) -> bool:
        return False


SKIP = _Skip()


@dataclass(frozen=True)
class FieldChange:
    """One property write on the receiving system"""
    property: str
    value: Any


MappedValue = Union[FieldChange, _Skip]

# ClickUp priority ordinals (1 = urgent ... 4 = low)
HUBSPOT_TO_CLICKUP_PRIORITY = {
    "URGENT": 1,
    "HIGH": 2,
    "MEDIUM": 3,
    "LOW": 4,
}

CLICKUP_PRIORITY_NAMES = {
    "1": "urgent",
    "2": "high",
    "3": "normal",
    "4": "low",
}


class ObjectTypeMapping(ABC):
    """Tables and status rules for one HubSpot object type"""

    object_type: ObjectType
    # HubSpot property -> ClickUp task property
    source_to_target: Dict[str, str]
    # ClickUp history field -> HubSpot property
    target_to_source: Dict[str, str]
    # ClickUp priority name -> HubSpot priority
    priority_to_source: Dict[str, str]

    @abstractmethod
    def status_to_target(self, raw: str) -> str:
        ...

    @abstractmethod
    def status_to_source(self, raw: str) -> str:
        ...


class TicketMapping(ObjectTypeMapping):
    object_type = ObjectType.TICKET
    source_to_target = {
        "subject": "name",
        "content": "description",
        "closed_date": "due_date",
        "hubspot_owner_id": "assignees",
        "hs_ticket_priority": "priority",
        "hs_pipeline_stage": "status",
    }
    target_to_source = {
        "name": "subject",
        "due_date": "closed_date",
        "assignees": "hubspot_owner_id",
        "priority": "hs_ticket_priority",
        "status": "hs_pipeline_stage",
    }
    priority_to_source = {
        "urgent": "URGENT",
        "high": "HIGH",
        "normal": "MEDIUM",
        "low": "LOW",
    }

    def status_to_target(self, raw: str) -> str:
        # Pipeline stage ids: 1 = New, 4 = Closed
        if raw == "1":
            return "not started"
        if raw == "4":
            return "complete"
        return "in progress"

    def status_to_source(self, raw: str) -> str:
        return "4" if raw == "complete" else "1"


class TaskMapping(ObjectTypeMapping):
    object_type = ObjectType.TASK
    source_to_target = {
        "hs_task_subject": "name",
        "hs_task_body": "description",
        "hs_timestamp": "due_date",
        "hubspot_owner_id": "assignees",
        "hs_task_priority": "priority",
        "hs_task_status": "status",
    }
    target_to_source = {
        "name": "hs_task_subject",
        "content": "hs_task_body",
        "due_date": "hs_timestamp",
        "assignees": "hubspot_owner_id",
        "priority": "hs_task_priority",
        "status": "hs_task_status",
    }
    # HubSpot tasks have no URGENT level
    priority_to_source = {
        "urgent": "HIGH",
        "high": "HIGH",
        "normal": "MEDIUM",
        "low": "LOW",
    }

    def status_to_target(self, raw: str) -> str:
        return "complete" if raw.upper() == "COMPLETED" else "not started"

    def status_to_source(self, raw: str) -> str:
        return "COMPLETED" if raw == "complete" else "NOT_STARTED"


MAPPINGS: Dict[ObjectType, ObjectTypeMapping] = {
    ObjectType.TICKET: TicketMapping(),
    ObjectType.TASK: TaskMapping(),
}

if set(MAPPINGS) != set(ObjectType):
    raise RuntimeError("Every ObjectType needs an ObjectTypeMapping")


def _is_writable(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, (str, int, float)) or content_translator.is_delta(value)


def _decode(value: Any) -> Any:
    """JSON-decode object or array text and unwrap ClickUp {"value": ...} wrappers"""
    if isinstance(value, str) and value.strip().startswith(("{", "[")):
        try:
            value = json.loads(value)
        except ValueError:
            return value
    if isinstance(value, dict) and not content_translator.is_delta(value) and "value" in value:
        return value["value"]
    return value


def to_epoch_ms(raw: Any) -> Optional[int]:
    """Parse an ISO date or epoch-millisecond value; None when unparseable"""
    if raw is None or raw == "" or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return int(raw)
    text = str(raw).strip()
    if text.isdigit():
        return int(text)
    try:
        return int(dtparser.isoparse(text).timestamp() * 1000)
    except (ValueError, OverflowError):
        try:
            return int(dtparser.parse(text).timestamp() * 1000)
        except (ValueError, OverflowError):
            return None


class FieldMapper:
    """
    Translates single field changes between HubSpot and ClickUp.

    Args:
        source_directory: HubSpot owner directory (resolve_email_by_directory_id,
            resolve_directory_id_by_email)
        target_directory: ClickUp member directory (resolve_directory_id_by_email)
    """

    def __init__(self, source_directory=None, target_directory=None):
        self.source_directory = source_directory
        self.target_directory = target_directory

    # --- tables ---

    def mapping(self, object_type: ObjectType) -> ObjectTypeMapping:
        return MAPPINGS[ObjectType(object_type)]

    def source_properties(self, object_type: ObjectType) -> List[str]:
        return list(self.mapping(object_type).source_to_target)

    def target_property(self, object_type: ObjectType, source_property: str) -> Optional[str]:
        return self.mapping(object_type).source_to_target.get(source_property)

    def source_property(self, object_type: ObjectType, target_field: str) -> Optional[str]:
        return self.mapping(object_type).target_to_source.get(target_field)

    # --- value transforms ---

    def map_status_to_target(self, object_type: ObjectType, raw: Any) -> str:
        return self.mapping(object_type).status_to_target("" if raw is None else str(raw).strip())

    def map_status_to_source(self, object_type: ObjectType, raw: Any) -> str:
        return self.mapping(object_type).status_to_source("" if raw is None else str(raw).strip().lower())

    def map_priority_to_target(self, raw: Any) -> Optional[int]:
        if raw is None:
            return None
        return HUBSPOT_TO_CLICKUP_PRIORITY.get(str(raw).strip().upper())

    def map_priority_to_source(self, object_type: ObjectType, raw: Any) -> Optional[str]:
        if raw is None:
            return None
        name = str(raw).strip().lower()
        name = CLICKUP_PRIORITY_NAMES.get(name, name)
        return self.mapping(object_type).priority_to_source.get(name)

    def content_to_target(self, raw: Any) -> Any:
        """HubSpot body -> ClickUp description; deltas become the clip anchor or plain text"""
        if raw is None:
            return None
        if content_translator.is_delta(raw):
            html = content_translator.html_from_delta(raw)
            return html if html is not None else content_translator.to_plain_text(raw)
        return raw

    def content_to_source(self, raw: Any) -> str:
        """ClickUp content -> HubSpot body: clip call-to-action or plain text"""
        if isinstance(raw, dict) and not content_translator.is_delta(raw) and "value" in raw:
            raw = raw["value"]
        link = content_translator.extract_media_link(raw)
        if link:
            return content_translator.clip_text(link)
        return content_translator.to_plain_text(raw)

    def resolve_target_assignee(self, owner_id: Any) -> Optional[Any]:
        """HubSpot owner id -> email -> ClickUp member id"""
        if owner_id in (None, ""):
            return None
        if self.source_directory is None or self.target_directory is None:
            logger.warning("Directory lookups not configured; assignee change skipped")
            return None
        try:
            email = self.source_directory.resolve_email_by_directory_id(str(owner_id))
            if not email:
                logger.warning(f"No email found for HubSpot owner {owner_id}")
                return None
            user_id = self.target_directory.resolve_directory_id_by_email(email)
            if not user_id:
                logger.warning(f"No ClickUp member found for email {email}")
                return None
            return user_id
        except Exception as e:
            logger.warning(f"Assignee lookup failed for owner {owner_id}: {e}")
            return None

    def resolve_source_owner(self, email: Any) -> Optional[str]:
        """ClickUp member email -> HubSpot owner id"""
        if not email or not isinstance(email, str):
            return None
        if self.source_directory is None:
            logger.warning("HubSpot owner directory not configured; owner change skipped")
            return None
        try:
            owner_id = self.source_directory.resolve_directory_id_by_email(email)
        except Exception as e:
            logger.warning(f"Owner lookup failed for {email}: {e}")
            return None
        if not owner_id:
            logger.warning(f"Could not find HubSpot owner for email: {email}")
            return None
        return str(owner_id)

    # --- field level ---

    def to_target(self, object_type: ObjectType, source_property: str, value: Any) -> MappedValue:
        """Translate one HubSpot property value into a ClickUp task write"""
        object_type = ObjectType(object_type)
        target = self.target_property(object_type, source_property)
        if target is None:
            return SKIP

        if target == "status":
            mapped = self.map_status_to_target(object_type, value)
        elif target == "priority":
            mapped = self.map_priority_to_target(value)
        elif target == "due_date":
            mapped = to_epoch_ms(value)
        elif target == "assignees":
            user_id = self.resolve_target_assignee(value)
            mapped = {"add": [user_id]} if user_id else None
        elif target == "description":
            mapped = self.content_to_target(value)
        else:
            mapped = value if isinstance(value, str) and value.strip() else None

        if mapped is None:
            logger.warning(f"Skipping {object_type.value} field {source_property}: unmapped value {value!r}")
            return SKIP
        if target != "assignees" and not _is_writable(mapped):
            logger.warning(f"Skipping {object_type.value} field {source_property}: invalid value {mapped!r}")
            return SKIP
        return FieldChange(target, mapped)

    def to_source(self, object_type: ObjectType, target_field: str, after: Any) -> MappedValue:
        """Translate one ClickUp history item value into a HubSpot property write"""
        object_type = ObjectType(object_type)
        if target_field == "assignee_add":
            prop = self.source_property(object_type, "assignees")
            email = after.get("email") if isinstance(after, dict) else None
            owner_id = self.resolve_source_owner(email)
            if prop is None or owner_id is None:
                return SKIP
            return FieldChange(prop, owner_id)

        prop = self.source_property(object_type, target_field)
        if prop is None:
            return SKIP

        if target_field == "status":
            raw = after.get("status") if isinstance(after, dict) else after
            value = self.map_status_to_source(object_type, raw)
        elif target_field == "priority":
            raw = after.get("priority") if isinstance(after, dict) else after
            value = self.map_priority_to_source(object_type, raw)
        elif target_field == "content":
            value = self.content_to_source(after)
        elif target_field == "due_date":
            value = to_epoch_ms(_decode(after))
        else:
            value = _decode(after)

        if value is None or not _is_writable(value):
            logger.warning(f"Skipping {prop}: invalid value {value!r}")
            return SKIP
        return FieldChange(prop, value)
