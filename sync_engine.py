"""
ClickHub Sync Engine
Event-driven reconciliation of HubSpot tickets and tasks into ClickUp tasks.

A HubSpot event either finds an existing synced pair (field-by-field update),
creates the ClickUp task (creation event), or waits one recheck window for a
pair to appear before falling back to creation (change event on an unseen
object). ClickUp task updates flow back to HubSpot through the same registry.
"""

import os
import sys
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

import content_translator
from clickup_client import ClickUpClient, ClickUpError
from database import IS_VERCEL, RegistryError, SyncedPair, SyncRegistry
from field_mapper import SKIP, FieldChange, FieldMapper, ObjectType, to_epoch_ms
from hubspot_client import HubSpotClient, HubSpotError
from inflight import InFlightGuard


# --- Logging ---
def setup_logging():
    """Configure logging (console-only on Vercel due to read-only filesystem)"""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]

    # Only add file logging if not on Vercel (read-only filesystem)
    if not IS_VERCEL:
        try:
            if not os.path.exists('logs'):
                os.makedirs('logs')
            handlers.append(logging.FileHandler('logs/clickhub_sync.log', encoding='utf-8'))
        except OSError:
            pass  # Skip file logging if directory creation fails

    logging.basicConfig(
        level=logging.INFO,
        format=log_format,
        handlers=handlers
    )
    return logging.getLogger(__name__)

logger = setup_logging()

SYNC_ERRORS = (RegistryError, HubSpotError, ClickUpError)


# --- Configuration Management ---
DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_RECHECK_DELAY_SECONDS = 30
DEFAULT_HISTORY_WINDOW_MINUTES = 5
DEFAULT_SUPPORT_LIST_KEYWORD = "support ticket form"


@dataclass
class Config:
    """Service configuration with validation"""
    raw: Dict[str, Any]

    @property
    def hubspot(self) -> Dict[str, Any]:
        return self.raw.get("hubspot") or {}

    @property
    def clickup(self) -> Dict[str, Any]:
        return self.raw.get("clickup") or {}

    @property
    def sync(self) -> Dict[str, Any]:
        return self.raw.get("sync") or {}

    @property
    def database(self) -> Dict[str, Any]:
        return self.raw.get("database") or {}

    @property
    def environment(self) -> str:
        return self.raw.get("environment", "development")

    @property
    def recheck_delay_seconds(self) -> float:
        return self.sync.get("recheck_delay_seconds", DEFAULT_RECHECK_DELAY_SECONDS)

    @property
    def history_window_minutes(self) -> float:
        return self.sync.get("history_window_minutes", DEFAULT_HISTORY_WINDOW_MINUTES)

    @property
    def webhooks_enabled(self) -> bool:
        return bool(self.sync.get("webhooks_enabled", True))

    def validate(self) -> List[str]:
        """Validate configuration"""
        errors = []

        if not self.hubspot.get("access_token"):
            errors.append("Missing hubspot.access_token (or HUBSPOT_ACCESS_TOKEN)")
        if not self.clickup.get("api_token"):
            errors.append("Missing clickup.api_token (or CLICKUP_API_TOKEN)")

        delay = self.recheck_delay_seconds
        if isinstance(delay, bool) or not isinstance(delay, (int, float)) or delay < 0:
            errors.append("sync.recheck_delay_seconds must be a non-negative number")

        window = self.history_window_minutes
        if isinstance(window, bool) or not isinstance(window, (int, float)) or window <= 0:
            errors.append("sync.history_window_minutes must be a positive number")

        return errors


def _apply_env_overrides(raw: Dict[str, Any]) -> None:
    """Environment variables win over file values for secrets and deployment settings"""
    env_map = [
        ("HUBSPOT_ACCESS_TOKEN", "hubspot", "access_token"),
        ("CLICKUP_API_TOKEN", "clickup", "api_token"),
        ("SYNC_DB_PATH", "database", "path"),
    ]
    for env_name, section, key in env_map:
        value = os.environ.get(env_name)
        if value:
            raw.setdefault(section, {})[key] = value

    database_url = os.environ.get("POSTGRES_URL") or os.environ.get("DATABASE_URL")
    if database_url:
        raw.setdefault("database", {})["url"] = database_url

    if os.environ.get("VERCEL") == "1":
        raw.setdefault("environment", "production")


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from YAML (optional) plus environment, then validate"""
    path = path or os.environ.get("CLICKHUB_CONFIG", DEFAULT_CONFIG_PATH)

    raw: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError("Config YAML must be a mapping at the top level.")
        logger.info(f"Configuration loaded from {path}")
    else:
        logger.warning(f"Config file {path} not found; using environment only")

    _apply_env_overrides(raw)

    config = Config(raw=raw)
    errors = config.validate()

    if errors:
        error_msg = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
        logger.error(error_msg)
        raise ValueError(error_msg)

    return config


# --- Events ---
class EventKind(str, Enum):
    CREATION = "creation"
    CHANGE = "change"


@dataclass(frozen=True)
class ChangeEvent:
    """One HubSpot change notification, normalised"""
    object_id: str
    object_type: ObjectType
    event_kind: EventKind
    field: Optional[str] = None
    before: Any = None
    after: Any = None
    occurred_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        """Guard and recheck key; ticket 7 and task 7 are different objects"""
        return f"{self.object_type.value}:{self.object_id}"


# HubSpot objectTypeId for tasks delivered as generic object.* subscriptions
TASK_OBJECT_TYPE_ID = "0-27"

_SUBSCRIPTION_ACTIONS = {
    "creation": EventKind.CREATION,
    "propertyChange": EventKind.CHANGE,
}


def _from_epoch_ms(value: Any) -> Optional[datetime]:
    ms = to_epoch_ms(value)
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def parse_hubspot_event(record: Any) -> Optional[ChangeEvent]:
    """
    Normalise one webhook record; None when it is not a ticket/task event.

    Accepts HubSpot subscription records (subscriptionType, objectId,
    objectTypeId, propertyName, propertyValue, occurredAt) and the plain
    shape (objectId, objectType, eventKind, field, before, after, occurredAt).
    """
    if not isinstance(record, dict) or record.get("objectId") in (None, ""):
        return None
    object_id = str(record["objectId"])

    subscription = record.get("subscriptionType")
    if subscription:
        prefix, _, action = str(subscription).partition(".")
        kind = _SUBSCRIPTION_ACTIONS.get(action)
        if prefix == "ticket":
            object_type = ObjectType.TICKET
        elif prefix == "object" and str(record.get("objectTypeId")) == TASK_OBJECT_TYPE_ID:
            object_type = ObjectType.TASK
        else:
            object_type = None
        if kind is None or object_type is None:
            logger.info(f"ℹ️ Ignored HubSpot event type: {subscription}")
            return None
        return ChangeEvent(
            object_id=object_id,
            object_type=object_type,
            event_kind=kind,
            field=record.get("propertyName"),
            after=record.get("propertyValue"),
            occurred_at=_from_epoch_ms(record.get("occurredAt")),
        )

    try:
        object_type = ObjectType(str(record.get("objectType", "")).lower())
        kind = EventKind(str(record.get("eventKind", "")).lower())
    except ValueError:
        logger.info(f"ℹ️ Ignored event record for object {object_id}")
        return None
    return ChangeEvent(
        object_id=object_id,
        object_type=object_type,
        event_kind=kind,
        field=record.get("field"),
        before=record.get("before"),
        after=record.get("after"),
        occurred_at=_from_epoch_ms(record.get("occurredAt")),
    )


# --- Delayed rechecks ---
class RecheckScheduler:
    """One-shot recheck jobs keyed by object, on an APScheduler BackgroundScheduler"""

    JOB_PREFIX = "recheck:"

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None):
        self._scheduler = scheduler or BackgroundScheduler(timezone=timezone.utc)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("✓ Recheck scheduler started")

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("✓ Recheck scheduler shut down")

    def schedule(self, key: str, delay_seconds: float, func: Callable, *args) -> bool:
        """Run func(*args) once after delay_seconds; False if key already has a job"""
        job_id = f"{self.JOB_PREFIX}{key}"
        if self._scheduler.get_job(job_id):
            return False
        run_at = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        self._scheduler.add_job(
            func,
            DateTrigger(run_date=run_at),
            args=args,
            id=job_id,
            name=f"Recheck {key}",
            misfire_grace_time=None,
        )
        return True

    def cancel(self, key: str) -> bool:
        try:
            self._scheduler.remove_job(f"{self.JOB_PREFIX}{key}")
        except JobLookupError:
            return False
        return True

    def pending_keys(self) -> List[str]:
        return [job.id[len(self.JOB_PREFIX):] for job in self._scheduler.get_jobs()
                if job.id.startswith(self.JOB_PREFIX)]


# --- Reconciliation ---
class Outcome(str, Enum):
    """Result of one unit of reconciliation work"""
    DROPPED = "dropped"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CREATED = "created"
    UPDATED = "updated"
    RACE_LOST = "race_lost"
    SKIPPED = "skipped"
    FAILED = "failed"


class ReconciliationWorker:
    """
    Drives each HubSpot object from Unsynced to Synced.

    Collaborators:
        registry: SyncRegistry
        guard: InFlightGuard
        scheduler: RecheckScheduler (schedule(key, delay, func, *args))
        mapper: FieldMapper
        source: HubSpot adapter (get_source_object, get_company,
            fetch_property_history, update_object_field, record_url)
        target: ClickUp adapter (create_task, update_task_field, set_custom_field,
            find_space_by_company_name, find_list_in_space)
    """

    def __init__(self, registry, guard: InFlightGuard, scheduler, mapper: FieldMapper,
                 source, target,
                 recheck_delay_seconds: float = DEFAULT_RECHECK_DELAY_SECONDS,
                 history_window_minutes: float = DEFAULT_HISTORY_WINDOW_MINUTES,
                 fallback_list_id: Optional[str] = None,
                 support_list_keyword: str = DEFAULT_SUPPORT_LIST_KEYWORD,
                 record_url_field_id: Optional[str] = None):
        self.registry = registry
        self.guard = guard
        self.scheduler = scheduler
        self.mapper = mapper
        self.source = source
        self.target = target
        self.recheck_delay_seconds = recheck_delay_seconds
        self.history_window_minutes = history_window_minutes
        self.fallback_list_id = fallback_list_id
        self.support_list_keyword = support_list_keyword
        self.record_url_field_id = record_url_field_id

    # ==================== HUBSPOT -> CLICKUP ====================

    def handle_source_event(self, event: ChangeEvent) -> Outcome:
        """Entry point for one HubSpot event; safe to run concurrently"""
        key = event.key
        if not self.guard.try_acquire(key):
            logger.warning(f"🚫 {key} already being processed; dropping {event.event_kind.value} event")
            return Outcome.DROPPED

        awaiting = False
        try:
            pair = self.registry.find_by_source(event.object_id, event.object_type.value)
            if pair is not None:
                return self._update_target(pair, event)

            if event.event_kind is EventKind.CREATION:
                return self._create_target(event)

            if not self.scheduler.schedule(key, self.recheck_delay_seconds, self._recheck, event):
                logger.warning(f"⏳ {key} already has a recheck scheduled; dropping event")
                return Outcome.DROPPED
            awaiting = True
            logger.info(f"⏳ {key} not synced yet. Re-checking in {self.recheck_delay_seconds} seconds...")
            return Outcome.AWAITING_CONFIRMATION
        except SYNC_ERRORS as e:
            logger.error(f"❌ Reconciliation failed for {key}: {e}")
            self._log("reconcile", event.object_type.value, event.object_id, "failed", str(e))
            return Outcome.FAILED
        except Exception:
            logger.exception(f"❌ Unhandled error for {key}")
            return Outcome.FAILED
        finally:
            if not awaiting:
                self.guard.release(key)

    def _recheck(self, event: ChangeEvent) -> Outcome:
        """Recheck job body: update if a pair appeared during the wait, otherwise create"""
        key = event.key
        try:
            pair = self.registry.find_by_source(event.object_id, event.object_type.value)
            if pair is not None:
                logger.info(f"🔄 {key} was synced during the wait. Updating instead of creating.")
                return self._update_target(pair, event)
            logger.info(f"📌 {key} still not synced. Proceeding to creation...")
            return self._create_target(event)
        except SYNC_ERRORS as e:
            logger.error(f"❌ Error during delayed recheck for {key}: {e}")
            self._log("recheck", event.object_type.value, event.object_id, "failed", str(e))
            return Outcome.FAILED
        except Exception:
            logger.exception(f"❌ Unhandled error during delayed recheck for {key}")
            return Outcome.FAILED
        finally:
            self.guard.release(key)

    def _create_target(self, event: ChangeEvent) -> Outcome:
        object_type = event.object_type
        obj = self.source.get_source_object(object_type.value, event.object_id)
        if obj is None:
            logger.warning(f"Could not retrieve {object_type.value} {event.object_id}; nothing to create")
            self._log("create", object_type.value, event.object_id, "skipped", "source object not found")
            return Outcome.SKIPPED

        list_id = self.resolve_list_id(obj)
        if not list_id:
            logger.error(f"❌ No ClickUp list for {event.key} and no fallback list configured")
            self._log("create", object_type.value, event.object_id, "failed", "no target list")
            return Outcome.FAILED

        task_id = self.target.create_task(list_id, self.build_task_data(object_type, obj))

        pair = SyncedPair(event.object_id, object_type.value, task_id)
        if not self.registry.insert_if_absent(pair):
            existing = self.registry.find_by_source(event.object_id, object_type.value)
            kept = existing.target_object_id if existing else "unknown"
            logger.warning(f"⚠️ Lost creation race for {event.key}: keeping ClickUp task {kept}, "
                           f"task {task_id} is left unlinked")
            self._log("create", object_type.value, event.object_id, "race_lost",
                      f"kept {kept}, unlinked {task_id}")
            return Outcome.RACE_LOST

        self._write_record_url(object_type, event.object_id, task_id)
        logger.info(f"✅ {event.key} synced to ClickUp task {task_id}")
        self._log("create", object_type.value, event.object_id, "success", f"ClickUp task {task_id}")
        return Outcome.CREATED

    def _update_target(self, pair: SyncedPair, event: ChangeEvent) -> Outcome:
        """Write every mapped property that changed within the history window"""
        object_type = event.object_type
        changes = self.collect_recent_changes(object_type, pair.source_object_id, event)
        if not changes:
            logger.info(f"ℹ️ No recent changes to sync for {event.key}")
            return Outcome.SKIPPED

        written: List[str] = []
        failed: List[str] = []
        for source_property, change in changes:
            try:
                self.target.update_task_field(pair.target_object_id, change.property, change.value)
                written.append(source_property)
            except ClickUpError as e:
                logger.error(f"❌ Failed to update {change.property} on ClickUp task {pair.target_object_id}: {e}")
                failed.append(source_property)

        status = "success" if not failed else ("partial" if written else "failed")
        message = f"updated {', '.join(written) or 'nothing'}"
        if failed:
            message += f"; failed {', '.join(failed)}"
        self._log("update", object_type.value, pair.source_object_id, status, message)

        if not written:
            return Outcome.FAILED
        logger.info(f"✅ ClickUp task {pair.target_object_id} updated from {event.key}: {', '.join(written)}")
        return Outcome.UPDATED

    def collect_recent_changes(self, object_type: ObjectType, object_id: str,
                               event: ChangeEvent) -> List[Tuple[str, FieldChange]]:
        """
        Newest in-window value per mapped property, translated for ClickUp.

        The triggering property falls back to the event's own value when the
        history read shows nothing recent for it.
        """
        cutoff_ms = int((datetime.now(timezone.utc)
                         - timedelta(minutes=self.history_window_minutes)).timestamp() * 1000)
        changes: List[Tuple[str, FieldChange]] = []

        for prop in self.mapper.source_properties(object_type):
            try:
                history = self.source.fetch_property_history(object_type.value, object_id, prop)
            except HubSpotError as e:
                logger.error(f"❌ Could not read {prop} history for {object_type.value} {object_id}: {e}")
                history = []

            recent = [h for h in history if (to_epoch_ms(h.get("timestamp")) or 0) >= cutoff_ms]
            if recent:
                value = recent[-1].get("value")
            elif prop == event.field and event.after is not None:
                value = event.after
            else:
                continue

            change = self.mapper.to_target(object_type, prop, value)
            if change is SKIP:
                continue
            changes.append((prop, change))
        return changes

    def resolve_list_id(self, obj: Dict[str, Any]) -> Optional[str]:
        """
        Company space's support list, else the fallback list.

        Lookup failures fall through to the fallback list.
        """
        companies = (((obj.get("associations") or {}).get("companies") or {}).get("results") or [])
        try:
            company_name = None
            if companies:
                company = self.source.get_company(str(companies[0].get("id")))
                company_name = ((company or {}).get("properties") or {}).get("name")

            if company_name:
                space = self.target.find_space_by_company_name(company_name)
                if space:
                    lst = self.target.find_list_in_space(str(space["id"]), self.support_list_keyword)
                    if lst:
                        logger.info(f"📂 Using list {lst.get('name')} in space {space.get('name')}")
                        return str(lst["id"])
                logger.info(f"No '{self.support_list_keyword}' list found for company {company_name}")
        except (HubSpotError, ClickUpError) as e:
            logger.error(f"❌ Error while searching for space/list in ClickUp: {e}")

        if self.fallback_list_id:
            logger.info(f"Using fallback list with ID {self.fallback_list_id}")
            return str(self.fallback_list_id)
        return None

    def build_task_data(self, object_type: ObjectType, obj: Dict[str, Any]) -> Dict[str, Any]:
        """ClickUp create-task body for a HubSpot ticket or task"""
        props = obj.get("properties") or {}
        mapping = self.mapper.mapping(object_type)
        by_target = {target: source for source, target in mapping.source_to_target.items()}

        name = props.get(by_target["name"]) or "No Subject"
        body = props.get(by_target["description"])

        if object_type is ObjectType.TICKET:
            tags = ["Ticket"]
            description: Any = content_translator.to_plain_text(body) if body else ""
        else:
            tags = []
            link = content_translator.extract_media_link(body) if body else None
            if link:
                description = content_translator.build_clip_delta(link)
                tags.append("Fathom")
            elif body:
                description = content_translator.delta_from_html(body)
            else:
                description = ""

        data: Dict[str, Any] = {
            "name": name,
            "description": description or "No description",
            "tags": tags,
        }

        for prop, target in mapping.source_to_target.items():
            if target in ("name", "description"):
                continue
            value = props.get(prop)
            if value in (None, ""):
                continue
            change = self.mapper.to_target(object_type, prop, value)
            if change is SKIP:
                continue
            if change.property == "assignees":
                data["assignees"] = change.value["add"]
            else:
                data[change.property] = change.value
        return data

    def _write_record_url(self, object_type: ObjectType, object_id: str, task_id: str) -> None:
        if not self.record_url_field_id:
            return
        url = self.source.record_url(object_type.value, object_id)
        if not url:
            logger.warning("HubSpot portal_id not configured; record URL not written")
            return
        try:
            self.target.set_custom_field(task_id, self.record_url_field_id, url)
            logger.info(f"🔗 Record URL written to ClickUp task {task_id}: {url}")
        except ClickUpError as e:
            logger.error(f"❌ Error updating record URL field on task {task_id}: {e}")

    # ==================== CLICKUP -> HUBSPOT ====================

    def handle_target_event(self, payload: Dict[str, Any]) -> Outcome:
        """
        Apply a ClickUp taskUpdated webhook to the linked HubSpot object.

        Not guarded: every payload carries its own history items.
        """
        task_id = payload.get("task_id")
        event_name = payload.get("event")
        if not task_id:
            logger.warning("ClickUp webhook without task_id ignored")
            return Outcome.SKIPPED
        if event_name and event_name != "taskUpdated":
            logger.info(f"ℹ️ Ignored ClickUp event: {event_name}")
            return Outcome.SKIPPED

        try:
            pair = self.registry.find_by_target(str(task_id))
        except RegistryError as e:
            logger.error(f"❌ Registry lookup failed for ClickUp task {task_id}: {e}")
            return Outcome.FAILED
        if pair is None:
            logger.info(f"ClickUp task {task_id} is not synced with HubSpot; skipping")
            return Outcome.SKIPPED

        object_type = ObjectType(pair.source_object_type)
        written: List[str] = []
        failed: List[str] = []
        for item in payload.get("history_items") or []:
            if not isinstance(item, dict):
                continue
            change = self.mapper.to_source(object_type, item.get("field"), item.get("after"))
            if change is SKIP:
                continue
            try:
                self.source.update_object_field(object_type.value, pair.source_object_id,
                                                change.property, change.value)
                written.append(change.property)
            except HubSpotError as e:
                logger.error(f"❌ Failed to update HubSpot {object_type.value} {pair.source_object_id} "
                             f"{change.property}: {e}")
                failed.append(change.property)

        if not written and not failed:
            return Outcome.SKIPPED
        status = "success" if not failed else ("partial" if written else "failed")
        self._log("update", object_type.value, pair.source_object_id, status,
                  f"from ClickUp task {task_id}: {', '.join(written + failed)}",
                  source="clickup", target="hubspot")
        return Outcome.UPDATED if written else Outcome.FAILED

    # ==================== STATUS ====================

    def status(self) -> Dict[str, Any]:
        return {
            "in_flight": len(self.guard),
            "in_flight_keys": [p.object_id for p in self.guard.snapshot()],
            "pending_rechecks": self.scheduler.pending_keys(),
        }

    def _log(self, operation: str, entity_type: str, entity_id: str, status: str, message: str = "",
             source: str = "hubspot", target: str = "clickup") -> None:
        try:
            self.registry.log_sync_operation(operation, source, target, entity_type, entity_id, status, message)
        except RegistryError as e:
            logger.error(f"Could not write sync log for {entity_type} {entity_id}: {e}")


def build_worker(cfg: Config, registry: Optional[SyncRegistry] = None) -> ReconciliationWorker:
    """Wire the registry, API clients and scheduler described by cfg"""
    if registry is None:
        registry = SyncRegistry(
            path=cfg.database.get("path", "sync.db"),
            database_url=cfg.database.get("url"),
        )
    hubspot = HubSpotClient(cfg.hubspot)
    clickup = ClickUpClient(cfg.clickup)
    return ReconciliationWorker(
        registry=registry,
        guard=InFlightGuard(),
        scheduler=RecheckScheduler(),
        mapper=FieldMapper(source_directory=hubspot, target_directory=clickup),
        source=hubspot,
        target=clickup,
        recheck_delay_seconds=cfg.recheck_delay_seconds,
        history_window_minutes=cfg.history_window_minutes,
        fallback_list_id=cfg.clickup.get("fallback_list_id"),
        support_list_keyword=cfg.clickup.get("support_list_keyword", DEFAULT_SUPPORT_LIST_KEYWORD),
        record_url_field_id=cfg.clickup.get("record_url_field_id"),
    )
