"""
Tests for event parsing, configuration and the reconciliation worker
"""

import threading
import time
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from clickup_client import ClickUpError
from database import RegistryError, SyncedPair
from field_mapper import ObjectType
from hubspot_client import HubSpotError
from sync_engine import (
    ChangeEvent,
    EventKind,
    Outcome,
    RecheckScheduler,
    ReconciliationWorker,
    load_config,
    parse_hubspot_event,
)

CLIP_URL = "https://fathom.video/share/clip42"


def iso_now():
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def ticket(ticket_id="T1", **props):
    properties = {"subject": "Printer on fire", "content": "<p>Help</p>", "hs_pipeline_stage": "1",
                  "hs_ticket_priority": "HIGH"}
    properties.update(props)
    return {"id": ticket_id, "properties": properties,
            "associations": {"companies": {"results": [{"id": "C1"}]}}}


def change(object_id="T1", object_type=ObjectType.TICKET, field="subject", after="Printer on fire"):
    return ChangeEvent(object_id, object_type, EventKind.CHANGE, field=field, after=after)


def creation(object_id="T1", object_type=ObjectType.TICKET):
    return ChangeEvent(object_id, object_type, EventKind.CREATION)


@pytest.fixture
def worker(registry, guard, scheduler, mapper, hubspot, clickup):
    hubspot.objects[("ticket", "T1")] = ticket()
    hubspot.companies["C1"] = {"properties": {"name": "Acme"}}
    return ReconciliationWorker(
        registry=registry,
        guard=guard,
        scheduler=scheduler,
        mapper=mapper,
        source=hubspot,
        target=clickup,
        fallback_list_id="FALLBACK",
        record_url_field_id="url-field",
    )


# --- event parsing ---

def test_parse_ticket_events():
    event = parse_hubspot_event({"subscriptionType": "ticket.propertyChange", "objectId": 123,
                                 "propertyName": "subject", "propertyValue": "New",
                                 "occurredAt": 1704067200000})
    assert event.object_id == "123"
    assert event.object_type is ObjectType.TICKET
    assert event.event_kind is EventKind.CHANGE
    assert event.field == "subject"
    assert event.after == "New"
    assert event.occurred_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert event.key == "ticket:123"

    assert parse_hubspot_event({"subscriptionType": "ticket.creation", "objectId": 5}).event_kind is EventKind.CREATION


def test_parse_task_events_require_task_type_id():
    event = parse_hubspot_event({"subscriptionType": "object.creation", "objectId": 9, "objectTypeId": "0-27"})
    assert event.object_type is ObjectType.TASK
    assert parse_hubspot_event({"subscriptionType": "object.creation", "objectId": 9, "objectTypeId": "0-3"}) is None


def test_parse_plain_event_shape():
    event = parse_hubspot_event({"objectId": "K1", "objectType": "task", "eventKind": "change",
                                 "field": "hs_task_status", "before": "NOT_STARTED", "after": "COMPLETED"})
    assert event.object_type is ObjectType.TASK
    assert event.before == "NOT_STARTED"


@pytest.mark.parametrize("record", [
    None,
    "ticket.creation",
    {"subscriptionType": "ticket.creation"},
    {"subscriptionType": "company.creation", "objectId": 1},
    {"subscriptionType": "ticket.deletion", "objectId": 1},
    {"objectId": 1, "objectType": "deal", "eventKind": "change"},
])
def test_parse_ignores_other_records(record):
    assert parse_hubspot_event(record) is None


# --- configuration ---

def test_load_config_from_file(tmp_path, monkeypatch):
    for name in ("HUBSPOT_ACCESS_TOKEN", "CLICKUP_API_TOKEN", "POSTGRES_URL", "DATABASE_URL", "SYNC_DB_PATH"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        "hubspot:\n  access_token: hs\n"
        "clickup:\n  api_token: cu\n  fallback_list_id: '900'\n"
        "sync:\n  recheck_delay_seconds: 5\n"
    )
    cfg = load_config(str(path))
    assert cfg.recheck_delay_seconds == 5
    assert cfg.history_window_minutes == 5
    assert cfg.webhooks_enabled is True
    assert cfg.clickup["fallback_list_id"] == "900"


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("hubspot:\n  access_token: from-file\nclickup:\n  api_token: cu\n")
    monkeypatch.setenv("HUBSPOT_ACCESS_TOKEN", "from-env")
    monkeypatch.setenv("SYNC_DB_PATH", "/tmp/other.db")
    cfg = load_config(str(path))
    assert cfg.hubspot["access_token"] == "from-env"
    assert cfg.database["path"] == "/tmp/other.db"


def test_missing_file_uses_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("HUBSPOT_ACCESS_TOKEN", "hs")
    monkeypatch.setenv("CLICKUP_API_TOKEN", "cu")
    cfg = load_config(str(tmp_path / "absent.yaml"))
    assert cfg.clickup["api_token"] == "cu"


def test_invalid_config_raises(tmp_path, monkeypatch):
    monkeypatch.delenv("HUBSPOT_ACCESS_TOKEN", raising=False)
    monkeypatch.delenv("CLICKUP_API_TOKEN", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text("clickup:\n  api_token: cu\nsync:\n  recheck_delay_seconds: -1\n")
    with pytest.raises(ValueError) as exc:
        load_config(str(path))
    assert "hubspot.access_token" in str(exc.value)
    assert "recheck_delay_seconds" in str(exc.value)


# --- recheck scheduler ---

def test_recheck_scheduler_one_job_per_key():
    rechecks = RecheckScheduler()
    assert rechecks.schedule("ticket:1", 60, print) is True
    assert rechecks.schedule("ticket:1", 60, print) is False
    assert rechecks.pending_keys() == ["ticket:1"]
    assert rechecks.cancel("ticket:1") is True
    assert rechecks.cancel("ticket:1") is False
    assert rechecks.pending_keys() == []


def test_recheck_scheduler_runs_job():
    rechecks = RecheckScheduler()
    fired = threading.Event()
    rechecks.start()
    try:
        rechecks.schedule("task:1", 0.05, fired.set)
        assert fired.wait(5)
    finally:
        rechecks.shutdown()


# --- creation path ---

def test_creation_event_creates_task_and_pair(worker, clickup, registry):
    assert worker.handle_source_event(creation()) is Outcome.CREATED

    assert len(clickup.created) == 1
    list_id, data, task_id = clickup.created[0]
    assert list_id == "FALLBACK"
    assert data["name"] == "Printer on fire"
    assert data["description"] == "Help"
    assert data["tags"] == ["Ticket"]
    assert data["status"] == "not started"
    assert data["priority"] == 2
    assert registry.find_by_source("T1", "ticket").target_object_id == task_id
    assert clickup.custom_fields == [
        (task_id, "url-field", "https://app.hubspot.com/contacts/46493300/record/0-5/T1")]
    assert not worker.guard.is_busy("ticket:T1")
    assert registry.list_sync_logs()[0]["status"] == "success"


def test_duplicate_creation_event_never_creates_twice(worker, clickup, registry):
    registry.insert_if_absent(SyncedPair("T1", "ticket", "existing"))

    first = worker.handle_source_event(creation())
    second = worker.handle_source_event(creation())

    assert clickup.created == []
    assert first in (Outcome.UPDATED, Outcome.SKIPPED)
    assert second in (Outcome.UPDATED, Outcome.SKIPPED)
    assert registry.find_by_source("T1", "ticket").target_object_id == "existing"


def test_concurrent_creation_events_collapse_to_one_task(worker, clickup, registry):
    original = clickup.create_task

    def slow_create(list_id, task_data):
        time.sleep(0.05)
        return original(list_id, task_data)

    clickup.create_task = slow_create
    barrier = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def deliver():
        barrier.wait()
        result = worker.handle_source_event(creation())
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=deliver) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(clickup.created) == 1
    assert outcomes.count(Outcome.CREATED) == 1
    assert registry.get_registry_report()["total_pairs"] == 1


def test_lost_insert_race_keeps_existing_pair(worker, clickup, registry):
    clickup.before_create_return = lambda task_id: registry.insert_if_absent(
        SyncedPair("T1", "ticket", "winner"))

    assert worker.handle_source_event(creation()) is Outcome.RACE_LOST
    assert registry.find_by_source("T1", "ticket").target_object_id == "winner"
    assert clickup.custom_fields == []
    assert registry.list_sync_logs()[0]["status"] == "race_lost"


def test_missing_source_object_is_skipped(worker, hubspot, clickup):
    del hubspot.objects[("ticket", "T1")]
    assert worker.handle_source_event(creation()) is Outcome.SKIPPED
    assert clickup.created == []


def test_company_space_list_is_preferred(worker, clickup):
    clickup.spaces["acme"] = {"id": "S1", "name": "Acme"}
    clickup.lists["S1"] = {"id": "L1", "name": "Support Ticket Form"}
    worker.handle_source_event(creation())
    assert clickup.created[0][0] == "L1"


def test_space_search_failure_falls_back(worker, clickup):
    def broken(company_name):
        raise ClickUpError("ClickUp GET /team returned 500", status_code=500)

    clickup.find_space_by_company_name = broken
    assert worker.handle_source_event(creation()) is Outcome.CREATED
    assert clickup.created[0][0] == "FALLBACK"


def test_company_lookup_failure_falls_back(worker, hubspot, clickup):
    def broken(company_id):
        raise HubSpotError("HubSpot GET companies returned 500", status_code=500)

    hubspot.get_company = broken
    assert worker.handle_source_event(creation()) is Outcome.CREATED
    assert clickup.created[0][0] == "FALLBACK"


def test_no_list_at_all_fails(worker, clickup, registry):
    worker.fallback_list_id = None
    assert worker.handle_source_event(creation()) is Outcome.FAILED
    assert clickup.created == []
    assert registry.list_sync_logs()[0]["status"] == "failed"


def test_task_with_clip_link_gets_clip_description(worker, hubspot):
    task = {"properties": {
        "hs_task_subject": "Call recap",
        "hs_task_body": f'<p>Recording <a href="{CLIP_URL}">here</a></p>',
        "hs_task_status": "COMPLETED",
        "hs_task_priority": "LOW",
        "hs_timestamp": "2024-01-01T00:00:00Z",
        "hubspot_owner_id": "101",
    }}
    data = worker.build_task_data(ObjectType.TASK, task)
    assert data["description"] == {"ops": [{"insert": f"WATCH FATHOM CLIP: {CLIP_URL}\n"}]}
    assert data["tags"] == ["Fathom"]
    assert data["status"] == "complete"
    assert data["priority"] == 4
    assert data["due_date"] == 1704067200000
    assert data["assignees"] == [555]


def test_task_html_body_becomes_delta(worker):
    data = worker.build_task_data(ObjectType.TASK, {"properties": {"hs_task_body": "<b>Follow up</b>"}})
    assert data["description"] == {"ops": [{"insert": "Follow up"}, {"insert": "\n"}]}
    assert data["name"] == "No Subject"
    assert data["tags"] == []


def test_empty_ticket_gets_defaults(worker):
    data = worker.build_task_data(ObjectType.TICKET, {"properties": {}})
    assert data["name"] == "No Subject"
    assert data["description"] == "No description"


# --- awaiting confirmation ---

def test_change_before_pair_exists_waits_then_creates(worker, scheduler, clickup, registry):
    event = change()

    assert worker.handle_source_event(event) is Outcome.AWAITING_CONFIRMATION
    assert scheduler.pending_keys() == ["ticket:T1"]
    assert scheduler.delays["ticket:T1"] == 30
    assert worker.guard.is_busy("ticket:T1")

    # second event during the window is dropped, no second timer
    assert worker.handle_source_event(change()) is Outcome.DROPPED
    assert scheduler.pending_keys() == ["ticket:T1"]
    assert clickup.created == []

    assert scheduler.fire("ticket:T1") is Outcome.CREATED
    task_id = clickup.created[0][2]
    assert registry.find_by_source("T1", "ticket").target_object_id == task_id
    assert not worker.guard.is_busy("ticket:T1")


def test_recheck_updates_when_pair_appeared(worker, scheduler, clickup, registry, hubspot):
    worker.handle_source_event(change(after="Renamed"))
    registry.insert_if_absent(SyncedPair("T1", "ticket", "cu-other"))

    assert scheduler.fire("ticket:T1") is Outcome.UPDATED
    assert clickup.created == []
    assert ("cu-other", "name", "Renamed") in clickup.updates
    assert not worker.guard.is_busy("ticket:T1")


def test_recheck_failure_still_releases_guard(worker, scheduler, clickup):
    def broken(list_id, task_data):
        raise ClickUpError("ClickUp POST returned 500", status_code=500)

    clickup.create_task = broken
    worker.handle_source_event(change())
    assert scheduler.fire("ticket:T1") is Outcome.FAILED
    assert not worker.guard.is_busy("ticket:T1")


# --- update pass ---

def test_update_uses_recent_history_only(worker, hubspot, clickup, registry):
    registry.insert_if_absent(SyncedPair("T1", "ticket", "cu7"))
    stale = (datetime.now(timezone.utc) - timedelta(hours=2)).isoformat()
    hubspot.history[("ticket", "T1", "hs_pipeline_stage")] = [
        {"timestamp": stale, "value": "1"},
        {"timestamp": iso_now(), "value": "4"},
    ]
    hubspot.history[("ticket", "T1", "hs_ticket_priority")] = [{"timestamp": stale, "value": "LOW"}]

    assert worker.handle_source_event(change(field="hs_pipeline_stage", after="4")) is Outcome.UPDATED
    assert clickup.updates == [("cu7", "status", "complete")]


def test_update_falls_back_to_event_value(worker, clickup, registry):
    registry.insert_if_absent(SyncedPair("T1", "ticket", "cu7"))
    assert worker.handle_source_event(change(field="hs_ticket_priority", after="URGENT")) is Outcome.UPDATED
    assert clickup.updates == [("cu7", "priority", 1)]


def test_update_with_nothing_recent_is_skipped(worker, clickup, registry):
    registry.insert_if_absent(SyncedPair("T1", "ticket", "cu7"))
    assert worker.handle_source_event(change(field="hs_lastmodifieddate", after="x")) is Outcome.SKIPPED
    assert clickup.updates == []


def test_one_failing_field_does_not_stop_the_others(worker, hubspot, clickup, registry):
    registry.insert_if_absent(SyncedPair("T1", "ticket", "cu7"))
    hubspot.history[("ticket", "T1", "subject")] = [{"timestamp": iso_now(), "value": "New title"}]
    hubspot.history[("ticket", "T1", "hs_pipeline_stage")] = [{"timestamp": iso_now(), "value": "4"}]
    original = clickup.update_task_field

    def flaky(task_id, prop, value):
        if prop == "name":
            raise ClickUpError("ClickUp PUT returned 400", status_code=400)
        return original(task_id, prop, value)

    clickup.update_task_field = flaky
    assert worker.handle_source_event(change(field="subject")) is Outcome.UPDATED
    assert clickup.updates == [("cu7", "status", "complete")]
    assert registry.list_sync_logs()[0]["status"] == "partial"


def test_registry_fault_fails_and_releases_guard(guard, scheduler, mapper, hubspot, clickup):
    broken_registry = mock.Mock()
    broken_registry.find_by_source.side_effect = RegistryError("database is locked")
    worker = ReconciliationWorker(broken_registry, guard, scheduler, mapper, hubspot, clickup)

    assert worker.handle_source_event(creation()) is Outcome.FAILED
    assert not guard.is_busy("ticket:T1")
    assert scheduler.pending_keys() == []
    assert clickup.created == []


# --- ClickUp -> HubSpot ---

def test_target_event_updates_linked_ticket(worker, hubspot, registry):
    registry.insert_if_absent(SyncedPair("T1", "ticket", "cu7"))
    payload = {"event": "taskUpdated", "task_id": "cu7", "history_items": [
        {"field": "status", "after": {"status": "complete"}},
        {"field": "priority", "after": {"priority": "urgent"}},
        {"field": "assignee_add", "after": {"email": "agent@example.com"}},
        {"field": "content", "after": "ignored for tickets"},
    ]}

    assert worker.handle_target_event(payload) is Outcome.UPDATED
    assert hubspot.updates == [
        ("ticket", "T1", "hs_pipeline_stage", "4"),
        ("ticket", "T1", "hs_ticket_priority", "URGENT"),
        ("ticket", "T1", "hubspot_owner_id", "101"),
    ]


def test_target_event_content_for_task(worker, hubspot, registry):
    registry.insert_if_absent(SyncedPair("K1", "task", "cu8"))
    payload = {"event": "taskUpdated", "task_id": "cu8", "history_items": [
        {"field": "content", "after": f'{{"ops":[{{"insert":"clip","attributes":{{"link":"{CLIP_URL}"}}}}]}}'},
    ]}
    worker.handle_target_event(payload)
    assert hubspot.updates == [("task", "K1", "hs_task_body", f"WATCH FATHOM CLIP: {CLIP_URL}")]


def test_target_event_for_unsynced_task_is_skipped(worker, hubspot):
    payload = {"event": "taskUpdated", "task_id": "unknown", "history_items": [
        {"field": "name", "after": "x"}]}
    assert worker.handle_target_event(payload) is Outcome.SKIPPED
    assert hubspot.updates == []


def test_target_event_other_kinds_are_skipped(worker, registry):
    registry.insert_if_absent(SyncedPair("T1", "ticket", "cu7"))
    assert worker.handle_target_event({"event": "taskCreated", "task_id": "cu7"}) is Outcome.SKIPPED
    assert worker.handle_target_event({"event": "taskUpdated"}) is Outcome.SKIPPED


def test_target_events_bypass_guard(worker, guard, hubspot, registry):
    registry.insert_if_absent(SyncedPair("T1", "ticket", "cu7"))
    guard.try_acquire("ticket:T1")
    payload = {"event": "taskUpdated", "task_id": "cu7", "history_items": [
        {"field": "name", "after": "Renamed in ClickUp"}]}
    assert worker.handle_target_event(payload) is Outcome.UPDATED
    assert hubspot.updates == [("ticket", "T1", "subject", "Renamed in ClickUp")]
