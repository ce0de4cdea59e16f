"""
Tests for the synced-pair registry (SQLite backend)
"""

import threading
from unittest import mock

import pytest

from database import RegistryError, SyncedPair, SyncRegistry


def test_insert_and_find(registry):
    assert registry.insert_if_absent(SyncedPair("T1", "ticket", "cu1")) is True

    pair = registry.find_by_source("T1", "ticket")
    assert pair.target_object_id == "cu1"
    assert pair.created_at is not None
    assert registry.find_by_target("cu1").source_object_id == "T1"


def test_not_found_is_none(registry):
    assert registry.find_by_source("nope", "ticket") is None
    assert registry.find_by_target("nope") is None


def test_second_insert_for_same_source_is_ignored(registry):
    assert registry.insert_if_absent(SyncedPair("T1", "ticket", "cu1")) is True
    assert registry.insert_if_absent(SyncedPair("T1", "ticket", "cu2")) is False
    assert registry.find_by_source("T1", "ticket").target_object_id == "cu1"
    assert registry.find_by_target("cu2") is None


def test_same_id_different_type_is_a_different_pair(registry):
    assert registry.insert_if_absent(SyncedPair("7", "ticket", "cu1"))
    assert registry.insert_if_absent(SyncedPair("7", "task", "cu2"))
    assert registry.get_registry_report()["by_type"] == {"ticket": 1, "task": 1}


def test_target_can_only_belong_to_one_pair(registry):
    assert registry.insert_if_absent(SyncedPair("T1", "ticket", "cu1"))
    assert registry.insert_if_absent(SyncedPair("T2", "ticket", "cu1")) is False


def test_threaded_insert_race_has_one_winner(registry):
    barrier = threading.Barrier(10)
    results = []
    lock = threading.Lock()

    def insert(n):
        barrier.wait()
        won = registry.insert_if_absent(SyncedPair("RACE", "task", f"cu{n}"))
        with lock:
            results.append(won)

    threads = [threading.Thread(target=insert, args=(n,)) for n in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert registry.get_registry_report()["total_pairs"] == 1


def test_pairs_survive_reopen(tmp_path):
    path = str(tmp_path / "sync.db")
    first = SyncRegistry(path=path)
    first.insert_if_absent(SyncedPair("T9", "ticket", "cu9"))
    first.close()

    second = SyncRegistry(path=path)
    assert second.find_by_source("T9", "ticket").target_object_id == "cu9"
    second.close()


def test_registry_report_and_listing(registry):
    for n in range(3):
        registry.insert_if_absent(SyncedPair(f"T{n}", "ticket", f"cu{n}"))
    report = registry.get_registry_report()
    assert report["total_pairs"] == 3
    assert len(report["recent"]) == 3
    assert len(registry.list_pairs(limit=2)) == 2


def test_sync_logs(registry):
    registry.log_sync_operation("create", "hubspot", "clickup", "ticket", "T1", "success", "ClickUp task cu1")
    registry.log_sync_operation("update", "clickup", "hubspot", "task", "K1", "failed", "boom")
    logs = registry.list_sync_logs(limit=10)
    assert [log["operation"] for log in logs] == ["update", "create"]
    assert logs[0]["status"] == "failed"
    assert logs[1]["message"] == "ClickUp task cu1"


def test_storage_fault_is_raised_not_hidden(registry):
    with mock.patch.object(registry._db, "fetchone", side_effect=Exception("disk I/O error")):
        with pytest.raises(RegistryError) as exc:
            registry.find_by_source("T1", "ticket")
    assert exc.value.retryable is True


def test_unopenable_database_raises_registry_error(tmp_path):
    with pytest.raises(RegistryError):
        SyncRegistry(path=str(tmp_path / "missing-dir" / "sync.db"))
