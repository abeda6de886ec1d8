import json
from pathlib import Path

import pytest

from stagegate.errors import RunStateError
from stagegate.pipeline import Outcome, WorkflowRun
from stagegate.state import RunStore


def _run(run_id: str = "run-store-1") -> WorkflowRun:
    run = WorkflowRun.start("delivery", ["spec", "review"], run_id=run_id)
    run.record(Outcome("spec", status="passed", artifact_ref="docs/spec.md", score=9.0, attempt=1))
    run.retry_counts["review"] = 1
    return run


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".stagegate")
    run = _run()

    assert store.save(run) == 1
    assert store.save(run) == 2
    loaded = store.load(run.run_id)

    assert loaded.pipeline_ref == "delivery"
    assert loaded.outcome("spec").artifact_ref == "docs/spec.md"
    assert loaded.outcome("spec").score == 9.0
    assert loaded.retry_counts == {"spec": 0, "review": 1}
    assert store.list_runs() == [run.run_id]


def test_stale_revision_is_rejected(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".stagegate")
    run = _run()
    store.save(run)
    store.save(run)

    with pytest.raises(RunStateError, match="Concurrent update"):
        store.save(run, expected_revision=1)
    assert store.save(run, expected_revision=2) == 3


def test_missing_run_and_invalid_ids(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".stagegate")

    with pytest.raises(RunStateError, match="not found"):
        store.load("run-missing")
    with pytest.raises(RunStateError, match="Invalid run id"):
        store.load("../escape")


def test_newer_schema_is_rejected(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".stagegate")
    run = _run()
    store.save(run)
    path = store.runs_dir / f"{run.run_id}.json"
    envelope = json.loads(path.read_text(encoding="utf-8"))
    envelope["schema_version"] = RunStore.SCHEMA_VERSION + 1
    path.write_text(json.dumps(envelope), encoding="utf-8")

    with pytest.raises(RunStateError, match="schema version"):
        store.load(run.run_id)


def test_archive_only_accepts_finished_runs(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".stagegate")
    run = _run()

    with pytest.raises(RunStateError, match="only finished runs"):
        store.archive(run)

    run.state = "completed"
    target = store.archive(run)

    assert target.parent == store.archive_dir
    assert store.list_runs() == []
    assert store.list_runs(include_archived=True) == [run.run_id]
    assert store.load(run.run_id).state == "completed"

    with pytest.raises(RunStateError, match="archived"):
        store.save(run)
    assert not (store.runs_dir / f"{run.run_id}.json").exists()


def test_events_are_appended_in_order(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".stagegate")

    store.append_event("run-ev", {"event": "stage_dispatched", "stage": "spec"})
    store.append_event("run-ev", {"event": "gate_decided", "stage": "spec"})

    events = store.events("run-ev")
    assert [event["event"] for event in events] == ["stage_dispatched", "gate_decided"]
    assert all("at" in event for event in events)
    assert store.events("run-none") == []


def test_lease_excludes_second_coordinator(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".stagegate")

    store.acquire_lease("run-lease", owner="host-a:1", ttl_seconds=60)
    store.acquire_lease("run-lease", owner="host-a:1", ttl_seconds=60)
    with pytest.raises(RunStateError, match="already coordinated"):
        store.acquire_lease("run-lease", owner="host-b:2", ttl_seconds=60)

    store.release_lease("run-lease", owner="host-b:2")
    with pytest.raises(RunStateError):
        store.acquire_lease("run-lease", owner="host-b:2", ttl_seconds=60)

    store.release_lease("run-lease", owner="host-a:1")
    store.acquire_lease("run-lease", owner="host-b:2", ttl_seconds=60)
    leases = json.loads(store.leases_file.read_text(encoding="utf-8"))
    assert leases["run-lease"]["owner"] == "host-b:2"


def test_lease_renewal_extends_expiry_for_same_owner(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".stagegate")

    store.acquire_lease("run-renew", owner="host-a:1", ttl_seconds=5)
    first = store.lease("run-renew")
    store.acquire_lease("run-renew", owner="host-a:1", ttl_seconds=120)
    renewed = store.lease("run-renew")

    assert first is not None and renewed is not None
    assert renewed["acquired_at"] == first["acquired_at"]
    assert renewed["expires_epoch"] > first["expires_epoch"] + 100
    assert store.lease("run-other") is None


def test_expired_lease_can_be_taken_over(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".stagegate")
    store.acquire_lease("run-stale", owner="host-a:1", ttl_seconds=60)
    leases = json.loads(store.leases_file.read_text(encoding="utf-8"))
    leases["run-stale"]["expires_epoch"] = 0
    store.leases_file.write_text(json.dumps(leases), encoding="utf-8")

    store.acquire_lease("run-stale", owner="host-b:2", ttl_seconds=60)

    assert store.lease("run-stale")["owner"] == "host-b:2"
