from __future__ import annotations

import json
import os
import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from stagegate.errors import RunStateError
from stagegate.pipeline.run import WorkflowRun

RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class RunStore:
    """File-backed persistence for workflow runs, leases and event logs."""

    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.runs_dir = self.state_dir / "runs"
        self.archive_dir = self.state_dir / "archive"
        self.events_dir = self.state_dir / "events"
        self.leases_file = self.state_dir / "leases.json"
        self.lock_file = self.state_dir / ".lock"
        for directory in (self.runs_dir, self.archive_dir, self.events_dir):
            directory.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_run_id(run_id: str) -> None:
        if not RUN_ID_PATTERN.match(run_id):
            raise RunStateError(f"Invalid run id: {run_id!r}")

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise RunStateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _run_file(self, run_id: str, *, archived: bool = False) -> Path:
        self._validate_run_id(run_id)
        return (self.archive_dir if archived else self.runs_dir) / f"{run_id}.json"

    @staticmethod
    def _read_json(path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RunStateError(f"Corrupt state file: {path}") from exc

    @staticmethod
    def _write_json(path: Path, payload: Any) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        temp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(temp_path, path)

    def get_envelope(self, run_id: str) -> dict[str, Any] | None:
        for archived in (False, True):
            raw = self._read_json(self._run_file(run_id, archived=archived))
            if raw is None:
                continue
            if not isinstance(raw, dict) or "data" not in raw:
                raise RunStateError(f"Run {run_id} has an unrecognized state layout.")
            return raw
        return None

    def save(self, run: WorkflowRun, expected_revision: int | None = None) -> int:
        path = self._run_file(run.run_id)
        with self._state_lock():
            if self._run_file(run.run_id, archived=True).exists():
                raise RunStateError(f"Run {run.run_id} is archived and can no longer change.")
            current = self._read_json(path)
            current_revision = int(current.get("revision", 0)) if isinstance(current, dict) else 0
            if expected_revision is not None and expected_revision != current_revision:
                raise RunStateError(f"Concurrent update detected for run '{run.run_id}'.")
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": self._utcnow_iso(),
                "data": run.to_dict(),
            }
            self._write_json(path, envelope)
        return current_revision + 1

    def load(self, run_id: str) -> WorkflowRun:
        envelope = self.get_envelope(run_id)
        if envelope is None:
            raise RunStateError(f"Run not found: {run_id}")
        schema_version = int(envelope.get("schema_version") or self.SCHEMA_VERSION)
        if schema_version > self.SCHEMA_VERSION:
            raise RunStateError(
                f"Run {run_id} uses schema version {schema_version}; "
                f"this engine supports up to {self.SCHEMA_VERSION}."
            )
        return WorkflowRun.from_dict(envelope["data"])

    def archive(self, run: WorkflowRun) -> Path:
        """Move a finished run out of the active set."""
        if not run.finished:
            raise RunStateError(f"Run {run.run_id} is {run.state}; only finished runs archive.")
        self.save(run)
        source = self._run_file(run.run_id)
        target = self._run_file(run.run_id, archived=True)
        with self._state_lock():
            os.replace(source, target)
        return target

    def list_runs(self, *, include_archived: bool = False) -> list[str]:
        directories = [self.runs_dir, self.archive_dir] if include_archived else [self.runs_dir]
        run_ids: set[str] = set()
        for directory in directories:
            run_ids.update(path.stem for path in directory.glob("*.json"))
        return sorted(run_ids)

    def append_event(self, run_id: str, event: dict[str, Any]) -> None:
        self._validate_run_id(run_id)
        payload = dict(event)
        payload.setdefault("at", self._utcnow_iso())
        with (self.events_dir / f"{run_id}.jsonl").open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")

    def events(self, run_id: str) -> list[dict[str, Any]]:
        self._validate_run_id(run_id)
        path = self.events_dir / f"{run_id}.jsonl"
        if not path.exists():
            return []
        events: list[dict[str, Any]] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        return events

    def acquire_lease(self, run_id: str, *, owner: str, ttl_seconds: float = 60.0) -> None:
        """Claim exclusive coordination of ``run_id``; expired leases may be taken over.

        Calling again with the same owner renews the lease, which is how a
        coordinator heartbeats while stages are in flight.
        """
        self._validate_run_id(run_id)
        now_epoch = time.time()
        with self._state_lock():
            leases = self._read_json(self.leases_file)
            leases = leases if isinstance(leases, dict) else {}
            active = leases.get(run_id)
            acquired_at = self._utcnow_iso()
            if isinstance(active, dict):
                holder = str(active.get("owner", ""))
                expires = float(active.get("expires_epoch", 0))
                if holder and holder != owner and expires > now_epoch:
                    raise RunStateError(
                        f"Run {run_id} is already coordinated by '{holder}'."
                    )
                if holder == owner:
                    acquired_at = str(active.get("acquired_at") or acquired_at)
            leases[run_id] = {
                "owner": owner,
                "acquired_at": acquired_at,
                "heartbeat_at": self._utcnow_iso(),
                "expires_epoch": now_epoch + max(1.0, ttl_seconds),
            }
            self._write_json(self.leases_file, leases)

    def lease(self, run_id: str) -> dict[str, Any] | None:
        self._validate_run_id(run_id)
        leases = self._read_json(self.leases_file)
        if not isinstance(leases, dict):
            return None
        active = leases.get(run_id)
        return dict(active) if isinstance(active, dict) else None

    def release_lease(self, run_id: str, *, owner: str) -> None:
        with self._state_lock():
            leases = self._read_json(self.leases_file)
            if not isinstance(leases, dict):
                return
            active = leases.get(run_id)
            if isinstance(active, dict) and active.get("owner") == owner:
                del leases[run_id]
                self._write_json(self.leases_file, leases)
