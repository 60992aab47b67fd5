from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


class StateStoreError(RuntimeError):
    """Raised when shared-state operations fail."""


class StateStore:
    """JSON-file persistence for workflow and task records.

    Each namespace lives in its own file wrapped in a versioned envelope.
    Writers take an exclusive lock file and check the revision they read.
    """

    NAMESPACES = {"workflows", "tasks", "events"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.state_dir = state_dir.resolve()
        self.lock_timeout_seconds = lock_timeout_seconds
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _local_file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        local_file = self._local_file(namespace)
        if not local_file.exists():
            return None
        try:
            return json.loads(local_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        local_file = self._local_file(namespace)
        temp_file = local_file.with_suffix(".json.tmp")
        temp_file.write_text(serialized, encoding="utf-8")
        os.replace(temp_file, local_file)

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        raw = self._read_raw_json(namespace)
        if raw is None:
            return {
                "schema_version": self.SCHEMA_VERSION,
                "revision": 0,
                "updated_at": None,
                "data": default,
            }
        if isinstance(raw, dict) and "schema_version" in raw and "data" in raw:
            return raw
        # Bare payloads written before envelopes existed.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": None,
            "data": raw,
        }

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        data = self.get_envelope(namespace, default=default).get("data")
        return default if data is None else data

    def set_json(
        self,
        namespace: str,
        data: Any,
        *,
        expected_revision: int | None = None,
    ) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace)
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            self._write_raw_json(namespace, envelope)

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            data = current.get("data")
            updated = updater(default_value if data is None else data)
            try:
                self.set_json(
                    namespace, updated, expected_revision=int(current.get("revision", 0))
                )
                return updated
            except StateStoreError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")

    def _upsert(self, namespace: str, key: str, record: dict[str, Any]) -> None:
        now = self._utcnow_iso()

        def _updater(payload: Any) -> dict[str, Any]:
            records = payload if isinstance(payload, dict) else {}
            existing = records.get(key)
            merged = dict(existing) if isinstance(existing, dict) else {"created_at": now}
            merged.update(record)
            records[key] = merged
            return records

        self.update_json(namespace, _updater, default={})

    def save_workflow(self, record: dict[str, Any]) -> None:
        session_id = str(record.get("session_id", "")).strip()
        if not session_id:
            raise StateStoreError("Workflow record requires a session_id.")
        self._upsert("workflows", session_id, {**record, "updated_at": self._utcnow_iso()})

    def get_workflow(self, session_id: str) -> dict[str, Any] | None:
        workflows = self.get_json("workflows", default={})
        if not isinstance(workflows, dict):
            return None
        record = workflows.get(session_id)
        return record if isinstance(record, dict) else None

    def list_workflows(self) -> list[dict[str, Any]]:
        workflows = self.get_json("workflows", default={})
        if not isinstance(workflows, dict):
            return []
        records = [item for item in workflows.values() if isinstance(item, dict)]
        return sorted(records, key=lambda item: str(item.get("started_at") or ""))

    def save_task(self, record: dict[str, Any]) -> None:
        task_id = str(record.get("task_id", "")).strip()
        if not task_id:
            raise StateStoreError("Task record requires a task_id.")
        self._upsert("tasks", task_id, {**record, "updated_at": self._utcnow_iso()})

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        tasks = self.get_json("tasks", default={})
        if not isinstance(tasks, dict):
            return None
        record = tasks.get(task_id)
        return record if isinstance(record, dict) else None

    def list_tasks(self, session_id: str | None = None) -> list[dict[str, Any]]:
        tasks = self.get_json("tasks", default={})
        if not isinstance(tasks, dict):
            return []
        records = [item for item in tasks.values() if isinstance(item, dict)]
        if session_id is not None:
            records = [item for item in records if item.get("session_id") == session_id]
        return sorted(records, key=lambda item: str(item.get("created_at") or ""))

    def record_event(self, event: dict[str, Any], *, max_events: int = 200) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"events": []}
            events = result.get("events")
            if not isinstance(events, list):
                events = []
            events.append(event)
            result["events"] = events[-max_events:]
            return result

        self.update_json("events", _updater, default={"events": []})

    def get_events(self) -> list[dict[str, Any]]:
        payload = self.get_json("events", default={"events": []})
        if not isinstance(payload, dict):
            return []
        events = payload.get("events", [])
        return events if isinstance(events, list) else []
