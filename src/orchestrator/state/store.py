from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from orchestrator.errors import StateStoreError

logger = logging.getLogger(__name__)

EXECUTION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class StateStore:
    """JSON document store for executions and shared bookkeeping.

    Every document is wrapped in an envelope carrying a schema version and a
    monotonically increasing revision. Writes are serialized through a lock
    file and committed with an atomic rename, so a reader never observes a
    half-written document.
    """

    NAMESPACES = {"escalations", "metrics"}
    SCHEMA_VERSION = 1

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.state_dir = self.root / ".orchestrator" / "state"
        self.executions_dir = self.state_dir / "executions"
        self.executions_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    @staticmethod
    def _validate_execution_id(execution_id: str) -> None:
        if not EXECUTION_ID_PATTERN.match(execution_id):
            raise StateStoreError(f"Invalid execution id: {execution_id!r}")

    def _namespace_file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    def _execution_file(self, execution_id: str) -> Path:
        return self.executions_dir / f"{execution_id}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _read_raw_json(path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state document %s", path)
            return None

    @staticmethod
    def _write_raw_json(path: Path, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.stem}-",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(serialized)
            temp_path = handle.name
        try:
            os.replace(temp_path, path)
        except OSError as exc:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise StateStoreError(f"Failed to commit state document {path.name}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            schema_version = int(raw_payload.get("schema_version") or self.SCHEMA_VERSION)
            revision = int(raw_payload.get("revision") or 1)
            updated_at = raw_payload.get("updated_at") or self._utcnow_iso()
            return {
                "schema_version": schema_version,
                "revision": revision,
                "updated_at": updated_at,
                "data": raw_payload.get("data", default),
            }

        data = default if raw_payload is None else raw_payload
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0 if raw_payload is None else 1,
            "updated_at": self._utcnow_iso(),
            "data": data,
        }

    def _commit(self, path: Path, data: Any, expected_revision: int | None) -> int:
        with self._state_lock():
            current = self._normalize_envelope(self._read_raw_json(path), None)
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(f"Concurrent state update detected for '{path.stem}'.")
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            self._write_raw_json(path, envelope)
            return current_revision + 1

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        raw = self._read_raw_json(self._namespace_file(namespace))
        return self._normalize_envelope(raw, default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        envelope = self.get_envelope(namespace, default=default)
        return envelope.get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        self._commit(self._namespace_file(namespace), data, expected_revision)

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
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 0)))
                return updated
            except StateStoreError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")

    def get_execution_envelope(self, execution_id: str) -> dict[str, Any] | None:
        self._validate_execution_id(execution_id)
        raw = self._read_raw_json(self._execution_file(execution_id))
        if raw is None:
            return None
        return self._normalize_envelope(raw, {})

    def get_execution(self, execution_id: str) -> dict[str, Any] | None:
        envelope = self.get_execution_envelope(execution_id)
        if envelope is None:
            return None
        data = envelope.get("data")
        return data if isinstance(data, dict) else None

    def put_execution(
        self,
        execution_id: str,
        payload: dict[str, Any],
        expected_revision: int | None = None,
    ) -> int:
        self._validate_execution_id(execution_id)
        return self._commit(self._execution_file(execution_id), payload, expected_revision)

    def list_execution_ids(self) -> list[str]:
        return sorted(path.stem for path in self.executions_dir.glob("*.json"))

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def record_event(self, event: dict[str, Any], *, limit: int = 200) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            events = metrics.get("events", [])
            if not isinstance(events, list):
                events = []
            event_payload = dict(event)
            event_payload.setdefault("at", self._utcnow_iso())
            events.append(event_payload)
            metrics["events"] = events[-limit:]
            name = str(event.get("event", ""))
            if name:
                counters = metrics.get("counters", {})
                if not isinstance(counters, dict):
                    counters = {}
                counters[name] = int(counters.get(name, 0)) + 1
                metrics["counters"] = counters
            return metrics

        self.update_json("metrics", _updater, default={})

    def get_escalations(self) -> list[dict[str, Any]]:
        payload = self.get_json("escalations", default={"escalations": []})
        if not isinstance(payload, dict):
            return []
        escalations = payload.get("escalations", [])
        if isinstance(escalations, list):
            return escalations
        return []

    def add_escalation(self, escalation: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"escalations": []}
            result.setdefault("escalations", [])
            result["escalations"].append(escalation)
            return result

        self.update_json("escalations", _updater, default={"escalations": []})
