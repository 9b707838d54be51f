from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


class StateStoreError(RuntimeError):
    """Raised when loop state cannot be read or written."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def write_json_atomic(path: Path, payload: Any, *, indent: int | None = None) -> None:
    """Write JSON next to ``path`` and swap it in with ``os.replace``.

    A crash mid-write leaves either the previous file or the new one, never a
    truncated mix of both.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if indent is None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    else:
        serialized = json.dumps(payload, ensure_ascii=False, indent=indent) + "\n"
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(serialized)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise


class StateStore:
    NAMESPACES = {"rotation", "metrics"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.local_state_dir = self.state_dir / "state"
        self.local_state_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _local_file(self, namespace: str) -> Path:
        return self.local_state_dir / f"{namespace}.json"

    def _read_raw_json(self, namespace: str) -> Any:
        local_file = self._local_file(namespace)
        if not local_file.exists():
            return None
        try:
            return json.loads(local_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            schema_version = int(raw_payload.get("schema_version") or self.SCHEMA_VERSION)
            revision = int(raw_payload.get("revision") or 1)
            updated_at = raw_payload.get("updated_at") or utcnow_iso()
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
            "updated_at": utcnow_iso(),
            "data": data,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        raw = self._read_raw_json(namespace)
        return self._normalize_envelope(raw, default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        envelope = self.get_envelope(namespace, default=default)
        return envelope.get("data")

    def set_json(self, namespace: str, data: Any) -> int:
        self._validate_namespace(namespace)
        current = self.get_envelope(namespace, default={})
        revision = int(current.get("revision", 0)) + 1
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": utcnow_iso(),
            "data": data,
        }
        try:
            write_json_atomic(self._local_file(namespace), envelope)
        except OSError as exc:
            raise StateStoreError(f"Failed to write state namespace '{namespace}': {exc}") from exc
        return revision

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        current = self.get_json(namespace, default=default_value)
        updated = updater(current)
        self.set_json(namespace, updated)
        return updated

    def clear(self, namespace: str) -> None:
        self._validate_namespace(namespace)
        self._local_file(namespace).unlink(missing_ok=True)

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def set_metrics(self, metrics: dict[str, Any]) -> None:
        self.set_json("metrics", metrics)

    def record_event(self, event: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            events = metrics.get("events", [])
            if not isinstance(events, list):
                events = []
            event_payload = dict(event)
            event_payload.setdefault("at", utcnow_iso())
            events.append(event_payload)
            metrics["events"] = events[-200:]
            counters = metrics.get("counters", {})
            if not isinstance(counters, dict):
                counters = {}
            name = str(event.get("event", "unknown"))
            counters[name] = int(counters.get(name, 0)) + 1
            metrics["counters"] = counters
            return metrics

        self.update_json("metrics", _updater, default={})
