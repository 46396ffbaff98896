from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from maestro.errors import StateError
from maestro.models import PipelineRun


class StateStore:
    """JSON-file state with revisioned envelopes and a cross-process lock."""

    NAMESPACES = {"runs", "aborts"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")

    def _local_file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

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
                    raise StateError("Timed out waiting for state lock.") from exc
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
        target = self._local_file(namespace)
        temp = target.with_suffix(".json.tmp")
        temp.write_text(serialized, encoding="utf-8")
        os.replace(temp, target)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        data = default if raw_payload is None else raw_payload
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": data,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError(f"Concurrent state update detected for namespace '{namespace}'.")
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": self._utcnow_iso(),
                    "data": data,
                },
            )

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
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except StateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateError(str(last_error) if last_error else "State update failed.")

    def save_run(self, run: PipelineRun) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            runs = payload if isinstance(payload, dict) else {}
            runs[run.run_id] = run.to_dict()
            return runs

        self.update_json("runs", _updater, default={})

    def load_run(self, run_id: str) -> PipelineRun | None:
        runs = self.get_json("runs", default={})
        if not isinstance(runs, dict):
            return None
        payload = runs.get(run_id)
        if not isinstance(payload, dict):
            return None
        try:
            return PipelineRun.from_dict(payload)
        except (KeyError, ValueError) as exc:
            raise StateError(f"Corrupt run record {run_id}: {exc}") from exc

    def list_runs(self) -> list[PipelineRun]:
        runs = self.get_json("runs", default={})
        if not isinstance(runs, dict):
            return []
        loaded = [PipelineRun.from_dict(item) for item in runs.values() if isinstance(item, dict)]
        return sorted(loaded, key=lambda run: run.started_at)

    def request_abort(self, run_id: str) -> PipelineRun:
        """Flag a running run for abort and return it as stored.

        Only the flag is written here; the engine sees it before its next attempt and
        records the ``aborted`` status itself.
        """
        run = self.load_run(run_id)
        if run is None:
            raise StateError(f"Run not found: {run_id}")
        if run.status.terminal:
            return run

        def _updater(payload: Any) -> dict[str, Any]:
            aborts = payload if isinstance(payload, dict) else {}
            aborts[run_id] = self._utcnow_iso()
            return aborts

        self.update_json("aborts", _updater, default={})
        return run

    def abort_requested(self, run_id: str) -> bool:
        aborts = self.get_json("aborts", default={})
        return isinstance(aborts, dict) and run_id in aborts
