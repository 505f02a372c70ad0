from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from whs.models import ActiveWork, PendingQuestion, utcnow


class StateError(RuntimeError):
    """Raised when the on-disk state store cannot be read or written."""


class StateStore:
    """JSON envelopes under ``<state_dir>``, one file per namespace.

    Every write bumps a revision; ``update_json`` retries when another process
    wrote in between, so the CLI and a running dispatcher can share the files.
    """

    NAMESPACES = {"state", "questions", "control"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".state.lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return utcnow().isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")

    def path_for(self, namespace: str) -> Path:
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
        path = self.path_for(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        path = self.path_for(namespace)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

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
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": default,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        envelope = self._normalize_envelope(self._read_raw_json(namespace), default_value)
        if envelope["schema_version"] != self.SCHEMA_VERSION:
            # Unknown layout from another version: start fresh.
            envelope["data"] = default_value
        return envelope

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

    # dispatcher state

    def load_active_work(self) -> list[ActiveWork]:
        payload = self.get_json("state", default={})
        if not isinstance(payload, dict):
            return []
        entries = payload.get("active_work", [])
        if not isinstance(entries, list):
            return []
        return [ActiveWork.from_dict(item) for item in entries if isinstance(item, dict)]

    def save_dispatcher_state(
        self,
        active_work: list[ActiveWork],
        *,
        paused: bool,
        started_at: str | None = None,
    ) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            result["active_work"] = [work.to_dict() for work in active_work]
            result["paused"] = paused
            if started_at is not None:
                result["started_at"] = started_at
            result["last_updated"] = self._utcnow_iso()
            return result

        self.update_json("state", _updater, default={})

    def load_dispatcher_state(self) -> dict[str, Any]:
        payload = self.get_json("state", default={})
        return payload if isinstance(payload, dict) else {}

    def clear_active_work(self) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            result["active_work"] = []
            result["last_updated"] = self._utcnow_iso()
            return result

        self.update_json("state", _updater, default={})

    # pending questions

    def list_questions(self) -> list[PendingQuestion]:
        payload = self.get_json("questions", default={"pending": []})
        if not isinstance(payload, dict):
            return []
        return [
            PendingQuestion.from_dict(item)
            for item in payload.get("pending", [])
            if isinstance(item, dict)
        ]

    def get_question(self, question_id: str) -> PendingQuestion | None:
        for question in self.list_questions():
            if question.id == question_id:
                return question
        return None

    def add_question(self, question: PendingQuestion) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"pending": []}
            pending = [
                item for item in result.get("pending", []) if item.get("id") != question.id
            ]
            pending.append(question.to_dict())
            result["pending"] = pending
            return result

        self.update_json("questions", _updater, default={"pending": []})

    def remove_question(self, question_id: str) -> bool:
        removed = False

        def _updater(payload: Any) -> dict[str, Any]:
            nonlocal removed
            result = payload if isinstance(payload, dict) else {"pending": []}
            pending = result.get("pending", [])
            kept = [item for item in pending if item.get("id") != question_id]
            removed = len(kept) != len(pending)
            result["pending"] = kept
            return result

        self.update_json("questions", _updater, default={"pending": []})
        return removed

    # control channel

    def request_pause(self, paused: bool) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            result["paused"] = paused
            result["requested_at"] = self._utcnow_iso()
            return result

        self.update_json("control", _updater, default={})

    def queue_answer(self, question_id: str, answer: str) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            answers = [item for item in result.get("answers", []) if item.get("id") != question_id]
            answers.append({"id": question_id, "answer": answer})
            result["answers"] = answers
            return result

        self.update_json("control", _updater, default={})

    def take_control(self) -> dict[str, Any]:
        """Return and consume pending control requests."""
        if not self.get_json("control", default={}):
            return {}
        taken: dict[str, Any] = {}

        def _updater(payload: Any) -> dict[str, Any]:
            taken.clear()
            if isinstance(payload, dict):
                taken.update(payload)
            return {}

        self.update_json("control", _updater, default={})
        return taken
