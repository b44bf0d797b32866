"""JSON checkpoint file that lets long batch jobs resume where they stopped.

Schema: ``{task_key: int | {"done": bool, "attempts": int}}``. Integers are
cursors (e.g. the last processed listing id) or counters; dicts are per-task
completion state. The file is rewritten in full after every unit of work.

There is no file locking. Two processes pointed at the same ledger will lose
updates; split the work between them instead. Workers inside one process share
a single ``ProgressLedger`` and serialize writes through ``ledger.lock``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable, Optional, Union

logger = logging.getLogger(__name__)

TaskState = Union[int, dict[str, Any]]


class ProgressLedger:
    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._data: dict[str, TaskState] = {}
        self.lock = asyncio.Lock()

    @classmethod
    def open(cls, path: Optional[Union[str, Path]]) -> "ProgressLedger":
        ledger = cls(path)
        ledger.load()
        return ledger

    def load(self) -> dict[str, TaskState]:
        self._data = {}
        if not self.path or not self.path.exists():
            return self._data
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Progress file %s is unreadable, starting fresh: %s", self.path, exc)
            return self._data
        if isinstance(raw, dict):
            self._data = {str(k): v for k, v in raw.items() if isinstance(v, (int, dict))}
        return self._data

    def save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def clear(self) -> None:
        self._data = {}
        if self.path and self.path.exists():
            self.path.unlink()

    def as_dict(self) -> dict[str, TaskState]:
        return json.loads(json.dumps(self._data))

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str) -> Optional[TaskState]:
        return self._data.get(key)

    def is_done(self, key: str) -> bool:
        state = self._data.get(key)
        return isinstance(state, dict) and bool(state.get("done"))

    def attempts(self, key: str) -> int:
        state = self._data.get(key)
        return int(state.get("attempts") or 0) if isinstance(state, dict) else 0

    def mark(self, key: str, *, done: bool, attempts: Optional[int] = None) -> dict[str, Any]:
        state = {"done": bool(done), "attempts": attempts if attempts is not None else self.attempts(key) + 1}
        self._data[key] = state
        return state

    def cursor(self, key: str, default: int = 0) -> int:
        value = self._data.get(key)
        return value if isinstance(value, int) else default

    def set_cursor(self, key: str, value: int) -> None:
        self._data[key] = int(value)

    def pending(self, keys: Iterable[str]) -> list[str]:
        return [key for key in keys if not self.is_done(key)]
