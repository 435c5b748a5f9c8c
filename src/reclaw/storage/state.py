from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from reclaw.storage.models import ReclawState


def load_state(path: Path) -> ReclawState | None:
    """Read persisted run state.

    Missing, unreadable, corrupt and schema-invalid files all yield None so the
    caller can start a fresh run at the same path.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except (FileNotFoundError, IsADirectoryError, PermissionError, UnicodeDecodeError):
        return None

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None

    try:
        return ReclawState.model_validate(data)
    except ValidationError:
        return None


def write_state_payload(path: Path, payload: dict[str, Any]) -> None:
    """Atomically replace the state file with ``payload``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        tmp_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        tmp_path.replace(path)
    finally:
        tmp_path.unlink(missing_ok=True)


def save_state(path: Path, state: ReclawState) -> None:
    write_state_payload(path, state.to_json_dict())


class StateWriter:
    """Single task that owns the state file and applies save requests in order.

    ``save`` snapshots the state at call time and resolves once that snapshot is
    on disk, so the last completed save always reflects everything recorded
    before it was requested.
    """

    def __init__(self, path: Path):
        self.path = path
        self._queue: asyncio.Queue[tuple[dict[str, Any], asyncio.Future[None]] | None] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> StateWriter:
        self._task = asyncio.create_task(self._drain())
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def save(self, state: ReclawState) -> None:
        if self._task is None:
            raise RuntimeError("StateWriter is not running")
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        await self._queue.put((state.to_json_dict(), future))
        await future

    async def close(self) -> None:
        if self._task is None:
            return
        await self._queue.put(None)
        await self._task
        self._task = None

    async def _drain(self) -> None:
        while True:
            request = await self._queue.get()
            if request is None:
                return
            payload, future = request
            try:
                await asyncio.to_thread(write_state_payload, self.path, payload)
            except OSError as exc:
                if not future.cancelled():
                    future.set_exception(exc)
            else:
                if not future.cancelled():
                    future.set_result(None)
