"""Durable request store: one JSON snapshot guarded by an advisory file lock.

Every mutation is read-modify-write under an exclusive lock on
``<snapshot>.lock``; the new snapshot is written to a temp file and moved into
place with ``os.replace`` so readers never see a half-written file. Several
processes (the service and the dashboard, for instance) can share one file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from filelock import FileLock, Timeout

from tempadmin.errors import NotFoundError, StoreError
from tempadmin.models import PrivilegeRequest

logger = logging.getLogger(__name__)

Mutator = Callable[[PrivilegeRequest], Optional[PrivilegeRequest]]
Snapshot = Dict[str, dict]


class RequestStore:
    def __init__(
        self,
        path: Union[str, Path],
        *,
        write_retries: int = 5,
        write_min_backoff: float = 0.1,
        write_max_backoff: float = 1.0,
        read_retries: int = 2,
        read_min_backoff: float = 0.05,
        read_max_backoff: float = 0.2,
    ):
        self.path = Path(path)
        self._lock = FileLock(f"{self.path}.lock")
        # FileLock is re-entrant inside one process, so same-process writers
        # are serialized here as well.
        self._write_guard = asyncio.Lock()
        self._write_policy = (write_retries, write_min_backoff, write_max_backoff)
        self._read_policy = (read_retries, read_min_backoff, read_max_backoff)

    # -------------------------------------------------------------------
    # Lock helpers
    # -------------------------------------------------------------------

    async def _acquire(self, retries: int, min_backoff: float, max_backoff: float) -> bool:
        """Try the file lock up to ``retries + 1`` times with exponential backoff."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(retries + 1):
            try:
                self._lock.acquire(timeout=0)
                return True
            except Timeout:
                if attempt == retries:
                    return False
                await asyncio.sleep(min(max_backoff, min_backoff * (2 ** attempt)))
        return False

    # -------------------------------------------------------------------
    # Snapshot I/O (runs in a worker thread)
    # -------------------------------------------------------------------

    def _read_snapshot(self) -> Snapshot:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise StoreError("Failed to read request store", {"error": str(exc)}) from exc

        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoreError("Request store is not valid JSON", {"error": str(exc)}) from exc

        # Older snapshots were a plain list of records
        if isinstance(data, list):
            return {row["id"]: row for row in data if isinstance(row, dict) and "id" in row}
        if isinstance(data, dict):
            return data
        raise StoreError("Request store has an unexpected layout")

    def _write_snapshot(self, snapshot: Snapshot) -> None:
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as fp:
                json.dump(snapshot, fp, indent=2)
                fp.flush()
                os.fsync(fp.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise StoreError("Failed to write request store", {"error": str(exc)}) from exc

    # -------------------------------------------------------------------
    # Locked read-modify-write
    # -------------------------------------------------------------------

    async def _mutate(self, fn: Callable[[Snapshot], PrivilegeRequest]) -> PrivilegeRequest:
        async with self._write_guard:
            if not await self._acquire(*self._write_policy):
                logger.error("store.lock_timeout", extra={"extra": {"path": str(self.path)}})
                raise StoreError("Timed out waiting for the request store lock")
            try:
                snapshot = await asyncio.to_thread(self._read_snapshot)
                result = fn(snapshot)
                await asyncio.to_thread(self._write_snapshot, snapshot)
                return result
            finally:
                self._lock.release()

    async def _load(self) -> Snapshot:
        """Read the snapshot, preferring a locked read but never blocking on it."""
        locked = await self._acquire(*self._read_policy)
        if not locked:
            logger.warning("store.read_unlocked", extra={"extra": {"path": str(self.path)}})
        try:
            return await asyncio.to_thread(self._read_snapshot)
        finally:
            if locked:
                self._lock.release()

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    async def create(self, request: PrivilegeRequest) -> PrivilegeRequest:
        def _insert(snapshot: Snapshot) -> PrivilegeRequest:
            if request.id in snapshot:
                raise StoreError("Request id already exists", {"request_id": request.id})
            snapshot[request.id] = request.model_dump(mode="json")
            return request

        return await self._mutate(_insert)

    async def find_by_id(self, request_id: str) -> Optional[PrivilegeRequest]:
        row = (await self._load()).get(request_id)
        return PrivilegeRequest.model_validate(row) if row is not None else None

    async def list_all(self) -> List[PrivilegeRequest]:
        return [PrivilegeRequest.model_validate(row) for row in (await self._load()).values()]

    async def update(self, request_id: str, mutator: Mutator) -> PrivilegeRequest:
        """Apply ``mutator`` to the latest stored copy of ``request_id``.

        The mutator receives a fresh model and may modify it in place or
        return a replacement. If it raises, nothing is written and the
        exception propagates.
        """

        def _apply(snapshot: Snapshot) -> PrivilegeRequest:
            row = snapshot.get(request_id)
            if row is None:
                raise NotFoundError(request_id)
            current = PrivilegeRequest.model_validate(row)
            updated = mutator(current) or current
            if updated.id != request_id:
                raise StoreError("Mutator changed the request id", {"request_id": request_id})
            snapshot[request_id] = updated.model_dump(mode="json")
            return updated

        return await self._mutate(_apply)
