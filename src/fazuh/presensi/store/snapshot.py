import asyncio
import json
from pathlib import Path
from typing import Any

from loguru import logger

from fazuh.presensi.model import SnapshotEntry
from fazuh.presensi.store.credential_store import write_json


class SnapshotStore:
    """Manages the last observed content items per account and course.

    Layout on disk: `{account_id: {course_id: [{itemId, title, timestamp}, ...]}}`.
    """

    def __init__(self, file_path: str | Path = "data/snapshots.json"):
        self.file_path = Path(file_path)
        self._lock = asyncio.Lock()
        self._ensure_directory()

    def _ensure_directory(self):
        """Ensures the directory for the snapshot file exists."""
        if not self.file_path.parent.exists():
            self.file_path.parent.mkdir(parents=True)

    def exists(self) -> bool:
        return self.file_path.exists()

    async def _read(self) -> dict[str, dict[str, list[dict[str, Any]]]]:
        if not self.exists():
            return {}
        content = await asyncio.to_thread(self.file_path.read_text, encoding="utf-8")
        return json.loads(content) if content.strip() else {}

    async def get(self, account_id: str, course_id: str) -> list[SnapshotEntry]:
        """Returns the stored entries, or an empty list when the pair was never seen."""
        data = await self._read()
        entries = data.get(account_id, {}).get(course_id, [])
        return [SnapshotEntry.from_dict(entry) for entry in entries]

    async def save(self, account_id: str, course_id: str, entries: list[SnapshotEntry]):
        """Replaces the snapshot of one (account, course) pair."""
        async with self._lock:
            data = await self._read()
            data.setdefault(account_id, {})[course_id] = [entry.to_dict() for entry in entries]
            await asyncio.to_thread(write_json, self.file_path, data)
        logger.debug(f"Snapshot saved for {account_id}/{course_id}: {len(entries)} items")

    async def delete_account(self, account_id: str):
        async with self._lock:
            data = await self._read()
            if data.pop(account_id, None) is None:
                return
            await asyncio.to_thread(write_json, self.file_path, data)
        logger.info(f"Snapshots removed for {account_id}")
