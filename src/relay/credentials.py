# File: src/relay/credentials.py
# Filesystem credential store: one directory per user id, one JSON file per credential entry.
# The presence of a user's directory is the only on-disk sign of a prior session.

import asyncio
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List

import orjson

from relay.errors import CredentialStoreError, ValidationError

USER_ID_PATTERN = re.compile(r"[A-Za-z0-9_.@+-]{1,128}")
ENTRY_NAME_PATTERN = re.compile(r"[A-Za-z0-9_.:@+-]{1,200}")


def validate_user_id(user_id: str) -> str:
    if not user_id or not USER_ID_PATTERN.fullmatch(user_id) or user_id in (".", ".."):
        raise ValidationError(f"Invalid user id: {user_id!r}")
    return user_id


class CredentialStore:
    """Per-user credential directories under a sessions root."""

    def __init__(self, root_dir: str, logger: Any):
        self.root_dir = Path(root_dir)
        self.logger = logger

    def user_dir(self, user_id: str) -> Path:
        return self.root_dir / validate_user_id(user_id)

    async def load(self, user_id: str) -> Dict[str, Any]:
        """Return the stored record, creating an empty directory when there is none."""
        path = self.user_dir(user_id)
        try:
            record = await asyncio.to_thread(self._load_sync, path)
        except (OSError, orjson.JSONDecodeError) as e:
            raise CredentialStoreError(f"Failed to load credentials for {user_id}: {e}") from e
        self.logger.debug(f"Loaded {len(record)} credential entries for {user_id}")
        return record

    async def save(self, user_id: str, record: Dict[str, Any]) -> None:
        """Write each entry atomically; a None value deletes that entry."""
        path = self.user_dir(user_id)
        for name in record:
            if not ENTRY_NAME_PATTERN.fullmatch(name) or name in (".", ".."):
                raise CredentialStoreError(f"Invalid credential entry name: {name!r}")
        try:
            await asyncio.to_thread(self._save_sync, path, record)
        except (OSError, TypeError) as e:
            raise CredentialStoreError(f"Failed to save credentials for {user_id}: {e}") from e
        self.logger.debug(f"Saved {len(record)} credential entries for {user_id}")

    async def wipe(self, user_id: str) -> None:
        """Delete the user's directory. Absence counts as success."""
        path = self.user_dir(user_id)
        try:
            removed = await asyncio.to_thread(self._wipe_sync, path)
        except OSError as e:
            raise CredentialStoreError(f"Failed to wipe credentials for {user_id}: {e}") from e
        if removed:
            self.logger.info(f"Wiped credentials for {user_id}")

    async def exists(self, user_id: str) -> bool:
        return await asyncio.to_thread(self.user_dir(user_id).is_dir)

    async def list_users(self) -> List[str]:
        def _scan() -> List[str]:
            if not self.root_dir.is_dir():
                return []
            return sorted(
                entry.name for entry in self.root_dir.iterdir()
                if entry.is_dir() and USER_ID_PATTERN.fullmatch(entry.name) and entry.name not in (".", "..")
            )
        return await asyncio.to_thread(_scan)

    async def wipe_all(self) -> int:
        users = await self.list_users()
        for user_id in users:
            await self.wipe(user_id)
        return len(users)

    # ---- blocking helpers (run in a worker thread) ----

    @staticmethod
    def _load_sync(path: Path) -> Dict[str, Any]:
        path.mkdir(parents=True, exist_ok=True)
        record = {}
        for file in sorted(path.glob("*.json")):
            record[file.stem] = orjson.loads(file.read_bytes())
        return record

    @staticmethod
    def _save_sync(path: Path, record: Dict[str, Any]) -> None:
        path.mkdir(parents=True, exist_ok=True)
        for name, value in record.items():
            target = path / f"{name}.json"
            if value is None:
                target.unlink(missing_ok=True)
                continue
            data = orjson.dumps(value)
            fd, tmp_name = tempfile.mkstemp(dir=path, prefix=f".{name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as tmp:
                    tmp.write(data)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

    @staticmethod
    def _wipe_sync(path: Path) -> bool:
        if not path.exists():
            return False
        shutil.rmtree(path)
        return True
