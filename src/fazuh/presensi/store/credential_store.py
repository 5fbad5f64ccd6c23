import asyncio
from collections import defaultdict
from dataclasses import asdict
from dataclasses import fields
from dataclasses import replace
import json
import os
from pathlib import Path
from typing import Any

from loguru import logger

from fazuh.presensi.error import AccountNotFound
from fazuh.presensi.error import DecryptionError
from fazuh.presensi.model import Account
from fazuh.presensi.model import AccountStats
from fazuh.presensi.model import Session
from fazuh.presensi.store.crypto import Cipher
from fazuh.presensi.store.crypto import new_salt

STAT_NAMES = {f.name for f in fields(AccountStats)}


def write_json(path: Path, data: dict[str, Any]):
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)


def load_or_create_salt(path: Path) -> bytes:
    """Reads the KDF salt, creating it on first use. The salt is not secret."""
    if path.exists():
        return path.read_bytes()
    path.parent.mkdir(parents=True, exist_ok=True)
    salt = new_salt()
    path.write_bytes(salt)
    logger.info(f"Created new key derivation salt at {path}")
    return salt


class CredentialStore:
    """Encrypted at-rest account records, keyed by account identifier.

    Records live in one JSON file. The password and the serialized session are
    each stored as a `{nonce, ciphertext, tag}` envelope; every other field is
    plain. All read-modify-write cycles on the file run under one lock.
    """

    def __init__(self, file_path: str | Path, cipher: Cipher):
        self.file_path = Path(file_path)
        self.cipher = cipher
        self._lock = asyncio.Lock()
        self._account_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._ensure_directory()

    def _ensure_directory(self):
        if not self.file_path.parent.exists():
            self.file_path.parent.mkdir(parents=True)

    def account_lock(self, account_id: str) -> asyncio.Lock:
        """Lock for serializing multi-step flows on one account.

        Store methods never take it themselves, so holders may call them freely.
        """
        return self._account_locks[account_id]

    async def _read(self) -> dict[str, dict[str, Any]]:
        if not self.file_path.exists():
            return {}
        content = await asyncio.to_thread(self.file_path.read_text, encoding="utf-8")
        return json.loads(content) if content.strip() else {}

    async def _write(self, records: dict[str, dict[str, Any]]):
        await asyncio.to_thread(write_json, self.file_path, records)

    def _encode(self, account: Account) -> dict[str, Any]:
        record = asdict(account)
        record["password"] = self.cipher.encrypt(account.password)
        record["session"] = (
            self.cipher.encrypt(json.dumps(account.session.to_dict())) if account.session else None
        )
        return record

    def _decode(self, record: dict[str, Any]) -> Account:
        password = self.cipher.decrypt(record["password"])
        session = None
        if record.get("session"):
            try:
                session = Session.from_dict(json.loads(self.cipher.decrypt(record["session"])))
            except json.JSONDecodeError as e:
                raise DecryptionError("Decrypted session is not valid JSON") from e

        return Account(
            account_id=record["account_id"],
            login_id=record["login_id"],
            password=password,
            session=session,
            student_name=record.get("student_name"),
            username=record.get("username"),
            is_active=record.get("is_active", True),
            registered_at=record["registered_at"],
            last_login=record.get("last_login"),
            last_check=record.get("last_check"),
            stats=AccountStats(**record.get("stats", {})),
        )

    async def get(self, account_id: str) -> Account | None:
        """Loads and decrypts one account.

        Raises:
            DecryptionError: If a secret field is corrupted or tampered with.
        """
        records = await self._read()
        record = records.get(account_id)
        if record is None:
            return None
        return self._decode(record)

    async def save(self, account: Account):
        async with self._lock:
            records = await self._read()
            records[account.account_id] = self._encode(account)
            await self._write(records)
        logger.success(f"Account saved: {account.login_id} ({account.account_id})")

    async def update(self, account_id: str, **changes: Any) -> Account:
        """Merges `changes` into the stored account and re-encrypts it.

        Raises:
            AccountNotFound: If no such account exists.
            DecryptionError: If the stored record cannot be decrypted.
        """
        async with self._lock:
            records = await self._read()
            if account_id not in records:
                raise AccountNotFound(account_id)
            account = replace(self._decode(records[account_id]), **changes)
            records[account_id] = self._encode(account)
            await self._write(records)
        logger.debug(f"Account updated: {account_id} ({', '.join(changes)})")
        return account

    async def increment_stat(self, account_id: str, stat: str) -> AccountStats:
        if stat not in STAT_NAMES:
            raise ValueError(f"Unknown stat: {stat}")

        async with self._lock:
            records = await self._read()
            record = records.get(account_id)
            if record is None:
                raise AccountNotFound(account_id)
            stats = record.setdefault("stats", {})
            stats[stat] = stats.get(stat, 0) + 1
            await self._write(records)
        return AccountStats(**stats)

    async def delete(self, account_id: str):
        async with self._lock:
            records = await self._read()
            if account_id not in records:
                raise AccountNotFound(account_id)
            del records[account_id]
            await self._write(records)
        self._account_locks.pop(account_id, None)
        logger.success(f"Account deleted: {account_id}")

    async def list_active(self) -> list[str]:
        """Returns identifiers of active accounts without decrypting anything."""
        records = await self._read()
        return [
            account_id for account_id, record in records.items() if record.get("is_active", True)
        ]
