"""Credential storage backends."""

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from openrouter_proxy.errors import CredentialNotFound
from openrouter_proxy.models import Credential

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    async def get(self, credential_id: str) -> Credential: ...

    async def get_by_secret(self, secret: str) -> Optional[Credential]: ...

    async def list_eligible(self, now: datetime) -> List[Credential]: ...

    async def list_all(self) -> List[Credential]: ...

    async def upsert(self, credential: Credential) -> None: ...

    def next_id(self) -> str: ...


class InMemoryCredentialStore:
    """Dict-backed store. Records are copied in and out."""

    def __init__(self) -> None:
        self._records: Dict[str, Credential] = {}

    async def get(self, credential_id: str) -> Credential:
        record = self._records.get(credential_id)
        if record is None:
            raise CredentialNotFound(credential_id)
        return replace(record)

    async def get_by_secret(self, secret: str) -> Optional[Credential]:
        for record in self._records.values():
            if record.secret == secret:
                return replace(record)
        return None

    async def list_eligible(self, now: datetime) -> List[Credential]:
        return [
            replace(record)
            for record in self._records.values()
            if record.is_eligible(now)
        ]

    async def list_all(self) -> List[Credential]:
        return [replace(record) for record in self._records.values()]

    async def upsert(self, credential: Credential) -> None:
        self._records[credential.id] = replace(credential)

    def next_id(self) -> str:
        max_id = 0
        for credential_id in self._records.keys():
            if credential_id.startswith("key_"):
                suffix = credential_id[4:]
                if suffix.isdigit():
                    max_id = max(max_id, int(suffix))
        return f"key_{max_id + 1}"


class JsonFileCredentialStore(InMemoryCredentialStore):
    """Store that mirrors every record into a JSON file.

    The file is read once at construction and rewritten in full on every
    upsert. A missing file is created empty.
    """

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)
        self._write_lock = asyncio.Lock()

        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._write([])
            logger.info("Created empty keys file at %s", self.path)
            return

        with self.path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        if not isinstance(raw, list):
            raise ValueError(f"Keys file {self.path} must contain a JSON list")
        for item in raw:
            record = Credential.from_dict(item)
            self._records[record.id] = record

    async def upsert(self, credential: Credential) -> None:
        await super().upsert(credential)
        async with self._write_lock:
            payload = [record.to_dict() for record in self._records.values()]
            await asyncio.to_thread(self._write, payload)

    def _write(self, payload: List[Dict[str, object]]) -> None:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=".keys-", suffix=".json"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
