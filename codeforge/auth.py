"""Credential storage for the practice-sync login.

The token lives in a small JSON file, written atomically. Callers only ask
whether a token is present and what it is; validation happens on the first
API call that uses it.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from urllib.parse import parse_qs, urlparse

from .config import CREDENTIALS_PATH

logger = logging.getLogger(__name__)

TOKEN_KEY = "auth_token"


def token_from_uri(uri: str) -> str | None:
    """Pull ``token`` out of a login callback URI's query string."""
    values = parse_qs(urlparse(uri).query).get("token")
    if not values or not values[0]:
        return None
    return values[0]


class CredentialStore:
    def __init__(self, filepath: str | Path = CREDENTIALS_PATH):
        self.filepath = Path(filepath).expanduser().resolve()
        self._lock = asyncio.Lock()

    def _load_sync(self) -> dict:
        """Synchronous load; run via asyncio.to_thread()."""
        if not self.filepath.exists():
            return {}
        try:
            with open(self.filepath) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError):
            logger.warning("Corrupt credentials file %s, ignoring it", self.filepath)
            return {}
        return data if isinstance(data, dict) else {}

    def _save_sync(self, data: dict) -> None:
        """Synchronous save; run via asyncio.to_thread()."""
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(dir=str(self.filepath.parent), suffix=".tmp")
        try:
            with os.fdopen(tmp_fd, "w") as f:
                json.dump(data, f)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.filepath)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    async def save_token(self, token: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load_sync)
            data[TOKEN_KEY] = token
            await asyncio.to_thread(self._save_sync, data)

    async def get_token(self) -> str | None:
        async with self._lock:
            data = await asyncio.to_thread(self._load_sync)
        token = data.get(TOKEN_KEY)
        return token if isinstance(token, str) and token else None

    async def delete_token(self) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load_sync)
            if data.pop(TOKEN_KEY, None) is None:
                return
            await asyncio.to_thread(self._save_sync, data)

    async def is_logged_in(self) -> bool:
        return await self.get_token() is not None
