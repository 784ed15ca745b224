"""
Encrypted API-key storage for the admin surface.

Values are sealed with AES-GCM using a key derived (SHA-256) from
APP_ENCRYPTION_KEY. Only metadata leaves the store through the HTTP API:
name, namespace, the last four characters and a masked rendering.
"""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from loguru import logger

from prodgen_Server_API.app.core.Admin.settings_store import DEFAULT_NAMESPACE
from prodgen_Server_API.app.core.DB_Management.sqlite_db import SQLiteDatabase
from prodgen_Server_API.app.core.Utils.time_utils import Clock, ms_to_datetime, now_ms


KEYS_SCHEMA = """
CREATE TABLE IF NOT EXISTS admin_api_keys (
    namespace TEXT NOT NULL,
    name TEXT NOT NULL,
    encrypted_value TEXT NOT NULL,
    iv TEXT NOT NULL,
    last_four TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (namespace, name)
);
"""


def _derive_key_from_passphrase(passphrase: str) -> bytes:
    return hashlib.sha256(passphrase.encode("utf-8")).digest()


def mask_secret(last_four: str) -> str:
    return f"****{last_four or '????'}"


class SecretCipher:
    def __init__(self, passphrase: Optional[str]):
        if not passphrase:
            passphrase = secrets.token_urlsafe(48)
            logger.warning(
                "APP_ENCRYPTION_KEY is not set; using a process-local key. "
                "Stored API keys will not be readable after a restart."
            )
        self._aesgcm = AESGCM(_derive_key_from_passphrase(passphrase))

    def encrypt(self, plaintext: str) -> Dict[str, str]:
        nonce = os.urandom(12)
        ct = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), associated_data=None)
        return {
            "value": base64.b64encode(ct).decode("utf-8"),
            "iv": base64.b64encode(nonce).decode("utf-8"),
        }

    def decrypt(self, value: str, iv: str) -> str:
        pt = self._aesgcm.decrypt(base64.b64decode(iv), base64.b64decode(value), associated_data=None)
        return pt.decode("utf-8")


class ApiKeyStore:
    def __init__(self, db: SQLiteDatabase, cipher: SecretCipher, clock: Clock = now_ms):
        self.db = db
        self.cipher = cipher
        self._clock = clock
        self.db.executescript(KEYS_SCHEMA)

    @staticmethod
    def _meta(row) -> Dict[str, Any]:
        return {
            "name": row["name"],
            "namespace": row["namespace"],
            "lastFour": row["last_four"],
            "maskedValue": mask_secret(row["last_four"]),
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        }

    async def set_key(self, name: str, value: str, namespace: str = DEFAULT_NAMESPACE) -> Dict[str, Any]:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("API key value must not be empty")
        sealed = self.cipher.encrypt(trimmed)
        now = ms_to_datetime(self._clock()).isoformat()
        await self.db.aexecute(
            "INSERT INTO admin_api_keys (namespace, name, encrypted_value, iv, last_four, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(namespace, name) DO UPDATE SET encrypted_value = excluded.encrypted_value, "
            "iv = excluded.iv, last_four = excluded.last_four, updated_at = excluded.updated_at",
            (namespace, name, sealed["value"], sealed["iv"], trimmed[-4:], now, now),
        )
        logger.info(f"Stored API key {namespace}/{name} (value kept encrypted)")
        rows = await self.db.aexecute(
            "SELECT * FROM admin_api_keys WHERE namespace = ? AND name = ?", (namespace, name)
        )
        return self._meta(rows[0])

    async def get_decrypted(self, name: str, namespace: str = DEFAULT_NAMESPACE) -> Optional[str]:
        rows = await self.db.aexecute(
            "SELECT * FROM admin_api_keys WHERE namespace = ? AND name = ?", (namespace, name)
        )
        if not rows:
            return None
        try:
            return self.cipher.decrypt(rows[0]["encrypted_value"], rows[0]["iv"])
        except InvalidTag:
            logger.error(f"API key {namespace}/{name} could not be decrypted with the current key")
            return None

    async def list_metadata(self, namespace: str = DEFAULT_NAMESPACE) -> List[Dict[str, Any]]:
        rows = await self.db.aexecute(
            "SELECT * FROM admin_api_keys WHERE namespace = ? ORDER BY name ASC", (namespace,)
        )
        return [self._meta(r) for r in rows]
