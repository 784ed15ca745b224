# settings_store.py
# Description: Namespaced JSON settings backing the admin settings endpoints
#
# Imports
import json
from typing import Any, Dict, List, Optional
#
# Local imports
from prodgen_Server_API.app.core.DB_Management.sqlite_db import SQLiteDatabase
from prodgen_Server_API.app.core.Utils.time_utils import Clock, ms_to_datetime, now_ms

#######################################################################################################################
#
# Constants:

DEFAULT_NAMESPACE = "global"

SETTINGS_SCHEMA = """
CREATE TABLE IF NOT EXISTS admin_settings (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value_json TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (namespace, key)
);
"""

#######################################################################################################################
#
# Functions:

class SettingsStore:
    def __init__(self, db: SQLiteDatabase, clock: Clock = now_ms):
        self.db = db
        self._clock = clock
        self.db.executescript(SETTINGS_SCHEMA)

    @staticmethod
    def _row(row) -> Dict[str, Any]:
        return {
            "namespace": row["namespace"],
            "key": row["key"],
            "value": json.loads(row["value_json"]) if row["value_json"] is not None else None,
            "updatedAt": row["updated_at"],
        }

    async def list(self, namespace: str = DEFAULT_NAMESPACE) -> List[Dict[str, Any]]:
        rows = await self.db.aexecute(
            "SELECT * FROM admin_settings WHERE namespace = ? ORDER BY key ASC", (namespace,)
        )
        return [self._row(r) for r in rows]

    async def get(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> Optional[Any]:
        rows = await self.db.aexecute(
            "SELECT * FROM admin_settings WHERE namespace = ? AND key = ?", (namespace, key)
        )
        return self._row(rows[0])["value"] if rows else None

    async def set(self, key: str, value: Any, namespace: str = DEFAULT_NAMESPACE) -> Dict[str, Any]:
        updated_at = ms_to_datetime(self._clock()).isoformat()
        await self.db.aexecute(
            "INSERT INTO admin_settings (namespace, key, value_json, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(namespace, key) DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at",
            (namespace, key, json.dumps(value), updated_at),
        )
        return {"namespace": namespace, "key": key, "value": value, "updatedAt": updated_at}

#
# End of settings_store.py
#######################################################################################################################
