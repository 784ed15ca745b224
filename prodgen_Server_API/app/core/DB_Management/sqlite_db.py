# sqlite_db.py
# Description: Thread-safe SQLite handle with async helpers that keep queries off the event loop
#
# Imports
import asyncio
import functools
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, List, Optional, Sequence
from loguru import logger

#######################################################################################################################
#
# Constants:

# Thread pool for database operations
DB_THREAD_POOL = ThreadPoolExecutor(max_workers=4, thread_name_prefix="pipeline_db")

MEMORY_PATH = ":memory:"

#######################################################################################################################
#
# Functions:

class SQLiteDatabase:
    """
    Single SQLite connection shared by the pipeline stores.

    All statements run under one lock; async callers go through the DB thread
    pool so the event loop is never blocked by disk I/O.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or MEMORY_PATH
        if self.path != MEMORY_PATH:
            Path(self.path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._executor = DB_THREAD_POOL
        if self.path != MEMORY_PATH:
            try:
                self._conn.execute("PRAGMA journal_mode=WAL")
            except sqlite3.DatabaseError as e:
                logger.warning(f"Could not enable WAL for {self.path}: {e}")
        logger.debug(f"SQLite database opened at {self.path}")

    def execute(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            with self._conn:
                cur = self._conn.execute(sql, tuple(params))
                return cur.fetchall()

    def executescript(self, script: str) -> None:
        with self._lock:
            self._conn.executescript(script)

    async def aexecute(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        """Async version of execute."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor,
            functools.partial(self.execute, sql, params),
        )

    async def ping(self) -> bool:
        rows = await self.aexecute("SELECT 1")
        return bool(rows) and rows[0][0] == 1

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error as e:
                logger.debug(f"SQLite close error for {self.path}: {e}")

#
# End of sqlite_db.py
#######################################################################################################################
