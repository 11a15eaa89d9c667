"""Durable wake-ups that survive the process being killed.

Each wake-up is a row holding the time it should fire. Nothing lives only in
memory: a process that dies between ``schedule()`` and the due time fires the
wake-up as soon as the next process calls ``run()`` (or ``fire_due()``).
"""

import asyncio
import logging
import sqlite3
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

WakeupCallback = Callable[[], Awaitable[None]]

PROCESS_NEXT = "process-next"
REMOTE_POLL = "remote-poll"


class DurableScheduler:
    """Named, persisted, one-shot wake-ups dispatched on an asyncio loop."""

    def __init__(self, db_path: str = "qa_extractor.db", table: str = "wakeups"):
        self.db_path = db_path
        self.table = table
        self._callbacks: dict[str, WakeupCallback] = {}
        self._tasks: set[asyncio.Task] = set()
        self._wake: Optional[asyncio.Event] = None
        self._stopped = False
        self._init_db()

    def _init_db(self):
        """Initialize the database schema."""
        conn = self._get_connection()
        try:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    name TEXT PRIMARY KEY,
                    fire_at REAL NOT NULL,
                    created_at REAL NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def register(self, name: str, callback: WakeupCallback):
        """Attach the coroutine function run when ``name`` fires."""
        self._callbacks[name] = callback

    def schedule(self, name: str, delay: float = 0.0) -> float:
        """Schedule (or reschedule) a wake-up ``delay`` seconds from now.

        Returns:
            The absolute fire time (epoch seconds)
        """
        now = time.time()
        fire_at = now + max(delay, 0.0)
        conn = self._get_connection()
        try:
            conn.execute(
                f"""
                INSERT INTO {self.table} (name, fire_at, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET fire_at = excluded.fire_at
                """,
                (name, fire_at, now),
            )
            conn.commit()
        finally:
            conn.close()

        logger.debug(f"Scheduled wake-up '{name}' in {delay:.1f}s")
        self._poke()
        return fire_at

    def cancel(self, name: str) -> bool:
        """Cancel a pending wake-up. Returns whether one existed."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(f"DELETE FROM {self.table} WHERE name = ?", (name,))
            conn.commit()
            cancelled = cursor.rowcount > 0
        finally:
            conn.close()

        if cancelled:
            logger.debug(f"Cancelled wake-up '{name}'")
            self._poke()
        return cancelled

    def pending(self, name: str) -> Optional[float]:
        """Fire time of a pending wake-up, or None."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                f"SELECT fire_at FROM {self.table} WHERE name = ?", (name,)
            ).fetchone()
            return row["fire_at"] if row else None
        finally:
            conn.close()

    def next_fire_time(self) -> Optional[float]:
        conn = self._get_connection()
        try:
            row = conn.execute(f"SELECT MIN(fire_at) AS fire_at FROM {self.table}").fetchone()
            return row["fire_at"] if row else None
        finally:
            conn.close()

    def _claim_due(self, now: Optional[float] = None) -> list[str]:
        """Remove and return every wake-up that is due, oldest first.

        A claimed wake-up is gone from the table before its callback runs,
        so it fires at most once.
        """
        now = time.time() if now is None else now
        conn = self._get_connection()
        try:
            rows = conn.execute(
                f"SELECT name FROM {self.table} WHERE fire_at <= ? ORDER BY fire_at, name",
                (now,),
            ).fetchall()
            names = [row["name"] for row in rows]
            if names:
                conn.executemany(
                    f"DELETE FROM {self.table} WHERE name = ?",
                    [(name,) for name in names],
                )
                conn.commit()
            return names
        finally:
            conn.close()

    async def _invoke(self, name: str):
        callback = self._callbacks.get(name)
        if callback is None:
            logger.warning(f"Wake-up '{name}' fired with no registered callback")
            return
        try:
            await callback()
        except Exception as e:
            logger.error(f"Wake-up '{name}' failed: {e}", exc_info=True)

    async def fire_due(self, now: Optional[float] = None) -> list[str]:
        """Run every due wake-up to completion, one after another.

        Returns:
            Names of the wake-ups that fired
        """
        names = self._claim_due(now)
        for name in names:
            await self._invoke(name)
        return names

    def _spawn(self, name: str):
        task = asyncio.create_task(self._invoke(name), name=f"wakeup:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _poke(self):
        if self._wake is not None:
            self._wake.set()

    async def run(self, max_sleep: float = 60.0):
        """Dispatch wake-ups until ``stop()`` is called."""
        self._stopped = False
        self._wake = asyncio.Event()
        logger.info("Durable scheduler started")

        try:
            while not self._stopped:
                self._wake.clear()
                for name in self._claim_due():
                    self._spawn(name)

                next_fire = self.next_fire_time()
                sleep_for = max_sleep
                if next_fire is not None:
                    sleep_for = min(max(next_fire - time.time(), 0.0), max_sleep)

                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=sleep_for)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._wake = None
            logger.info("Durable scheduler stopped")

    def stop(self):
        self._stopped = True
        self._poke()

    async def aclose(self):
        """Stop dispatching and cancel callbacks still running.

        Interrupted work is picked up by the recovery bootstrapper on the
        next start.
        """
        self.stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
