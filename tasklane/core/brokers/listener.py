# tasklane/core/brokers/listener.py
"""
PostgreSQL LISTEN/NOTIFY fan-out used to wake queue workers.

Flow:
  1. Producer: INSERT INTO tasklane_jobs + pg_notify(<queue channel>, job_id) in one transaction
  2. Worker: subscribes to its queue channel, wakes on each notification and claims
  3. Missed notifications are harmless: workers also poll on an interval
"""

from __future__ import annotations

import asyncio
import contextlib
from asyncio import Queue, Task
from collections import defaultdict
from typing import DefaultDict, Optional, Set

import psycopg
from psycopg import AsyncConnection, InterfaceError, Notify, OperationalError, sql
from result import Err, Ok

from tasklane.core.logging import get_logger
from tasklane.core.types.result_types import BrokerError, TaskResult
from tasklane.core.utils.db import is_retryable_connection_error

logger = get_logger('listener')

_SUBSCRIBER_QUEUE_MAXSIZE: int = 1024


class PostgresListener:
    """
    LISTEN/NOTIFY wrapper distributing notifications to per-subscriber queues.

    - A single dispatcher task is the only consumer of ``conn.notifies()``
    - Each subscriber gets its own bounded ``asyncio.Queue``; a full queue drops
      the notification instead of blocking other subscribers
    - On disconnect the dispatcher reconnects with exponential backoff and
      re-issues LISTEN for every tracked channel

    Usage:
        listener = PostgresListener(psycopg_url)
        listen_r = await listener.listen('tasklane_q_ab12...')
        queue = listen_r.ok_value
        notification = await queue.get()
        await listener.unsubscribe('tasklane_q_ab12...', queue)
        await listener.close()
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._conn: Optional[AsyncConnection] = None
        self._listen_channels: Set[str] = set()
        self._subs: DefaultDict[str, Set[Queue[Notify]]] = defaultdict(set)
        self._dispatcher_task: Optional[Task[None]] = None
        # Serializes LISTEN/UNLISTEN and subscription book-keeping.
        self._lock = asyncio.Lock()

    async def _ensure_connection(self) -> AsyncConnection:
        if self._conn is None or self._conn.closed:
            # autocommit: LISTEN takes effect immediately, not at transaction end
            self._conn = await psycopg.AsyncConnection.connect(
                self.database_url, autocommit=True
            )
            for channel in self._listen_channels:
                await self._conn.execute(sql.SQL('LISTEN {}').format(sql.Identifier(channel)))
        return self._conn

    async def _close_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None and not conn.closed:
            try:
                await conn.close()
            except (OperationalError, InterfaceError, OSError) as exc:
                logger.debug(f'Error closing listener connection: {exc}')

    async def _pause_dispatcher(self) -> bool:
        """Cancel and await the dispatcher, returning whether one was running."""
        if self._dispatcher_task is None:
            return False
        self._dispatcher_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._dispatcher_task
        self._dispatcher_task = None
        return True

    def _start_dispatcher_if_needed(self) -> None:
        if self._dispatcher_task is None:
            self._dispatcher_task = asyncio.create_task(
                self._dispatcher(), name='pg-listener-dispatcher'
            )

    async def _dispatcher(self) -> None:
        backoff = 0.2
        while True:
            try:
                conn = await self._ensure_connection()
                async for notification in conn.notifies():
                    backoff = 0.2
                    for q in list(self._subs.get(notification.channel, ())):
                        try:
                            q.put_nowait(notification)
                        except asyncio.QueueFull:
                            # Workers also poll, a dropped wakeup only adds latency.
                            pass
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError, OSError) as exc:
                logger.warning(f'Listener connection lost, reconnecting in {backoff:.1f}s: {exc}')
                await self._close_connection()
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 5.0)

    async def listen(self, channel_name: str) -> TaskResult[Queue[Notify]]:
        """Subscribe to a channel; LISTEN is issued once per channel."""
        try:
            async with self._lock:
                if channel_name not in self._listen_channels:
                    dispatcher_was_running = await self._pause_dispatcher()
                    try:
                        conn = await self._ensure_connection()
                        await conn.execute(
                            sql.SQL('LISTEN {}').format(sql.Identifier(channel_name))
                        )
                        self._listen_channels.add(channel_name)
                    finally:
                        if dispatcher_was_running:
                            self._start_dispatcher_if_needed()
                    self._start_dispatcher_if_needed()

                q: Queue[Notify] = asyncio.Queue(maxsize=_SUBSCRIBER_QUEUE_MAXSIZE)
                self._subs[channel_name].add(q)
                return Ok(q)
        except (OperationalError, InterfaceError, OSError) as exc:
            return Err(BrokerError(
                message=f'Failed to subscribe to {channel_name!r}: {exc}',
                retryable=is_retryable_connection_error(exc),
                metadata={'channel': channel_name},
                exception=exc,
            ))

    async def unsubscribe(self, channel_name: str, q: Optional[Queue[Notify]] = None) -> None:
        """Drop a local subscriber; UNLISTEN when it was the last one."""
        async with self._lock:
            subs = self._subs.get(channel_name)
            if subs is not None and q is not None:
                subs.discard(q)
            if subs:
                return
            self._subs.pop(channel_name, None)
            if channel_name not in self._listen_channels:
                return
            self._listen_channels.discard(channel_name)
            if self._conn is not None and not self._conn.closed:
                dispatcher_was_running = await self._pause_dispatcher()
                try:
                    await self._conn.execute(
                        sql.SQL('UNLISTEN {}').format(sql.Identifier(channel_name))
                    )
                except (OperationalError, InterfaceError, OSError) as exc:
                    logger.debug(f'UNLISTEN {channel_name} failed: {exc}')
                finally:
                    if dispatcher_was_running and self._listen_channels:
                        self._start_dispatcher_if_needed()

    async def close(self) -> None:
        """Stop the dispatcher and close the connection. Safe to call more than once."""
        await self._pause_dispatcher()
        await self._close_connection()
        self._subs.clear()
        self._listen_channels.clear()
