# tasklane/core/worker/batcher.py
from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Optional

from result import Err, Ok

from tasklane.core.defaults import DEFAULT_MAX_UPDATE_BATCH_SIZE
from tasklane.core.logging import get_logger, log_ctx
from tasklane.core.repos.tasks import TaskUpdate
from tasklane.core.types.result_types import TaskResult

logger = get_logger('batcher')

type BulkUpdateFn = Callable[[Sequence[TaskUpdate]], Awaitable[TaskResult[int]]]


@dataclass(slots=True)
class PendingUpdate:
    task_id: str
    data: dict[str, Any]
    # Called once the batch holding this update has been written.
    on_success: Optional[Callable[[], None]] = None


class BulkUpdateBatcher:
    """
    Coalesces status writes into bulk updates.

    There is no time window: the first enqueued update starts a drain right
    away, and whatever piles up while a batch is in flight goes into the next
    one.  At most one drain runs at a time.  A failed batch is logged and
    dropped; the drain carries on with the rest of the queue.
    """

    def __init__(
        self,
        bulk_update: BulkUpdateFn,
        max_batch_size: int = DEFAULT_MAX_UPDATE_BATCH_SIZE,
        *,
        name: str = 'tasks',
    ):
        if max_batch_size < 1:
            raise ValueError('max_batch_size must be >= 1')
        self._bulk_update = bulk_update
        self.max_batch_size = max_batch_size
        self.name = name
        self._pending: deque[PendingUpdate] = deque()
        self._drain_task: Optional[asyncio.Task[None]] = None
        self.batches_written = 0
        self.batches_failed = 0

    @property
    def is_draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def enqueue(self, update: PendingUpdate) -> None:
        self._pending.append(update)
        if not self.is_draining:
            self._drain_task = asyncio.create_task(
                self._drain(), name=f'batcher-drain-{self.name}'
            )

    async def flush(self) -> None:
        """Wait until every update enqueued so far has been attempted."""
        while True:
            drain = self._drain_task
            if drain is not None and not drain.done():
                await drain
                continue
            if not self._pending:
                return
            self._drain_task = asyncio.create_task(
                self._drain(), name=f'batcher-drain-{self.name}'
            )

    async def _drain(self) -> None:
        while self._pending:
            size = min(self.max_batch_size, len(self._pending))
            batch = [self._pending.popleft() for _ in range(size)]
            await self._write(batch)

    async def _write(self, batch: list[PendingUpdate]) -> None:
        updates = [TaskUpdate(task_id=p.task_id, data=p.data) for p in batch]
        try:
            result = await self._bulk_update(updates)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.batches_failed += 1
            logger.exception(
                f'Bulk update raised, dropping {len(batch)} update(s): {exc}',
                extra=log_ctx(batcher=self.name),
            )
            return

        match result:
            case Err(err):
                self.batches_failed += 1
                logger.error(
                    f'Bulk update failed, dropping {len(batch)} update(s): {err.message}',
                    extra=log_ctx(
                        batcher=self.name,
                        task_ids=','.join(p.task_id for p in batch[:10]),
                    ),
                )
            case Ok(count):
                self.batches_written += 1
                logger.debug(
                    f'Bulk update wrote {count}/{len(batch)} row(s)',
                    extra=log_ctx(batcher=self.name),
                )
                for pending in batch:
                    if pending.on_success is None:
                        continue
                    try:
                        pending.on_success()
                    except Exception:
                        logger.exception(
                            'on_success callback raised',
                            extra=log_ctx(batcher=self.name, task_id=pending.task_id),
                        )
