import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .errors import UsageLogFailure
from .models import UsageRecord
from .registry import RegistryStore

logger = logging.getLogger(__name__)


@dataclass
class UsageEntry:
    api_id: uuid.UUID
    method: str
    path: str
    status_code: int
    response_time_ms: int
    api_key_id: Optional[uuid.UUID] = None
    endpoint_id: Optional[uuid.UUID] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_record(self) -> UsageRecord:
        return UsageRecord(
            id=uuid.uuid4(),
            api_id=self.api_id,
            api_key_id=self.api_key_id,
            endpoint_id=self.endpoint_id,
            method=self.method,
            path=self.path,
            status_code=self.status_code,
            response_time_ms=max(0, self.response_time_ms),
            created_at=self.created_at,
        )


def log_usage_failure(failure: UsageLogFailure):
    logger.error(f"!!! Usage writer error: {failure}", exc_info=failure.cause)


class UsageRecorder:
    """
    Fire-and-forget usage log. ``record`` never blocks and never raises: it
    drops the entry (with a warning) when the queue is full. A background task
    drains the queue in batches; write failures go to ``on_error`` and the
    batch is dropped. Delivery is at most once.
    """

    def __init__(
        self,
        store: RegistryStore,
        max_queue: int = 1000,
        batch_size: int = 100,
        on_error: Callable[[UsageLogFailure], None] = log_usage_failure,
    ):
        self._store = store
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._batch_size = max(1, batch_size)
        self._on_error = on_error
        self._task: Optional[asyncio.Task] = None
        self.dropped = 0

    def record(self, entry: UsageEntry) -> bool:
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Usage queue full, dropping record for {entry.method} {entry.path}")
            return False
        return True

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="usage-writer")

    async def flush(self):
        """Wait until every queued entry has been written or dropped."""
        await self._queue.join()

    async def stop(self):
        if self._task is None:
            return
        await self.flush()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.info("Usage writer task cancelled.")
        self._task = None

    def _take_batch(self, first: UsageEntry) -> List[UsageEntry]:
        batch = [first]
        while len(batch) < self._batch_size:
            try:
                batch.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return batch

    async def _run(self):
        while True:
            first = await self._queue.get()
            batch = self._take_batch(first)
            try:
                await self._store.insert_usage_records([entry.to_record() for entry in batch])
                logger.debug(f"Wrote {len(batch)} usage records.")
            except Exception as e:
                self.dropped += len(batch)
                try:
                    self._on_error(UsageLogFailure(len(batch), e))
                except Exception:
                    logger.exception("Usage error handler raised")
            finally:
                for _ in batch:
                    self._queue.task_done()
