import asyncio
import logging
import secrets
import threading
import time
from typing import Callable, Optional

from .errors import NotFoundError
from .interfaces import ArtifactRecord

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SEC = 10 * 60
DEFAULT_GRACE_SEC = 60


class ArtifactStore:
    """In-memory store for finished conversion results.

    Records live until the retention window elapses or, once downloaded,
    until the grace delay after the first retrieval. Expired records are
    never served even if the sweep has not removed them yet.
    """

    def __init__(
        self,
        *,
        retention_sec: float = DEFAULT_RETENTION_SEC,
        grace_sec: float = DEFAULT_GRACE_SEC,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._retention = retention_sec
        self._grace = grace_sec
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._records: dict[str, ArtifactRecord] = {}
        # identifier -> absolute time after which the record is dropped
        self._delete_at: dict[str, float] = {}
        self._janitor: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, identifier: object) -> bool:
        with self._lock:
            return identifier in self._records

    def _new_identifier(self) -> str:
        stamp = int(self._clock() * 1000)
        return f"{stamp}-{secrets.token_urlsafe(9)}"

    def put(self, content: bytes, content_type: str, display_name: str) -> str:
        self.sweep()
        with self._lock:
            identifier = self._new_identifier()
            while identifier in self._records:
                identifier = self._new_identifier()
            self._records[identifier] = ArtifactRecord(
                identifier=identifier,
                content=bytes(content),
                content_type=content_type,
                display_name=display_name,
                created_at=self._clock(),
            )
        logger.debug("stored artifact %s (%d bytes, %s)", identifier, len(content), content_type)
        return identifier

    def get(self, identifier: str) -> ArtifactRecord:
        now = self._clock()
        with self._lock:
            record = self._records.get(identifier)
            if record is None or self._is_expired(identifier, record, now):
                raise NotFoundError("File not found or expired")
            return record

    def schedule_delete(self, identifier: str, delay: Optional[float] = None) -> None:
        """Drop the record once ``delay`` seconds (the grace period) have passed.

        A later call never extends an earlier deadline.
        """
        deadline = self._clock() + (self._grace if delay is None else delay)
        with self._lock:
            if identifier not in self._records:
                return
            current = self._delete_at.get(identifier)
            if current is None or deadline < current:
                self._delete_at[identifier] = deadline

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [
                identifier
                for identifier, record in self._records.items()
                if self._is_expired(identifier, record, now)
            ]
            for identifier in stale:
                del self._records[identifier]
                self._delete_at.pop(identifier, None)
        if stale:
            logger.info("swept %d expired artifact(s)", len(stale))
        return len(stale)

    def _is_expired(self, identifier: str, record: ArtifactRecord, now: float) -> bool:
        if now - record.created_at > self._retention:
            return True
        deadline = self._delete_at.get(identifier)
        return deadline is not None and now >= deadline

    async def start(self) -> None:
        if self._janitor is None:
            self._janitor = asyncio.create_task(self._janitor_loop())

    async def stop(self) -> None:
        if self._janitor is not None:
            self._janitor.cancel()
            try:
                await self._janitor
            except asyncio.CancelledError:
                pass
            self._janitor = None

    async def _janitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()
