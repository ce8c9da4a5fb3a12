"""
reportflow/ingest/sessions.py
=============================

Buffering for uploads that arrive in several chunks.

Browsers split large spreadsheets into chunks and post them one at a time.
Each file name owns at most one live UploadSession: chunk 0 opens (or
restarts) it, later chunks must follow in order, and the final chunk hands
the accumulated records to the writer. A session is destroyed after a
successful flush, on any error, or once it has been idle longer than the
configured TTL.

Usage:
    store = UploadSessionStore(ttl_seconds=1800)
    assembler = ChunkAssembler(store)

    session = assembler.begin("labor.xlsx", schema, ChunkInfo(0, 3, False), context)
    assembler.append(session, result)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from reportflow.core.errors import ValidationError

from .headers import HeaderMapping
from .normalizer import NormalizationResult, NormalizedRecord
from .schema import ReportSchema

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 1800.0


@dataclass(frozen=True)
class ChunkInfo:
    """Position of one chunk within a multi-chunk upload."""

    index: int
    total: int
    is_last: bool

    def validate(self) -> None:
        """
        Raises:
            ValidationError: If the index/total/is_last triple is inconsistent
        """
        if self.total < 1:
            raise ValidationError(f"totalChunks must be at least 1, got {self.total}")
        if not 0 <= self.index < self.total:
            raise ValidationError(
                f"chunkIndex {self.index} out of range for totalChunks {self.total}"
            )
        if self.is_last != (self.index == self.total - 1):
            raise ValidationError(
                f"isLastChunk={self.is_last} inconsistent with chunk "
                f"{self.index + 1} of {self.total}"
            )


@dataclass
class UploadSession:
    """Buffered state of one in-flight chunked upload."""

    file_name: str
    report_type: str
    schema_version: int
    total_chunks: int
    context: Dict[str, Any]
    mapping: Optional[HeaderMapping] = None
    received_chunks: int = 0
    rows_received: int = 0
    rows_seen: int = 0
    records: List[NormalizedRecord] = field(default_factory=list)
    dropped: Counter = field(default_factory=Counter)
    footer_reached: bool = False
    completed: bool = False
    created_at: float = 0.0
    last_activity_at: float = 0.0

    @property
    def rows_dropped(self) -> int:
        return sum(self.dropped.values())


class UploadSessionStore:
    """
    Live sessions keyed by file name.

    Every mutation happens without awaiting between check and write, so the
    store needs no locks under a single event loop.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, UploadSession] = {}

    def now(self) -> float:
        return self._clock()

    def get(self, file_name: str) -> Optional[UploadSession]:
        return self._sessions.get(file_name)

    def put(self, session: UploadSession) -> UploadSession:
        previous = self._sessions.get(session.file_name)
        if previous is not None:
            logger.warning(
                "[sessions] restarting upload %s (previous session had %d of %d chunks)",
                session.file_name,
                previous.received_chunks,
                previous.total_chunks,
            )
        self._sessions[session.file_name] = session
        return session

    def discard(self, file_name: str, session: Optional[UploadSession] = None) -> bool:
        """
        Remove the live session for ``file_name``.

        When ``session`` is given, only that exact session is removed; a newer
        session that replaced it is left alone.
        """
        current = self._sessions.get(file_name)
        if current is None or (session is not None and current is not session):
            return False
        del self._sessions[file_name]
        return True

    def reap_expired(self, now: Optional[float] = None) -> List[str]:
        """Destroy sessions idle longer than the TTL; returns their file names."""
        now = self.now() if now is None else now
        expired = [
            name
            for name, session in self._sessions.items()
            if not session.completed and now - session.last_activity_at > self.ttl_seconds
        ]
        for name in expired:
            session = self._sessions.pop(name)
            logger.warning(
                "[sessions] expired idle upload %s after %d of %d chunks",
                name,
                session.received_chunks,
                session.total_chunks,
            )
        return expired

    async def run_reaper(self, interval_seconds: float) -> None:
        """Reap expired sessions forever; cancel the task to stop it."""
        while True:
            await asyncio.sleep(interval_seconds)
            self.reap_expired()

    def __contains__(self, file_name: object) -> bool:
        return file_name in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


class ChunkAssembler:
    """Applies chunk sequencing rules on top of an UploadSessionStore."""

    def __init__(self, store: Optional[UploadSessionStore] = None):
        self.store = store or UploadSessionStore()

    def begin(
        self,
        file_name: str,
        schema: ReportSchema,
        chunk: ChunkInfo,
        context: Mapping[str, Any],
    ) -> UploadSession:
        """
        Open or continue the session for ``file_name``.

        Raises:
            ValidationError: Bad chunk metadata, a non-zero chunk without a
                live session, an out-of-order chunk, or a chunk whose report
                type, total or period differs from chunk 0
        """
        try:
            chunk.validate()
        except ValidationError:
            self.store.discard(file_name)
            raise
        self.store.reap_expired()
        now = self.store.now()

        if chunk.index == 0:
            return self.store.put(
                UploadSession(
                    file_name=file_name,
                    report_type=schema.report_type,
                    schema_version=schema.version,
                    total_chunks=chunk.total,
                    context=dict(context),
                    created_at=now,
                    last_activity_at=now,
                )
            )

        session = self.store.get(file_name)
        if session is None:
            raise ValidationError(
                f"No upload in progress for {file_name}; chunk {chunk.index} arrived "
                f"without chunk 0"
            )

        try:
            if (session.report_type, session.schema_version) != (schema.report_type, schema.version):
                raise ValidationError(
                    f"Chunk {chunk.index} of {file_name} is {schema.key}, "
                    f"upload started as {session.report_type}@v{session.schema_version}"
                )
            if chunk.total != session.total_chunks:
                raise ValidationError(
                    f"Chunk {chunk.index} of {file_name} declares {chunk.total} chunks, "
                    f"upload started with {session.total_chunks}"
                )
            if chunk.index != session.received_chunks:
                raise ValidationError(
                    f"Chunk {chunk.index} of {file_name} out of order; "
                    f"expected chunk {session.received_chunks}"
                )
            if any(session.context.get(k) != v for k, v in context.items() if k in session.context):
                raise ValidationError(
                    f"Chunk {chunk.index} of {file_name} reports a different period or uploader"
                )
        except ValidationError:
            self.store.discard(file_name, session)
            raise

        session.last_activity_at = now
        return session

    def append(
        self, session: UploadSession, result: NormalizationResult, rows_received: int = 0
    ) -> None:
        session.records.extend(result.records)
        session.rows_received += rows_received
        session.rows_seen += result.rows_seen
        session.dropped.update(result.dropped)
        session.footer_reached = session.footer_reached or result.footer_reached
        session.received_chunks += 1
        session.last_activity_at = self.store.now()

    def complete(self, session: UploadSession) -> None:
        """Destroy a session after its records were written."""
        session.completed = True
        self.store.discard(session.file_name, session)

    def abort(self, file_name: str, session: Optional[UploadSession] = None) -> None:
        """Destroy a session after an error."""
        if self.store.discard(file_name, session):
            logger.info("[sessions] discarded upload %s after error", file_name)
