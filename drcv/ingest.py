import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional, Set

import structlog

from .errors import PayloadTooLarge, StorageError, ValidationError
from .models import STATUS_COMPLETE
from .store import SessionStore

logger = structlog.get_logger(__name__)

# in-progress files live here, out of reach of any finished filename
STAGING_DIR = ".staging"


class SessionLocks:
    """One exclusion lock per session id, kept only while it is held or awaited."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, List] = {}

    @contextmanager
    def hold(self, session_id: int):
        with self._guard:
            entry = self._locks.setdefault(session_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[session_id]

    def __len__(self):
        return len(self._locks)


def safe_filename(filename: str) -> str:
    name = Path(filename.replace("\\", "/")).name.strip()
    if name in ("", ".", "..", STAGING_DIR):
        raise ValidationError(f"invalid filename: {filename!r}")
    return name


class ChunkIngestor:
    def __init__(self, store: SessionStore, upload_dir: str, max_file_size: int):
        self.store = store
        self.upload_dir = Path(upload_dir)
        self.staging_dir = self.upload_dir / STAGING_DIR
        self.max_file_size = max_file_size
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        self._locks = SessionLocks()
        self._announced: Set[int] = set()
        self._announced_guard = threading.Lock()

    def staging_path(self, session_id: int) -> Path:
        return self.staging_dir / f"{session_id}.part"

    def final_path(self, filename: str) -> Path:
        return self.upload_dir / filename

    def ingest(
        self,
        filename: str,
        client_identity: str,
        chunk_index: int,
        total_chunks: int,
        data: bytes,
        user_agent: Optional[str] = None,
    ) -> int:
        """
        Accept one chunk and return the id of the session it was appended to.

        Chunks for the same session are processed one at a time. If the
        session was completed by a concurrent request while this one waited,
        the chunk is routed to a fresh session.
        """
        filename = safe_filename(filename)
        if total_chunks < 1:
            raise ValidationError("totalChunks must be at least 1")
        if chunk_index < 0 or chunk_index >= total_chunks:
            raise ValidationError(f"chunkIndex {chunk_index} out of range for totalChunks {total_chunks}")

        estimate = len(data) * total_chunks
        if estimate > self.max_file_size:
            raise PayloadTooLarge(
                f"estimated size {estimate} bytes exceeds the limit of {self.max_file_size} bytes"
            )

        self.store.touch_client(client_identity, user_agent)
        last = chunk_index + 1 == total_chunks

        while True:
            session_id = self.store.resolve(filename, client_identity)
            with self._locks.hold(session_id):
                session = self.store.get(session_id)
                if session is None or session.status == STATUS_COMPLETE:
                    continue
                if not data and not last:
                    return session_id
                self._announce(session_id, filename, client_identity, session.size)
                self._stage(session_id, session.size, filename, client_identity, data)
                if last:
                    self._finalize(session_id, filename, client_identity, len(data))
                else:
                    self._record(session_id, filename, client_identity, len(data))
                return session_id

    def forget(self, session_id: int) -> None:
        """Let the next chunk for ``session_id`` announce itself again."""
        with self._announced_guard:
            self._announced.discard(session_id)

    def _announce(self, session_id: int, filename: str, client_identity: str, size: int) -> None:
        with self._announced_guard:
            if session_id in self._announced:
                return
            self._announced.add(session_id)
        event = "upload_resumed" if size > 0 else "upload_started"
        logger.info(event, session_id=session_id, filename=filename, client=client_identity, size=size)

    def _stage(self, session_id: int, size: int, filename: str, client_identity: str, data: bytes) -> None:
        staging = self.staging_path(session_id)
        try:
            with open(staging, "ab") as f:
                if f.tell() > size:
                    # bytes from an attempt whose size never reached the store
                    logger.warning("staging_trimmed", session_id=session_id, staged=f.tell(), size=size)
                    f.truncate(size)
                f.write(data)
        except OSError as exc:
            logger.error(
                "staging_write_failed",
                session_id=session_id, filename=filename, client=client_identity, error=str(exc),
            )
            raise StorageError(f"could not write chunk for {filename}") from exc

    def _record(self, session_id: int, filename: str, client_identity: str, delta: int) -> None:
        try:
            self.store.record_chunk(session_id, delta)
        except StorageError:
            logger.error("record_chunk_failed", session_id=session_id, filename=filename, client=client_identity)
            raise

    def _finalize(self, session_id: int, filename: str, client_identity: str, delta: int) -> None:
        # the store is closed first; a failed rename reopens it so a resent
        # final chunk finds the staged bytes where it left them
        try:
            self.store.mark_complete(session_id, delta)
        except StorageError:
            logger.error("mark_complete_failed", session_id=session_id, filename=filename, client=client_identity)
            raise

        final = self.final_path(filename)
        try:
            os.replace(self.staging_path(session_id), final)
        except OSError as exc:
            logger.error(
                "finalize_failed",
                session_id=session_id, filename=filename, client=client_identity, error=str(exc),
            )
            try:
                self.store.reopen(session_id, delta)
            except StorageError as reopen_exc:
                logger.error("reopen_failed", session_id=session_id, error=reopen_exc.message)
            raise StorageError(f"could not finalize {filename}") from exc

        self.forget(session_id)
        logger.info("upload_completed", session_id=session_id, filename=filename, client=client_identity, path=str(final))
