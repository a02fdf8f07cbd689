from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .errors import StorageError
from .models import (
    CLIENT_CONNECTED,
    STATUS_COMPLETE,
    STATUS_DISCONNECTED,
    STATUS_INIT,
    STATUS_UPLOADING,
    Client,
    KeyValue,
    UploadSession,
    utcnow,
)

logger = structlog.get_logger(__name__)

# racing inserts on the open-session key are retried this many times
INSERT_ATTEMPTS = 3


class SessionStore:
    """
    Durable table of upload sessions and connected clients.

    Every public method is one transaction. Rows handed back are detached
    snapshots; mutate the store through its methods, not through the rows.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self):
        db: Session = self._session_factory()
        try:
            # begin now so the write lock is held before any timestamp is taken
            db.connection()
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"session store failure: {exc}") from exc
        finally:
            db.close()

    @staticmethod
    def _open_session_query(filename: str, client_identity: str):
        return select(UploadSession).where(
            UploadSession.filename == filename,
            UploadSession.client_identity == client_identity,
            UploadSession.status != STATUS_COMPLETE,
        )

    # -- identity resolution -------------------------------------------

    def resolve(self, filename: str, client_identity: str, now: Optional[datetime] = None) -> int:
        """Return the open session for (filename, client) or create one in ``init``."""
        for _ in range(INSERT_ATTEMPTS):
            with self._transaction() as db:
                existing = db.execute(self._open_session_query(filename, client_identity)).scalar_one_or_none()
                if existing is not None:
                    return existing.id

            try:
                with self._transaction() as db:
                    created = now or utcnow()
                    row = UploadSession(
                        filename=filename,
                        client_identity=client_identity,
                        size=0,
                        status=STATUS_INIT,
                        started_at=created,
                        updated_at=created,
                    )
                    db.add(row)
                    db.flush()
                    return row.id
            except StorageError as exc:
                if not isinstance(exc.__cause__, IntegrityError):
                    raise
                logger.debug("resolve_insert_raced", filename=filename, client=client_identity)

        raise StorageError(f"could not resolve session for {filename!r} from {client_identity}")

    def probe(self, filename: str, client_identity: str) -> int:
        with self._transaction() as db:
            existing = db.execute(self._open_session_query(filename, client_identity)).scalar_one_or_none()
            return existing.size if existing is not None else 0

    def get(self, session_id: int) -> Optional[UploadSession]:
        with self._transaction() as db:
            return db.get(UploadSession, session_id)

    # -- ingestion -----------------------------------------------------

    def record_chunk(self, session_id: int, delta: int, now: Optional[datetime] = None) -> bool:
        with self._transaction() as db:
            stmt = (
                update(UploadSession)
                .where(UploadSession.id == session_id, UploadSession.status != STATUS_COMPLETE)
                .values(size=UploadSession.size + delta, status=STATUS_UPLOADING, updated_at=now or utcnow())
                .execution_options(synchronize_session=False)
            )
            return db.execute(stmt).rowcount == 1

    def mark_complete(self, session_id: int, delta: int = 0, now: Optional[datetime] = None) -> bool:
        """Add the final ``delta`` bytes and close the session in one write."""
        with self._transaction() as db:
            now = now or utcnow()
            stmt = (
                update(UploadSession)
                .where(UploadSession.id == session_id, UploadSession.status != STATUS_COMPLETE)
                .values(size=UploadSession.size + delta, status=STATUS_COMPLETE, updated_at=now, completed_at=now)
                .execution_options(synchronize_session=False)
            )
            return db.execute(stmt).rowcount == 1

    def reopen(self, session_id: int, delta: int = 0, now: Optional[datetime] = None) -> bool:
        """Undo ``mark_complete`` when the finished file could not be put in place."""
        with self._transaction() as db:
            stmt = (
                update(UploadSession)
                .where(UploadSession.id == session_id, UploadSession.status == STATUS_COMPLETE)
                .values(
                    size=UploadSession.size - delta,
                    status=STATUS_UPLOADING,
                    updated_at=now or utcnow(),
                    completed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            return db.execute(stmt).rowcount == 1

    # -- liveness ------------------------------------------------------

    def touch_client(self, identity: str, user_agent: Optional[str] = None, now: Optional[datetime] = None) -> None:
        for _ in range(INSERT_ATTEMPTS):
            try:
                with self._transaction() as db:
                    self._upsert_client(db, identity, user_agent, now or utcnow())
                return
            except StorageError as exc:
                if not isinstance(exc.__cause__, IntegrityError):
                    raise
        raise StorageError(f"could not record client {identity}")

    @staticmethod
    def _upsert_client(db: Session, identity: str, user_agent: Optional[str], now: datetime) -> None:
        client = db.get(Client, identity)
        if client is None:
            db.add(Client(
                identity=identity,
                user_agent=user_agent,
                first_seen=now,
                last_seen=now,
                status=CLIENT_CONNECTED,
            ))
            db.flush()
            return
        client.last_seen = now
        client.status = CLIENT_CONNECTED
        if user_agent:
            client.user_agent = user_agent

    def heartbeat(
        self,
        identity: str,
        user_agent: Optional[str],
        upload_ids: Iterable[int],
        now: Optional[datetime] = None,
    ) -> int:
        """
        Refresh the client and every listed upload it owns that is still
        ``uploading``. Returns the number of uploads refreshed.
        """
        self.touch_client(identity, user_agent, now)

        ids = sorted(set(upload_ids))
        if not ids:
            return 0
        with self._transaction() as db:
            stmt = (
                update(UploadSession)
                .where(
                    UploadSession.id.in_(ids),
                    UploadSession.client_identity == identity,
                    UploadSession.status == STATUS_UPLOADING,
                )
                .values(updated_at=now or utcnow())
                .execution_options(synchronize_session=False)
            )
            return db.execute(stmt).rowcount

    def reap_stale_uploads(self, stale_after: int, now: Optional[datetime] = None) -> List[UploadSession]:
        """Demote silent ``uploading`` sessions and return exactly the rows demoted."""
        with self._transaction() as db:
            now = now or utcnow()
            cutoff = now - timedelta(seconds=stale_after)
            demoted = db.scalars(
                update(UploadSession)
                .where(
                    UploadSession.status == STATUS_UPLOADING,
                    UploadSession.updated_at < cutoff,
                )
                .values(status=STATUS_DISCONNECTED, updated_at=now)
                .returning(UploadSession)
            ).all()
            return sorted(demoted, key=lambda row: row.id)

    def reap_stale_clients(self, stale_after: int, now: Optional[datetime] = None) -> List[str]:
        with self._transaction() as db:
            cutoff = (now or utcnow()) - timedelta(seconds=stale_after)
            identities = db.execute(
                select(Client.identity).where(
                    Client.status == CLIENT_CONNECTED,
                    Client.last_seen < cutoff,
                )
            ).scalars().all()
            if identities:
                db.execute(
                    delete(Client)
                    .where(Client.identity.in_(identities), Client.last_seen < cutoff)
                    .execution_options(synchronize_session=False)
                )
            return list(identities)

    # -- admin reads ---------------------------------------------------

    def changed_since(
        self, after: datetime, until: Optional[datetime] = None
    ) -> Tuple[List[UploadSession], datetime]:
        """
        Rows with ``after < updated_at <= until`` and the ``until`` used.

        When ``until`` is omitted it is read under the write lock, so every
        later write carries a later timestamp.
        """
        with self._transaction() as db:
            until = until or utcnow()
            rows = db.execute(
                select(UploadSession)
                .where(UploadSession.updated_at > after, UploadSession.updated_at <= until)
                .order_by(UploadSession.updated_at.asc(), UploadSession.id.asc())
            ).scalars().all()
            return list(rows), until

    def list_uploads(self, page: int = 1, q: Optional[str] = None, page_size: int = 100) -> List[UploadSession]:
        page = max(page, 1)
        stmt = select(UploadSession)
        if q:
            stmt = stmt.where(UploadSession.filename.contains(q, autoescape=True))
        stmt = stmt.order_by(UploadSession.id.desc()).offset((page - 1) * page_size).limit(page_size)
        with self._transaction() as db:
            return list(db.execute(stmt).scalars().all())

    def list_clients(self) -> List[Client]:
        with self._transaction() as db:
            return list(db.execute(select(Client).order_by(Client.last_seen.desc())).scalars().all())

    # -- key/value -----------------------------------------------------

    def kv_get(self, key: str) -> Optional[str]:
        with self._transaction() as db:
            row = db.get(KeyValue, key)
            return row.value if row is not None else None

    def kv_set(self, key: str, value: str) -> None:
        with self._transaction() as db:
            db.merge(KeyValue(key=key, value=value))
