from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, text

from .database import Base

STATUS_INIT = "init"
STATUS_UPLOADING = "uploading"
STATUS_COMPLETE = "complete"
STATUS_DISCONNECTED = "disconnected"

CLIENT_CONNECTED = "connected"


def utcnow() -> datetime:
    # naive UTC, the form SQLite hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UploadSession(Base):
    __tablename__ = "uploads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    filename = Column(String, nullable=False)
    client_identity = Column(String, nullable=False)
    size = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=STATUS_INIT)  # init | uploading | complete | disconnected
    started_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # at most one open session per (filename, client)
        Index(
            "uq_uploads_open_key",
            "filename",
            "client_identity",
            unique=True,
            sqlite_where=text("status != 'complete'"),
            postgresql_where=text("status != 'complete'"),
        ),
    )

    def __repr__(self):
        return f"<UploadSession id={self.id} filename={self.filename} client={self.client_identity} {self.status} size={self.size}>"


class Client(Base):
    __tablename__ = "clients"

    identity = Column(String, primary_key=True)
    user_agent = Column(String, nullable=True)
    first_seen = Column(DateTime, nullable=False, default=utcnow)
    last_seen = Column(DateTime, nullable=False, default=utcnow, index=True)
    status = Column(String, nullable=False, default=CLIENT_CONNECTED)


class KeyValue(Base):
    __tablename__ = "kv"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
