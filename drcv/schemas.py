from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UploadSessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    filename: str
    client_identity: str
    size: int
    status: str
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class ClientOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    identity: str
    user_agent: Optional[str] = None
    first_seen: datetime
    last_seen: datetime
    status: str


class HeartbeatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    upload_ids: List[int] = Field(default_factory=list, alias="uploadIds")


class TunnelInfo(BaseModel):
    hostname: Optional[str] = None
