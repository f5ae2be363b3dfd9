from pydantic import BaseModel, Field
from typing import Optional, Dict, List
from datetime import datetime

from .models import Artifact


class ArtifactRead(BaseModel):
    id: str
    display_name: str
    content_type: str
    size_bytes: int
    owner_id: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    download_count: int = 0
    is_public: bool = True
    password_protected: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_record(cls, artifact: Artifact) -> "ArtifactRead":
        # storage_locator and password_hash stay server side
        return cls(
            id=artifact.id,
            display_name=artifact.display_name,
            content_type=artifact.content_type,
            size_bytes=artifact.size_bytes,
            owner_id=artifact.owner_id,
            created_at=artifact.created_at,
            expires_at=artifact.expires_at,
            download_count=artifact.download_count,
            is_public=artifact.is_public,
            password_protected=artifact.password_hash is not None,
            metadata=dict(artifact.record_meta or {}),
        )


class UploadResult(ArtifactRead):
    url: str


class ExpiryUpdate(BaseModel):
    ttl_hours: Optional[float] = None
    expires_at: Optional[datetime] = None


class SharingUpdate(BaseModel):
    is_public: Optional[bool] = None
    password: Optional[str] = Field(default=None, min_length=1)
    clear_password: bool = False


class PasswordCheck(BaseModel):
    password: str = Field(min_length=1)


class PurgeFailure(BaseModel):
    id: str
    error: str


class PurgeReport(BaseModel):
    purged_count: int = 0
    failures: List[PurgeFailure] = Field(default_factory=list)
    already_running: bool = False
