from sqlmodel import SQLModel, Field
from typing import Optional, Dict
from datetime import datetime
import uuid
from sqlalchemy import Column, JSON, TIMESTAMP, func
from sqlalchemy.dialects.postgresql import JSONB


ANONYMOUS_OWNER = "anonymous"


class Artifact(SQLModel, table=True):
    __tablename__ = "artifact"
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    display_name: str
    content_type: str
    size_bytes: int = Field(default=0, ge=0)
    # object key in the content store; never sent to clients
    storage_locator: str
    owner_id: str = Field(default=ANONYMOUS_OWNER, index=True)
    download_count: int = Field(default=0)
    is_public: bool = Field(default=True)
    password_hash: Optional[str] = None
    # opaque user metadata; use record_meta to avoid SQLAlchemy reserved 'metadata'
    record_meta: Dict[str, str] = Field(
        default_factory=dict,
        sa_column=Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False),
    )
    created_at: datetime = Field(
        sa_column=Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now()),
    )
    # null means the crate never expires
    expires_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(TIMESTAMP(timezone=True), nullable=True, index=True),
    )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now
