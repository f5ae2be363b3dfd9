from contextlib import contextmanager
from sqlmodel import SQLModel, Session, create_engine, select
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from .errors import StorageUnavailable
from .models import Artifact
from .settings import settings
from typing import List, Optional
from datetime import datetime, timezone


def make_engine(url: str):
    if url.startswith("sqlite"):
        # single shared connection so in-memory databases survive across sessions
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, pool_pre_ping=True)


# Create engine from the configured DATABASE_URL
engine = make_engine(settings.DATABASE_URL)


def init_db():
    SQLModel.metadata.create_all(engine)


@contextmanager
def _session():
    try:
        with Session(engine) as session:
            yield session
    except SQLAlchemyError as exc:
        raise StorageUnavailable(f"metadata store error: {exc}") from exc


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back naive; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _normalized(artifact: Optional[Artifact]) -> Optional[Artifact]:
    if artifact is not None:
        artifact.created_at = _as_utc(artifact.created_at)
        artifact.expires_at = _as_utc(artifact.expires_at)
    return artifact


def put_artifact(artifact: Artifact) -> Artifact:
    with _session() as session:
        session.add(artifact)
        session.commit()
        session.refresh(artifact)
    return _normalized(artifact)


def get_artifact(artifact_id: str) -> Optional[Artifact]:
    with _session() as session:
        a = session.get(Artifact, artifact_id)
    return _normalized(a)


def delete_artifact(artifact_id: str) -> bool:
    """Delete a record. Deleting a missing record is not an error."""
    with _session() as session:
        a = session.get(Artifact, artifact_id)
        if not a:
            return False
        session.delete(a)
        session.commit()
    return True


def query_expired_before(moment: datetime) -> List[Artifact]:
    with _session() as session:
        statement = (
            select(Artifact)
            .where(Artifact.expires_at.is_not(None))
            .where(Artifact.expires_at < moment)
            .order_by(Artifact.expires_at)
        )
        results = session.exec(statement).all()
    return [_normalized(a) for a in results]


def list_artifacts(owner_id: str, now: datetime) -> List[Artifact]:
    """Live (unexpired) crates of one owner, newest first."""
    with _session() as session:
        statement = (
            select(Artifact)
            .where(Artifact.owner_id == owner_id)
            .where((Artifact.expires_at.is_(None)) | (Artifact.expires_at > now))
            .order_by(Artifact.created_at.desc())
        )
        results = session.exec(statement).all()
    return [_normalized(a) for a in results]


def increment_download_count(artifact_id: str) -> Optional[int]:
    """Atomically bump the counter and return the new value, or None if the record is gone."""
    with _session() as session:
        result = session.exec(
            update(Artifact)
            .where(Artifact.id == artifact_id)
            .values(download_count=Artifact.download_count + 1)
        )
        session.commit()
        if result.rowcount == 0:
            return None
        return session.exec(select(Artifact.download_count).where(Artifact.id == artifact_id)).first()


def update_expiry(artifact_id: str, expires_at: Optional[datetime]) -> Optional[Artifact]:
    with _session() as session:
        a = session.get(Artifact, artifact_id)
        if not a:
            return None
        a.expires_at = expires_at
        session.add(a)
        session.commit()
        session.refresh(a)
    return _normalized(a)


def update_sharing(artifact_id: str, *, is_public: bool, password_hash: Optional[str]) -> Optional[Artifact]:
    with _session() as session:
        a = session.get(Artifact, artifact_id)
        if not a:
            return None
        a.is_public = is_public
        a.password_hash = password_hash
        session.add(a)
        session.commit()
        session.refresh(a)
    return _normalized(a)
