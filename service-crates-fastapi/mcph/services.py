"""Crate lifecycle: upload, access, expiry, purge.

Upload writes bytes to the content store before the metadata record, so a
visible record always has its bytes. Expired crates are treated as missing
by every read path before the purge sweep physically removes them.
"""
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import PurePosixPath
from typing import Dict, List, Optional

from loguru import logger

from . import crud
from .errors import ArtifactNotFound, InvalidArtifact, OrphanWrite, StorageUnavailable
from .locks import LeaseLock
from .models import ANONYMOUS_OWNER, Artifact
from .schemas import PurgeFailure, PurgeReport
from .security import hash_secret, verify_secret
from .settings import settings
from .storage import UPLOAD_PREFIX, ContentStore, locator_for

ACCESS_MODES = ("redirect", "stream")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_ttl(ttl_hours: Optional[float]) -> timedelta:
    """Requested TTL clamped to the configured bounds, or the default TTL."""
    if ttl_hours is None:
        hours = settings.DEFAULT_TTL_HOURS
    else:
        if not math.isfinite(ttl_hours) or ttl_hours <= 0:
            raise InvalidArtifact("ttl must be a positive number of hours")
        hours = min(max(ttl_hours, settings.MIN_TTL_HOURS), settings.MAX_TTL_HOURS)
    return timedelta(hours=hours)


def _validate_upload(data: bytes, display_name: Optional[str], content_type: Optional[str]):
    if not display_name:
        raise InvalidArtifact("a file name is required")
    # bare file names only; no directories, no traversal
    if PurePosixPath(display_name.replace("\\", "/")).name != display_name or display_name in (".", ".."):
        raise InvalidArtifact("Invalid filename")
    if not content_type:
        raise InvalidArtifact("a content type is required")
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise InvalidArtifact(f"file exceeds the {settings.MAX_UPLOAD_BYTES} byte limit")


async def upload_artifact(
    store: ContentStore,
    data: bytes,
    display_name: Optional[str],
    content_type: Optional[str],
    *,
    ttl_hours: Optional[float] = None,
    owner_id: str = ANONYMOUS_OWNER,
    password: Optional[str] = None,
    is_public: bool = True,
    metadata: Optional[Dict[str, str]] = None,
    now: Optional[datetime] = None,
) -> Artifact:
    _validate_upload(data, display_name, content_type)
    ttl = resolve_ttl(ttl_hours)
    meta = {str(k): str(v) for k, v in (metadata or {}).items()}

    created_at = now or utcnow()
    expires_at = created_at + ttl
    artifact_id = str(uuid.uuid4())
    locator = locator_for(artifact_id, created_at)

    tags = {
        "artifactId": artifact_id,
        "originalName": display_name,
        "ownerId": owner_id,
        "createdAt": created_at.isoformat(),
        "expiresAt": expires_at.isoformat(),
    }
    # a failed write here leaves nothing behind
    await store.put(locator, data, content_type, tags)

    artifact = Artifact(
        id=artifact_id,
        display_name=display_name,
        content_type=content_type,
        size_bytes=len(data),
        storage_locator=locator,
        owner_id=owner_id,
        is_public=is_public,
        password_hash=hash_secret(password) if password else None,
        record_meta=meta,
        created_at=created_at,
        expires_at=expires_at,
    )
    try:
        artifact = crud.put_artifact(artifact)
    except StorageUnavailable as exc:
        logger.error("orphaned upload {} at {}: metadata write failed: {}", artifact_id, locator, exc)
        raise OrphanWrite(artifact_id, locator) from exc

    logger.info("uploaded crate {} ({} bytes, expires {})", artifact_id, len(data), expires_at.isoformat())
    return artifact


def get_live_artifact(artifact_id: str, now: Optional[datetime] = None) -> Artifact:
    """The crate record, unless it is missing or expired."""
    artifact = crud.get_artifact(artifact_id)
    if artifact is None or artifact.is_expired(now or utcnow()):
        raise ArtifactNotFound(artifact_id)
    return artifact


@dataclass
class AccessResult:
    artifact: Artifact
    redirect_url: Optional[str] = None
    content: Optional[bytes] = None


def record_download(artifact_id: str) -> Optional[int]:
    """Bump the download counter; a failure is logged, never raised."""
    try:
        return crud.increment_download_count(artifact_id)
    except StorageUnavailable as exc:
        logger.warning("download count not updated for {}: {}", artifact_id, exc)
        return None


def link_ttl(artifact: Artifact, now: datetime) -> int:
    """Signed links never outlive the crate they point at."""
    ttl = settings.SIGNED_URL_TTL_SECONDS
    if artifact.expires_at is not None:
        ttl = min(ttl, int((artifact.expires_at - now).total_seconds()))
    return max(ttl, 0)


async def access_artifact(
    store: ContentStore,
    artifact_id: str,
    mode: str = "redirect",
    now: Optional[datetime] = None,
    count_download: bool = True,
) -> AccessResult:
    """Resolve a live crate to its bytes or a signed link.

    With ``count_download=False`` the caller is expected to call
    ``record_download`` itself, typically after the response is sent.
    """
    if mode not in ACCESS_MODES:
        raise InvalidArtifact(f"unknown access mode {mode!r}")
    now = now or utcnow()
    artifact = get_live_artifact(artifact_id, now)

    if mode == "stream":
        # a purge may win the race between the lookup and the read
        content = await store.get(artifact.storage_locator)
        result = AccessResult(artifact=artifact, content=content)
    else:
        url = store.signed_url(artifact.storage_locator, link_ttl(artifact, now), now=now)
        result = AccessResult(artifact=artifact, redirect_url=url)

    if count_download:
        count = record_download(artifact_id)
        if count is not None:
            artifact.download_count = count
    logger.info("crate {} accessed ({})", artifact_id, mode)
    return result


async def _sweep(artifacts: List[Artifact], store: ContentStore) -> PurgeReport:
    report = PurgeReport()
    for artifact in artifacts:
        try:
            await store.delete(artifact.storage_locator)
            crud.delete_artifact(artifact.id)
        except Exception as exc:
            logger.error("failed to purge crate {}: {}", artifact.id, exc)
            report.failures.append(PurgeFailure(id=artifact.id, error=str(exc)))
        else:
            report.purged_count += 1
    return report


async def purge_expired(store: ContentStore, lock: LeaseLock, now: Optional[datetime] = None) -> PurgeReport:
    """Delete every crate whose expiry has passed.

    Only one sweep runs at a time across all instances; a trigger that finds
    the lock taken reports ``already_running`` and deletes nothing. Failed
    records are reported and stay candidates for the next sweep.
    """
    key = settings.PURGE_LOCK_KEY
    if not await lock.acquire(key, settings.PURGE_LOCK_LEASE_SECONDS):
        logger.info("purge sweep already running")
        return PurgeReport(already_running=True)
    try:
        expired = crud.query_expired_before(now or utcnow())
        report = await _sweep(expired, store)
    finally:
        await lock.release(key)

    logger.info("purge sweep removed {} crates, {} failures", report.purged_count, len(report.failures))
    return report


async def reconcile_orphans(store: ContentStore, lock: LeaseLock, now: Optional[datetime] = None) -> PurgeReport:
    """Delete stored objects that have no metadata record.

    Objects younger than ORPHAN_GRACE_SECONDS are skipped so uploads whose
    record is still being written are not reclaimed.
    """
    key = f"{settings.PURGE_LOCK_KEY}:reconcile"
    if not await lock.acquire(key, settings.PURGE_LOCK_LEASE_SECONDS):
        return PurgeReport(already_running=True)
    report = PurgeReport()
    try:
        cutoff = (now or utcnow()) - timedelta(seconds=settings.ORPHAN_GRACE_SECONDS)
        for locator, modified in await store.list_locators(UPLOAD_PREFIX):
            if modified >= cutoff:
                continue
            artifact_id = PurePosixPath(locator).name
            try:
                if crud.get_artifact(artifact_id) is not None:
                    continue
                await store.delete(locator)
            except Exception as exc:
                logger.error("failed to reclaim orphan {}: {}", locator, exc)
                report.failures.append(PurgeFailure(id=artifact_id, error=str(exc)))
            else:
                logger.warning("reclaimed orphaned object {}", locator)
                report.purged_count += 1
    finally:
        await lock.release(key)
    return report


def _owned_artifact(artifact_id: str, owner_id: str, now: datetime) -> Artifact:
    artifact = get_live_artifact(artifact_id, now)
    # anonymous crates have no owner who could act on them
    if owner_id == ANONYMOUS_OWNER or artifact.owner_id != owner_id:
        raise ArtifactNotFound(artifact_id)
    return artifact


async def delete_artifact(store: ContentStore, artifact_id: str, owner_id: str, now: Optional[datetime] = None):
    artifact = _owned_artifact(artifact_id, owner_id, now or utcnow())
    await store.delete(artifact.storage_locator)
    crud.delete_artifact(artifact.id)
    logger.info("crate {} deleted by owner", artifact_id)


def extend_expiry(
    artifact_id: str,
    owner_id: str,
    *,
    ttl_hours: Optional[float] = None,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Artifact:
    now = now or utcnow()
    artifact = _owned_artifact(artifact_id, owner_id, now)
    if (ttl_hours is None) == (expires_at is None):
        raise InvalidArtifact("give exactly one of ttl_hours or expires_at")
    if expires_at is None:
        new_expiry = now + resolve_ttl(ttl_hours)
    else:
        new_expiry = expires_at if expires_at.tzinfo else expires_at.replace(tzinfo=timezone.utc)
        if new_expiry <= now or new_expiry <= artifact.created_at:
            raise InvalidArtifact("expiry must be in the future")
        if new_expiry > now + timedelta(hours=settings.MAX_TTL_HOURS):
            raise InvalidArtifact(f"expiry may be at most {settings.MAX_TTL_HOURS} hours away")
    updated = crud.update_expiry(artifact_id, new_expiry)
    if updated is None:
        raise ArtifactNotFound(artifact_id)
    logger.info("crate {} now expires {}", artifact_id, new_expiry.isoformat())
    return updated


def update_sharing(
    artifact_id: str,
    owner_id: str,
    *,
    is_public: Optional[bool] = None,
    password: Optional[str] = None,
    clear_password: bool = False,
    now: Optional[datetime] = None,
) -> Artifact:
    artifact = _owned_artifact(artifact_id, owner_id, now or utcnow())
    if password and clear_password:
        raise InvalidArtifact("cannot set and clear the password at once")
    password_hash = artifact.password_hash
    if clear_password:
        password_hash = None
    elif password:
        password_hash = hash_secret(password)
    updated = crud.update_sharing(
        artifact_id,
        is_public=artifact.is_public if is_public is None else is_public,
        password_hash=password_hash,
    )
    if updated is None:
        raise ArtifactNotFound(artifact_id)
    return updated


def verify_password(artifact_id: str, password: str, now: Optional[datetime] = None) -> bool:
    artifact = get_live_artifact(artifact_id, now)
    if artifact.password_hash is None:
        raise InvalidArtifact("crate is not password protected")
    return verify_secret(password, artifact.password_hash)


def list_owned(owner_id: str, now: Optional[datetime] = None) -> List[Artifact]:
    if owner_id == ANONYMOUS_OWNER:
        return []
    return crud.list_artifacts(owner_id, now or utcnow())
