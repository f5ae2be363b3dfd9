"""Content Store: raw crate bytes by storage locator.

Objects live under a root directory at ``uploads/YYYY-MM-DD/<id>``. Each
object has a JSON sidecar with its content type and tags (original name,
owner, timestamps) so a lost metadata record can be reconstructed.

Clients never see a locator directly. They get a signed URL pointing at the
blob route, valid until the ``expires`` timestamp it carries.
"""
import hashlib
import hmac
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple
from urllib.parse import urlencode

import aiofiles
import aiofiles.os
from loguru import logger

from .errors import ArtifactNotFound, StorageUnavailable

UPLOAD_PREFIX = "uploads/"
TAGS_SUFFIX = ".tags.json"


def locator_for(artifact_id: str, now: datetime) -> str:
    """Date-partitioned object key for a new crate."""
    return f"{UPLOAD_PREFIX}{now:%Y-%m-%d}/{artifact_id}"


class ContentStore(Protocol):
    async def put(self, locator: str, data: bytes, content_type: str, tags: Dict[str, str]) -> None: ...

    async def get(self, locator: str) -> bytes: ...

    async def delete(self, locator: str) -> None: ...

    async def tags(self, locator: str) -> Dict[str, str]: ...

    async def list_locators(self, prefix: str) -> List[Tuple[str, datetime]]: ...

    def signed_url(self, locator: str, ttl_seconds: int, now: Optional[datetime] = None) -> str: ...


class LocalContentStore:
    def __init__(self, root: Path, signing_secret: str, base_url: str = "/api/blobs"):
        self.root = Path(root)
        self._secret = signing_secret.encode("utf-8")
        self.base_url = base_url.rstrip("/")

    def _resolve(self, locator: str) -> Path:
        # storage locator must be a relative key that stays inside root
        root = self.root.resolve()
        if not locator or Path(locator).is_absolute():
            raise ValueError("Invalid storage locator")
        path = (root / locator).resolve()
        if not path.is_relative_to(root) or path == root:
            raise ValueError("Invalid storage locator")
        return path

    async def put(self, locator: str, data: bytes, content_type: str, tags: Dict[str, str]) -> None:
        path = self._resolve(locator)
        sidecar = {"contentType": content_type, "tags": dict(tags)}
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(path, "wb") as out_file:
                await out_file.write(data)
            async with aiofiles.open(str(path) + TAGS_SUFFIX, "w") as out_file:
                await out_file.write(json.dumps(sidecar))
        except OSError as exc:
            logger.error("content store write failed for {}: {}", locator, exc)
            raise StorageUnavailable(f"content store write failed: {exc}") from exc

    async def get(self, locator: str) -> bytes:
        path = self._resolve(locator)
        try:
            async with aiofiles.open(path, "rb") as in_file:
                return await in_file.read()
        except FileNotFoundError:
            raise ArtifactNotFound() from None
        except OSError as exc:
            raise StorageUnavailable(f"content store read failed: {exc}") from exc

    async def delete(self, locator: str) -> None:
        """Remove an object and its tags. Missing objects are ignored."""
        path = self._resolve(locator)
        for target in (path, Path(str(path) + TAGS_SUFFIX)):
            try:
                await aiofiles.os.remove(target)
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise StorageUnavailable(f"content store delete failed: {exc}") from exc

    async def tags(self, locator: str) -> Dict[str, str]:
        path = Path(str(self._resolve(locator)) + TAGS_SUFFIX)
        try:
            async with aiofiles.open(path, "r") as in_file:
                sidecar = json.loads(await in_file.read())
        except FileNotFoundError:
            raise ArtifactNotFound() from None
        except OSError as exc:
            raise StorageUnavailable(f"content store read failed: {exc}") from exc
        return {"contentType": sidecar.get("contentType", "application/octet-stream"), **sidecar.get("tags", {})}

    async def list_locators(self, prefix: str) -> List[Tuple[str, datetime]]:
        """Every object under prefix with its last-modified time (UTC)."""
        base = self._resolve(prefix.rstrip("/"))
        if not await aiofiles.os.path.isdir(base):
            return []
        root = self.root.resolve()
        found = []
        try:
            for path in base.rglob("*"):
                if not path.is_file() or path.name.endswith(TAGS_SUFFIX):
                    continue
                stat = await aiofiles.os.stat(path)
                modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
                found.append((path.relative_to(root).as_posix(), modified))
        except OSError as exc:
            raise StorageUnavailable(f"content store listing failed: {exc}") from exc
        return sorted(found)

    def _signature(self, locator: str, expires: int) -> str:
        message = f"{locator}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def signed_url(self, locator: str, ttl_seconds: int, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        expires = int(now.timestamp()) + int(ttl_seconds)
        query = urlencode({"expires": expires, "signature": self._signature(locator, expires)})
        return f"{self.base_url}/{locator}?{query}"

    def verify_signature(self, locator: str, expires: int, signature: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        if expires < int(now.timestamp()):
            return False
        return hmac.compare_digest(self._signature(locator, expires), signature)
