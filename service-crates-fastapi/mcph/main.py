from fastapi import FastAPI, BackgroundTasks, UploadFile, File, Form, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.status import HTTP_201_CREATED, HTTP_204_NO_CONTENT
from typing import List, Literal, Optional
from urllib.parse import quote
from loguru import logger
from .settings import settings
# initialize logging (Loguru)
from . import logger as _logging  # noqa: F401
from . import services
from .crud import init_db
from .deps import crate_password, current_owner, get_content_store, get_purge_lock, redis_client, require_api_key
from .errors import ArtifactNotFound, InvalidArtifact, StorageUnavailable
from .locks import LeaseLock
from .models import ANONYMOUS_OWNER, Artifact
from .schemas import ArtifactRead, ExpiryUpdate, PasswordCheck, PurgeReport, SharingUpdate, UploadResult
from .security import verify_secret
from .storage import LocalContentStore

app = FastAPI(title="mcph-crates")

# form fields with a meaning of their own; anything else becomes crate metadata
RESERVED_FIELDS = {"file", "ttl", "password", "public"}


@app.on_event("startup")
def startup_event():
    # Ensure storage dir exists and DB initialized
    settings.STORAGE_DIR.mkdir(parents=True, exist_ok=True)
    init_db()


@app.on_event("shutdown")
async def shutdown_event():
    if redis_client.cache_info().currsize:
        await redis_client().aclose()


@app.exception_handler(ArtifactNotFound)
async def not_found_handler(request: Request, exc: ArtifactNotFound):
    # expired, deleted and unknown crates all look the same
    return JSONResponse(status_code=404, content={"detail": "crate not found"})


@app.exception_handler(InvalidArtifact)
async def invalid_handler(request: Request, exc: InvalidArtifact):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(StorageUnavailable)
async def unavailable_handler(request: Request, exc: StorageUnavailable):
    logger.error("{} {} failed: {}", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "storage temporarily unavailable, retry later"})


def _disposition(name: str) -> str:
    # plain ASCII name for old clients, the exact name in filename*
    fallback = name.encode("ascii", "replace").decode("ascii").replace("?", "_").replace('"', "_").replace("\\", "_")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(name, safe='')}"


def _check_access(artifact: Artifact, owner: str, password: Optional[str]):
    # anonymous callers never own anything, not even anonymous crates
    if owner != ANONYMOUS_OWNER and artifact.owner_id == owner:
        return
    if not artifact.is_public:
        raise HTTPException(status_code=403, detail="You don't have permission to access this crate")
    if artifact.password_hash:
        if not password:
            raise HTTPException(status_code=401, detail="Password required to access this crate")
        if not verify_secret(password, artifact.password_hash):
            raise HTTPException(status_code=401, detail="Invalid password")


@app.post("/api/uploads", response_model=UploadResult, status_code=HTTP_201_CREATED)
async def upload(
    request: Request,
    file: UploadFile = File(...),
    ttl: Optional[float] = Form(None),
    password: Optional[str] = Form(None),
    public: bool = Form(True),
    owner: str = Depends(current_owner),
    store: LocalContentStore = Depends(get_content_store),
):
    if file.size is not None and file.size > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail=f"file exceeds the {settings.MAX_UPLOAD_BYTES} byte limit")
    form = await request.form()
    metadata = {k: v for k, v in form.items() if k not in RESERVED_FIELDS and isinstance(v, str)}

    content = await file.read()
    artifact = await services.upload_artifact(
        store,
        content,
        file.filename,
        file.content_type or "application/octet-stream",
        ttl_hours=ttl,
        owner_id=owner,
        password=password,
        is_public=public,
        metadata=metadata,
    )
    return UploadResult(**ArtifactRead.from_record(artifact).model_dump(), url=f"/api/uploads/{artifact.id}")


@app.get("/api/uploads", response_model=List[ArtifactRead])
def uploads_list(owner: str = Depends(current_owner)):
    return [ArtifactRead.from_record(a) for a in services.list_owned(owner)]


@app.get("/api/uploads/{artifact_id}")
async def download(
    artifact_id: str,
    background_tasks: BackgroundTasks,
    mode: Literal["redirect", "stream", "info"] = Query("redirect"),
    owner: str = Depends(current_owner),
    password: Optional[str] = Depends(crate_password),
    store: LocalContentStore = Depends(get_content_store),
):
    artifact = services.get_live_artifact(artifact_id)
    _check_access(artifact, owner, password)
    if mode == "info":
        return ArtifactRead.from_record(artifact)

    result = await services.access_artifact(store, artifact_id, mode, count_download=False)
    # the counter is bumped after the response goes out
    background_tasks.add_task(services.record_download, artifact_id)
    if result.redirect_url is not None:
        return RedirectResponse(result.redirect_url, status_code=307)
    return Response(
        content=result.content,
        headers={
            "Content-Type": result.artifact.content_type,
            "Content-Disposition": _disposition(result.artifact.display_name),
        },
    )


@app.get("/api/blobs/{locator:path}")
async def blob(
    locator: str,
    expires: int = Query(...),
    signature: str = Query(...),
    store: LocalContentStore = Depends(get_content_store),
):
    if not store.verify_signature(locator, expires, signature):
        raise HTTPException(status_code=403, detail="Invalid or expired link")
    try:
        tags = await store.tags(locator)
        # a valid link to an expired or deleted crate is still not found
        artifact = services.get_live_artifact(tags.get("artifactId", ""))
        if artifact.storage_locator != locator:
            raise ArtifactNotFound(artifact.id)
        content = await store.get(locator)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid file path")
    return Response(
        content=content,
        headers={"Content-Type": artifact.content_type, "Content-Disposition": _disposition(artifact.display_name)},
    )


@app.delete("/api/uploads/{artifact_id}")
async def delete(
    artifact_id: str,
    owner: str = Depends(current_owner),
    store: LocalContentStore = Depends(get_content_store),
):
    await services.delete_artifact(store, artifact_id, owner)
    return Response(status_code=HTTP_204_NO_CONTENT)


@app.patch("/api/uploads/{artifact_id}/expiry", response_model=ArtifactRead)
def extend_expiry(artifact_id: str, body: ExpiryUpdate, owner: str = Depends(current_owner)):
    artifact = services.extend_expiry(artifact_id, owner, ttl_hours=body.ttl_hours, expires_at=body.expires_at)
    return ArtifactRead.from_record(artifact)


@app.patch("/api/uploads/{artifact_id}/sharing", response_model=ArtifactRead)
def update_sharing(artifact_id: str, body: SharingUpdate, owner: str = Depends(current_owner)):
    artifact = services.update_sharing(
        artifact_id,
        owner,
        is_public=body.is_public,
        password=body.password,
        clear_password=body.clear_password,
    )
    return ArtifactRead.from_record(artifact)


@app.post("/api/uploads/{artifact_id}/verify-password")
def verify_password(artifact_id: str, body: PasswordCheck):
    if not services.verify_password(artifact_id, body.password):
        raise HTTPException(status_code=401, detail="Invalid password")
    return {"success": True, "message": "Password verified"}


@app.get("/api/cron/purge-expired", response_model=PurgeReport, dependencies=[Depends(require_api_key)])
async def purge_expired(
    store: LocalContentStore = Depends(get_content_store),
    lock: LeaseLock = Depends(get_purge_lock),
):
    return await services.purge_expired(store, lock)


@app.post("/api/cron/reconcile-orphans", response_model=PurgeReport, dependencies=[Depends(require_api_key)])
async def reconcile_orphans(
    store: LocalContentStore = Depends(get_content_store),
    lock: LeaseLock = Depends(get_purge_lock),
):
    return await services.reconcile_orphans(store, lock)


@app.get("/health")
def health():
    return {"status": "ok"}
