from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

from mcph import crud
from mcph.errors import StorageUnavailable
from mcph.main import _disposition
from mcph.settings import settings

API_KEY = {"X-API-Key": "test-key"}
OWNER = {"X-Owner-Id": "user-1"}


def _upload(client, data=b"0123456789", name="note.txt", content_type="text/plain", headers=None, **fields):
    return client.post(
        "/api/uploads",
        files={"file": (name, data, content_type)},
        data={k: str(v) for k, v in fields.items()},
        headers=headers or {},
    )


def _ts(value):
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _expire(artifact_id):
    crud.update_expiry(artifact_id, datetime.now(timezone.utc) - timedelta(minutes=1))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_upload_returns_record_and_locator(client):
    response = _upload(client, ttl=2, project="demo", headers=OWNER)

    assert response.status_code == 201
    body = response.json()
    assert body["url"] == f"/api/uploads/{body['id']}"
    assert body["display_name"] == "note.txt"
    assert body["size_bytes"] == 10
    assert body["owner_id"] == "user-1"
    assert body["metadata"] == {"project": "demo"}
    assert body["password_protected"] is False
    assert "storage_locator" not in body
    assert "password_hash" not in body
    created = _ts(body["created_at"])
    expires = _ts(body["expires_at"])
    assert expires - created == timedelta(hours=2)


def test_upload_caps_ttl(client):
    body = _upload(client, ttl=1000).json()

    created = _ts(body["created_at"])
    expires = _ts(body["expires_at"])
    assert expires - created == timedelta(hours=settings.MAX_TTL_HOURS)


def test_upload_without_owner_is_anonymous(client):
    assert _upload(client).json()["owner_id"] == "anonymous"


def test_upload_rejects_oversized_file(client, monkeypatch):
    monkeypatch.setattr(settings, "MAX_UPLOAD_BYTES", 4)

    response = _upload(client, data=b"12345")

    assert response.status_code in (400, 413)


def test_upload_rejects_bad_ttl(client):
    assert _upload(client, ttl=-3).status_code == 400


def test_download_redirects_to_signed_blob(client):
    artifact_id = _upload(client, content_type="text/csv").json()["id"]

    redirect = client.get(f"/api/uploads/{artifact_id}", follow_redirects=False)
    assert redirect.status_code == 307
    location = redirect.headers["location"]
    assert location.startswith("/api/blobs/uploads/")
    assert "signature=" in location

    blob = client.get(location)
    assert blob.status_code == 200
    assert blob.content == b"0123456789"
    assert blob.headers["content-type"] == "text/csv"
    assert 'filename="note.txt"' in blob.headers["content-disposition"]


def test_tampered_blob_link_is_refused(client):
    artifact_id = _upload(client).json()["id"]
    location = client.get(f"/api/uploads/{artifact_id}", follow_redirects=False).headers["location"]

    response = client.get(location.replace("signature=", "signature=00"))

    assert response.status_code == 403


def test_signed_link_dies_with_its_crate(client):
    artifact_id = _upload(client, ttl=0.02).json()["id"]
    location = client.get(f"/api/uploads/{artifact_id}", follow_redirects=False).headers["location"]
    _expire(artifact_id)

    response = client.get(location)

    assert response.status_code == 404
    assert response.json() == {"detail": "crate not found"}


def test_signed_link_to_deleted_crate_is_not_found(client):
    artifact_id = _upload(client, headers=OWNER).json()["id"]
    location = client.get(f"/api/uploads/{artifact_id}", follow_redirects=False).headers["location"]
    client.delete(f"/api/uploads/{artifact_id}", headers=OWNER)

    assert client.get(location).status_code == 404


def test_signed_link_expiry_is_capped_by_crate_expiry(client):
    body = _upload(client, ttl=0.02).json()
    location = client.get(f"/api/uploads/{body['id']}", follow_redirects=False).headers["location"]

    link_expires = int(parse_qs(urlparse(location).query)["expires"][0])

    assert link_expires <= _ts(body["expires_at"]).timestamp()


def test_stream_mode_preserves_content_type(client):
    artifact_id = _upload(client, data=b"\x89PNG", name="pic.png", content_type="image/png").json()["id"]

    response = client.get(f"/api/uploads/{artifact_id}", params={"mode": "stream"})

    assert response.status_code == 200
    assert response.content == b"\x89PNG"
    assert response.headers["content-type"] == "image/png"
    assert response.headers["content-disposition"] == "attachment; filename=\"pic.png\"; filename*=UTF-8''pic.png"


def test_zero_byte_round_trip(client):
    body = _upload(client, data=b"", name="empty.txt").json()

    response = client.get(f"/api/uploads/{body['id']}", params={"mode": "stream"})

    assert body["size_bytes"] == 0
    assert response.status_code == 200
    assert response.content == b""


def test_info_mode_does_not_count(client):
    artifact_id = _upload(client).json()["id"]

    client.get(f"/api/uploads/{artifact_id}", params={"mode": "stream"})
    info = client.get(f"/api/uploads/{artifact_id}", params={"mode": "info"}).json()
    again = client.get(f"/api/uploads/{artifact_id}", params={"mode": "info"}).json()

    assert info["download_count"] == 1
    assert again["download_count"] == 1


def test_download_succeeds_when_counter_update_fails(client, monkeypatch):
    artifact_id = _upload(client).json()["id"]

    def broken_increment(artifact_id):
        raise StorageUnavailable("metadata store down")

    monkeypatch.setattr(crud, "increment_download_count", broken_increment)
    response = client.get(f"/api/uploads/{artifact_id}", params={"mode": "stream"})

    assert response.status_code == 200
    assert response.content == b"0123456789"
    monkeypatch.undo()
    assert client.get(f"/api/uploads/{artifact_id}", params={"mode": "info"}).json()["download_count"] == 0


def test_redirect_counts_download(client):
    artifact_id = _upload(client).json()["id"]

    client.get(f"/api/uploads/{artifact_id}", follow_redirects=False)

    assert crud.get_artifact(artifact_id).download_count == 1


def test_non_ascii_name_gets_encoded_disposition(client):
    artifact_id = _upload(client, name="my file é.txt").json()["id"]

    response = client.get(f"/api/uploads/{artifact_id}", params={"mode": "stream"})

    disposition = response.headers["content-disposition"]
    assert 'filename="my file _.txt"' in disposition
    assert "filename*=UTF-8''my%20file%20%C3%A9.txt" in disposition


def test_quote_in_name_does_not_break_disposition():
    disposition = _disposition('say "hi".txt')

    assert disposition == "attachment; filename=\"say _hi_.txt\"; filename*=UTF-8''say%20%22hi%22.txt"


def test_expired_and_unknown_crates_both_404(client):
    artifact_id = _upload(client).json()["id"]
    _expire(artifact_id)

    expired = client.get(f"/api/uploads/{artifact_id}")
    unknown = client.get("/api/uploads/no-such-crate")

    assert expired.status_code == unknown.status_code == 404
    assert expired.json() == unknown.json() == {"detail": "crate not found"}


def test_password_protected_download(client):
    artifact_id = _upload(client, password="hunter2", headers=OWNER).json()["id"]
    url = f"/api/uploads/{artifact_id}"

    assert client.get(url, params={"mode": "stream"}).status_code == 401
    assert client.get(url, params={"mode": "stream"}, headers={"X-Crate-Password": "nope"}).status_code == 401
    ok = client.get(url, params={"mode": "stream"}, headers={"X-Crate-Password": "hunter2"})
    assert ok.status_code == 200
    # the owner needs no password
    assert client.get(url, params={"mode": "stream"}, headers=OWNER).status_code == 200


def test_anonymous_password_protected_upload_needs_password(client):
    artifact_id = _upload(client, password="hunter2").json()["id"]
    url = f"/api/uploads/{artifact_id}"

    assert client.get(url, params={"mode": "stream"}).status_code == 401
    assert client.get(url, params={"mode": "info"}).status_code == 401
    ok = client.get(url, params={"mode": "stream"}, headers={"X-Crate-Password": "hunter2"})
    assert ok.status_code == 200
    assert ok.content == b"0123456789"


def test_anonymous_private_upload_is_refused_to_anonymous_callers(client):
    artifact_id = _upload(client, public="false").json()["id"]

    assert client.get(f"/api/uploads/{artifact_id}", params={"mode": "info"}).status_code == 403
    assert client.get(f"/api/uploads/{artifact_id}").status_code == 403


def test_verify_password_endpoint(client):
    protected = _upload(client, password="hunter2").json()["id"]
    open_crate = _upload(client).json()["id"]

    assert client.post(f"/api/uploads/{protected}/verify-password", json={"password": "hunter2"}).json()["success"]
    assert client.post(f"/api/uploads/{protected}/verify-password", json={"password": "x"}).status_code == 401
    assert client.post(f"/api/uploads/{open_crate}/verify-password", json={"password": "x"}).status_code == 400


def test_private_crate_only_for_owner(client):
    artifact_id = _upload(client, public="false", headers=OWNER).json()["id"]

    assert client.get(f"/api/uploads/{artifact_id}", params={"mode": "info"}).status_code == 403
    assert client.get(f"/api/uploads/{artifact_id}", params={"mode": "info"}, headers=OWNER).status_code == 200


def test_owner_sharing_and_expiry_updates(client):
    artifact_id = _upload(client, headers=OWNER).json()["id"]

    shared = client.patch(f"/api/uploads/{artifact_id}/sharing", json={"password": "pw"}, headers=OWNER)
    assert shared.status_code == 200
    assert shared.json()["password_protected"] is True

    extended = client.patch(f"/api/uploads/{artifact_id}/expiry", json={"ttl_hours": 12}, headers=OWNER)
    assert extended.status_code == 200
    expires = _ts(extended.json()["expires_at"])
    assert expires > datetime.now(timezone.utc) + timedelta(hours=11)

    stranger = client.patch(f"/api/uploads/{artifact_id}/expiry", json={"ttl_hours": 12})
    assert stranger.status_code == 404


def test_owner_delete(client):
    artifact_id = _upload(client, headers=OWNER).json()["id"]

    assert client.delete(f"/api/uploads/{artifact_id}").status_code == 404
    assert client.delete(f"/api/uploads/{artifact_id}", headers=OWNER).status_code == 204
    assert client.get(f"/api/uploads/{artifact_id}").status_code == 404


def test_list_own_uploads(client):
    mine = _upload(client, headers=OWNER).json()["id"]
    _upload(client)

    listed = client.get("/api/uploads", headers=OWNER).json()

    assert [a["id"] for a in listed] == [mine]
    assert client.get("/api/uploads").json() == []


def test_purge_requires_api_key(client):
    assert client.get("/api/cron/purge-expired").status_code == 403
    assert client.get("/api/cron/purge-expired", headers={"X-API-Key": "wrong"}).status_code == 403


def test_purge_endpoint_sweeps_expired(client, store):
    expired_id = _upload(client).json()["id"]
    live_id = _upload(client).json()["id"]
    _expire(expired_id)

    report = client.get("/api/cron/purge-expired", headers=API_KEY).json()

    assert report == {"purged_count": 1, "failures": [], "already_running": False}
    assert crud.get_artifact(expired_id) is None
    assert crud.get_artifact(live_id) is not None

    again = client.get("/api/cron/purge-expired", headers=API_KEY).json()
    assert again["purged_count"] == 0


def test_purge_endpoint_reports_running_sweep(client, fake_redis):
    fake_redis.values[settings.PURGE_LOCK_KEY] = "someone-else"

    report = client.get("/api/cron/purge-expired", headers=API_KEY).json()

    assert report["already_running"] is True
    assert report["purged_count"] == 0


def test_reconcile_endpoint(client):
    response = client.post("/api/cron/reconcile-orphans", headers=API_KEY)

    assert response.status_code == 200
    assert response.json()["purged_count"] == 0
