import types

import pytest
from fastapi.testclient import TestClient

import llm_humorizer.genai_client as genai_client
from llm_humorizer.app import create_app
from llm_humorizer.config import Settings
from llm_humorizer.constants import ACTOR_COOKIE, SESSION_COOKIE
from llm_humorizer.genai_client import CaptionClient
from llm_humorizer.key_rotation import KeyPool, MemoryKeyStateStore
from llm_humorizer.storage import WebDavStorage

from tests._helpers import FakeClientFactory, FakeGenaiError, FakeWebDavClient, make_image_bytes


@pytest.fixture(autouse=True)
def _stub_part(monkeypatch):
    part = types.SimpleNamespace(from_bytes=lambda data, mime_type: ("part", mime_type))
    monkeypatch.setattr(genai_client, "types", types.SimpleNamespace(Part=part))


@pytest.fixture
def webdav():
    return FakeWebDavClient()


@pytest.fixture
def app(tmp_path, webdav):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'humorizer.db'}",
        key_state_file=str(tmp_path / "key_state.json"),
        google_genai_api_keys="k1",
        jwt_secret="test-secret",
        public_base_url="http://testserver/files",
    )
    application = create_app(settings)
    storage = WebDavStorage("http://dav/photos", public_base_url="http://testserver/files")
    storage.client = webdav
    application.state.service.storage = storage
    use_caption_outcomes(application, {"k1": "So funny"})
    yield application
    application.state.engine.dispose()


def use_caption_outcomes(application, outcomes):
    pool = KeyPool(list(outcomes), MemoryKeyStateStore())
    application.state.key_pool = pool
    application.state.service.caption_client = CaptionClient(pool, client_factory=FakeClientFactory(outcomes))


def _png():
    return ("face.png", make_image_bytes(), "image/png")


def _create(client, name="Party", settings=None):
    payload = {"name": name}
    if settings is not None:
        payload["settings"] = settings
    r = client.post("/galleries", json=payload)
    assert r.status_code == 201, r.text
    return r.json()


def _join(client, share_code, admin_code=None):
    r = client.post("/galleries/join", json={"share_code": share_code, "admin_code": admin_code})
    assert r.status_code == 200, r.text
    return r.json()


def _upload(client, gallery_id, username="dana", description="funny"):
    r = client.post(
        f"/galleries/{gallery_id}/photos",
        files={"file": _png()},
        data={"username": username, "description": description},
    )
    assert r.status_code == 201, r.text
    return r.json()


def test_health_reports_keys(app):
    r = TestClient(app).get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "keys_configured": 1, "keys_usable": 1}


def test_first_request_issues_actor_identity(app):
    client = TestClient(app)
    first = client.get("/me").json()
    assert ACTOR_COOKIE in client.cookies
    assert client.get("/me").json()["owner_identifier"] == first["owner_identifier"]
    assert first["user"] is None
    assert first["gallery"] is None


def test_create_gallery_shows_codes_to_creator_only(app):
    creator = TestClient(app)
    gallery = _create(creator, settings={"tone": "noir", "targetLength": 80})
    assert gallery["is_admin"] is True
    assert len(gallery["share_code"]) == 6
    assert len(gallery["admin_code"]) == 8
    assert gallery["settings"]["tone"] == "noir"
    assert gallery["settings"]["target_length"] == 80
    assert SESSION_COOKIE in creator.cookies
    assert creator.get("/me").json()["gallery"]["id"] == gallery["id"]

    member = TestClient(app)
    joined = _join(member, gallery["share_code"].lower())
    assert joined["is_admin"] is False
    assert "admin_code" not in joined


def test_create_gallery_rejects_blank_name(app):
    r = TestClient(app).post("/galleries", json={"name": "  "})
    assert r.status_code == 400


def test_join_unknown_code_is_404(app):
    r = TestClient(app).post("/galleries/join", json={"share_code": "NOPE22"})
    assert r.status_code == 404


def test_caption_save_list_and_download(app, webdav):
    creator = TestClient(app)
    gallery = _create(creator)
    member = TestClient(app)
    _join(member, gallery["share_code"])

    r = member.post("/captions", files={"file": _png()}, data={"gallery_id": gallery["id"]})
    assert r.status_code == 200, r.text
    assert r.json() == {"description": "So funny"}

    photo = _upload(member, gallery["id"], description="So funny")
    assert photo["is_mine"] is True
    assert photo["can_delete"] is True
    assert "owner_identifier" not in photo

    listed = creator.get(f"/galleries/{gallery['id']}/photos").json()
    assert [p["id"] for p in listed] == [photo["id"]]
    assert listed[0]["can_delete"] is True
    assert listed[0]["is_mine"] is False

    filename = photo["image_url"].rsplit("/", 1)[-1]
    r = member.get(f"/files/{gallery['id']}/{filename}")
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert r.content == make_image_bytes()

    assert member.get(f"/files/{gallery['id']}/missing.png").status_code == 404


def test_search_by_username(app):
    creator = TestClient(app)
    gallery = _create(creator)
    photo = _upload(creator, gallery["id"], username="noa")

    r = creator.get(f"/galleries/{gallery['id']}/photos/search", params={"username": "noa"})
    assert r.status_code == 200
    assert r.json()["id"] == photo["id"]
    assert creator.get(f"/galleries/{gallery['id']}/photos/search", params={"username": "x"}).status_code == 404
    assert creator.get(f"/galleries/{gallery['id']}/photos/search").status_code == 400


def test_invalid_upload_is_400(app):
    creator = TestClient(app)
    gallery = _create(creator)
    r = creator.post(
        f"/galleries/{gallery['id']}/photos",
        files={"file": ("x.png", b"not an image", "image/png")},
        data={"username": "dana", "description": "d"},
    )
    assert r.status_code == 400


def test_photo_delete_permissions(app, webdav):
    creator = TestClient(app)
    gallery = _create(creator)
    member = TestClient(app)
    _join(member, gallery["share_code"])
    photo = _upload(member, gallery["id"])

    stranger = TestClient(app)
    _join(stranger, gallery["share_code"])
    listed = stranger.get(f"/galleries/{gallery['id']}/photos").json()
    assert listed[0]["can_delete"] is False
    assert stranger.delete(f"/photos/{photo['id']}").status_code == 403

    r = member.delete(f"/photos/{photo['id']}")
    assert r.status_code == 200
    assert r.json() == {"status": "deleted", "id": photo["id"]}
    assert webdav.files == {}
    assert member.delete(f"/photos/{photo['id']}").status_code == 404


def test_admin_code_join_grants_delete(app):
    creator = TestClient(app)
    gallery = _create(creator)
    member = TestClient(app)
    _join(member, gallery["share_code"])
    photo = _upload(member, gallery["id"])

    admin = TestClient(app)
    joined = _join(admin, gallery["share_code"], gallery["admin_code"].lower())
    assert joined["is_admin"] is True
    assert joined["admin_code"] == gallery["admin_code"]

    assert admin.delete(f"/photos/{photo['id']}").status_code == 200


def test_gallery_delete_requires_admin_and_code(app, webdav):
    creator = TestClient(app)
    gallery = _create(creator)
    member = TestClient(app)
    _join(member, gallery["share_code"])
    _upload(member, gallery["id"])
    _upload(member, gallery["id"], username="noa")
    url = f"/galleries/{gallery['id']}"

    r = member.request("DELETE", url, json={"admin_code": gallery["admin_code"]})
    assert r.status_code == 403
    r = creator.request("DELETE", url, json={"admin_code": "WRONG222"})
    assert r.status_code == 403
    assert len(webdav.files) == 2

    r = creator.request("DELETE", url, json={"admin_code": gallery["admin_code"]})
    assert r.status_code == 200
    assert r.json()["photos_deleted"] == 2
    assert webdav.files == {}
    assert creator.get(url).status_code == 404
    assert creator.get("/me").json()["gallery"] is None


def test_leave_clears_active_gallery(app):
    creator = TestClient(app)
    _create(creator)
    assert creator.post("/galleries/leave").json() == {"status": "left"}
    assert creator.get("/me").json()["gallery"] is None


def test_caption_errors_map_to_retry_hints(app):
    client = TestClient(app)

    use_caption_outcomes(app, {"k1": FakeGenaiError(429, "RESOURCE_EXHAUSTED")})
    r = client.post("/captions", files={"file": _png()})
    assert r.status_code == 503
    assert r.json()["retry"] == "later"

    use_caption_outcomes(app, {"k1": FakeGenaiError(500, "INTERNAL")})
    r = client.post("/captions", files={"file": _png()})
    assert r.status_code == 502
    assert r.json()["retry"] == "now"

    use_caption_outcomes(app, {"k1": ""})
    r = client.post("/captions", files={"file": _png()})
    assert r.status_code == 502


def test_upload_too_large_is_413(app):
    app.state.service.max_upload_bytes = 16
    r = TestClient(app).post("/captions", files={"file": _png()})
    assert r.status_code == 413


def test_my_galleries_requires_sign_in(app):
    client = TestClient(app)
    assert client.get("/galleries/mine").status_code == 401

    _create(client, name="Before sign-in")
    sid = client.cookies[SESSION_COOKIE]
    app.state.sessions.set_user(sid, {'sub': 'google-1', 'email': 'a@example.com', 'name': 'A'})

    gallery = _create(client, name="Signed in")
    mine = client.get("/galleries/mine").json()
    assert [g["id"] for g in mine] == [gallery["id"]]
    assert client.get("/me").json()["user"]["email"] == "a@example.com"

    assert client.post("/auth/logout").json() == {"status": "signed_out"}
    assert client.get("/galleries/mine").status_code == 401


def test_login_disabled_is_404(app):
    r = TestClient(app).get("/auth/login", follow_redirects=False)
    assert r.status_code == 404
