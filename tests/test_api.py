"""HTTP tests: routes, the user cookie and error kind to status mapping."""

import io
import zipfile

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.routers.files import get_drive


@pytest.fixture()
def client(drive):
    """TestClient logged in as user 1, backed by the test drive."""
    app.dependency_overrides[get_drive] = lambda: drive

    with TestClient(app) as test_client:
        test_client.cookies.set("user_id", "1")
        yield test_client

    app.dependency_overrides.clear()


def upload_zip(client, archive: bytes, parent_id=None):
    data = {"parent_id": str(parent_id)} if parent_id is not None else {}
    return client.post(
        "/upload-folder",
        files={"archive": ("folder.zip", archive, "application/zip")},
        data=data,
    )


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_upload_folder_then_list_and_download(client, make_zip):
    response = upload_zip(client, make_zip({"docs/a.txt": b"abc", "docs/sub/b.txt": b"hello"}))
    assert response.status_code == 201
    nodes = response.json()
    docs = next(node for node in nodes if node["name"] == "docs")
    assert docs["is_folder"] is True
    assert docs["size"] == 8

    listing = client.get(f"/folders/{docs['id']}").json()
    assert [node["name"] for node in listing] == ["sub", "a.txt"]

    response = client.get(f"/download-folder/{docs['id']}")
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/zip"
    assert 'filename="docs.zip"' in response.headers["content-disposition"]
    with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
        assert zf.namelist() == ["a.txt", "sub/b.txt"]


def test_upload_and_download_single_file(client):
    folder = client.post("/folders", data={"name": "inbox"}).json()

    response = client.post(
        "/upload",
        files={"upload": ("note.txt", b"remember", "text/plain")},
        data={"parent_id": str(folder["id"])},
    )
    assert response.status_code == 201
    node = response.json()
    assert node["parent_id"] == folder["id"]
    assert node["size"] == 8
    assert "location" not in node

    response = client.get(f"/download/{node['id']}")
    assert response.content == b"remember"
    assert response.headers["content-type"].startswith("text/plain")

    assert [n["name"] for n in client.get("/folders").json()] == ["inbox"]
    assert {n["name"] for n in client.get("/files").json()} == {"inbox", "note.txt"}


def test_empty_parent_field_means_root(client):
    response = client.post("/folders", data={"name": "top", "parent_id": ""})

    assert response.status_code == 201
    assert response.json()["parent_id"] is None


def test_requests_without_the_cookie_are_rejected(client):
    client.cookies.clear()

    assert client.get("/files").status_code == 401


def test_oversized_upload_is_413(client, settings):
    response = client.post(
        "/upload",
        files={"upload": ("big.bin", b"x" * (settings.max_file_size + 1), "application/octet-stream")},
    )

    assert response.status_code == 413
    assert response.json()["error"] == "SizeLimitExceeded"


def test_malformed_archive_is_400(client):
    response = upload_zip(client, b"not a zip")

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidArchive"


def test_other_users_folder_is_403(client):
    folder = client.post("/folders", data={"name": "private"}).json()
    client.cookies.set("user_id", "2")

    response = client.get(f"/folders/{folder['id']}")

    assert response.status_code == 403
    assert response.json()["error"] == "Forbidden"


def test_missing_node_is_404(client):
    response = client.get("/download/999")

    assert response.status_code == 404
    assert response.json()["error"] == "NotFound"


def test_empty_folder_download_is_404(client):
    folder = client.post("/folders", data={"name": "nothing"}).json()

    response = client.get(f"/download-folder/{folder['id']}")

    assert response.status_code == 404
    assert response.json()["error"] == "EmptyFolder"


def test_failed_upload_is_502(client, blobs, make_zip):
    blobs.fail_put = {"b.txt"}

    response = upload_zip(client, make_zip({"a.txt": b"a", "b.txt": b"b"}))

    assert response.status_code == 502
    assert response.json()["error"] == "PartialFailure"
    assert client.get("/files").json() == []


def test_delete_folder(client, make_zip):
    nodes = upload_zip(client, make_zip({"trash/a.txt": b"a", "trash/b.txt": b"b"})).json()
    trash = next(node for node in nodes if node["name"] == "trash")

    response = client.post(f"/delete/{trash['id']}")

    assert response.status_code == 200
    assert len(response.json()) == 3
    assert client.get("/files").json() == []


def test_refresh_sizes(client, make_zip):
    nodes = upload_zip(client, make_zip({"keep/a.txt": b"abcd"})).json()
    keep = next(node for node in nodes if node["name"] == "keep")

    response = client.post(f"/refresh-sizes/{keep['id']}")

    assert response.status_code == 200
    assert response.json()["size"] == 4


def test_missing_blob_message_does_not_leak_the_storage_key(client, blobs):
    node = client.post("/upload", files={"upload": ("a.txt", b"abc", "text/plain")}).json()
    location = next(iter(blobs.objects))
    blobs.objects.clear()

    response = client.get(f"/download/{node['id']}")

    assert response.status_code == 404
    assert location not in response.text
    assert location.split("/")[1] not in response.text
