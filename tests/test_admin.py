"""Admin endpoints: folder removal/info on the filesystem store, object count/clear on S3."""
from pathlib import Path

import pytest


@pytest.fixture
def tree(settings):
    root = Path(settings.file_store_path)
    (root / "ds1" / "sub").mkdir(parents=True)
    (root / "ds1" / "a.txt").write_bytes(b"aa")
    (root / "ds1" / "sub" / "b.txt").write_bytes(b"bbb")
    (root / "ds2").mkdir()
    (root / "ds2" / "keep.txt").write_bytes(b"k")
    return root


@pytest.mark.parametrize(
    "body", [{}, {"id_or_path": ""}, {"id_or_path": None}, {"id_or_path": 123}, {"id_or_path": ["ds1"]}]
)
async def test_remove_requires_path(client, auth_headers, body):
    r = await client.post("/api/1/file/remove", json=body, headers=auth_headers)
    assert r.status_code == 400
    assert r.json() == {"error": "file id or path is required"}


async def test_remove_without_body(client, auth_headers):
    r = await client.post("/api/1/file/remove", headers=auth_headers)
    assert r.status_code == 400


async def test_remove_folder(client, auth_headers, tree):
    r = await client.post("/api/1/file/remove", json={"id_or_path": "ds1"}, headers=auth_headers)
    assert r.status_code == 200
    assert r.json() == {"message": "file or folder removed"}
    assert not (tree / "ds1").exists()
    assert (tree / "ds2" / "keep.txt").exists()


@pytest.mark.parametrize("path", ["nope", "../", "ds1/../../..", "/"])
async def test_remove_missing_or_escaping_path_is_404(client, auth_headers, tree, path):
    r = await client.post("/api/1/file/remove", json={"id_or_path": path}, headers=auth_headers)
    assert r.status_code == 404
    assert r.json() == {"error": "file or folder not found, or error occured"}
    assert (tree / "ds1" / "a.txt").exists()
    assert (tree / "ds2" / "keep.txt").exists()


async def test_folder_info(client, auth_headers, tree):
    r = await client.post("/api/1/files", json={"id_or_path": "ds1"}, headers=auth_headers)
    assert r.status_code == 200
    data = r.json()
    assert data["is_directory"] is True
    assert data["file_count"] == 2
    assert data["total_size"] == 5
    assert [c["name"] for c in data["children"]] == ["a.txt", "sub"]


async def test_folder_info_errors(client, auth_headers, tree):
    r = await client.post("/api/1/files", json={}, headers=auth_headers)
    assert r.status_code == 400
    r = await client.post("/api/1/files", json={"id_or_path": 123}, headers=auth_headers)
    assert r.status_code == 400
    assert r.json() == {"error": "file id or path is required"}
    r = await client.post("/api/1/files", json={"id_or_path": "missing"}, headers=auth_headers)
    assert r.status_code == 404


def _seed(s3_client, *keys):
    for k in keys:
        s3_client.objects[k] = b"x"


async def test_object_count_requires_prefix_key(client, auth_headers):
    r = await client.get("/api/1/object-count", headers=auth_headers)
    assert r.status_code == 400
    assert r.json() == {"message": "prefix is required"}


async def test_object_count_empty_prefix_counts_all(client, auth_headers, s3_client):
    _seed(s3_client, "a/1", "a/2", "b/1")
    r = await client.get("/api/1/object-count?prefix=", headers=auth_headers)
    assert r.status_code == 200
    assert r.json() == {"count": 3}
    r = await client.get("/api/1/object-count", params={"prefix": "a/"}, headers=auth_headers)
    assert r.json() == {"count": 2}


async def test_object_clear_requires_prefix_key(client, auth_headers, s3_client):
    _seed(s3_client, "a/1")
    r = await client.get("/api/1/object-clear", headers=auth_headers)
    assert r.status_code == 400
    assert r.json() == {"message": "prefix is required"}
    assert "a/1" in s3_client.objects


async def test_object_clear_scoped(client, auth_headers, s3_client):
    _seed(s3_client, "a/1", "a/2", "b/1")
    r = await client.get("/api/1/object-clear", params={"prefix": "a/"}, headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["deleted"] == 2
    assert sorted(s3_client.objects) == ["b/1"]


async def test_object_clear_empty_prefix_clears_all(client, auth_headers, s3_client):
    _seed(s3_client, "a/1", "b/1")
    r = await client.get("/api/1/object-clear?prefix=", headers=auth_headers)
    assert r.status_code == 200
    assert s3_client.objects == {}


async def test_object_clear_failure_is_reported(client, auth_headers, s3_client):
    _seed(s3_client, "a/1", "a/2")
    s3_client.fail_delete.add("a/1")
    r = await client.get("/api/1/object-clear", params={"prefix": "a/"}, headers=auth_headers)
    assert r.status_code == 500
    assert "error" in r.json()


async def test_object_endpoints_without_s3(tmp_path, token):
    from httpx import ASGITransport, AsyncClient

    from upload_gateway.core.config import Settings
    from upload_gateway.main import create_app

    settings = Settings(file_store_path=str(tmp_path), config_store="memory", session_store="memory", secret_key="test-secret")
    app = create_app(settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        r = await client.get("/api/1/object-count?prefix=", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 500
