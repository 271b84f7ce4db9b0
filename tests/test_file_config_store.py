"""Default file-backed ConfigStore: session records stay out of the upload tree and apart per adapter."""
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient
from pydantic import ValidationError

from conftest import TEST_BUCKET, TEST_SECRET, tus_headers, upload_metadata
from upload_gateway.core.config import ConfigStoreKind, Settings
from upload_gateway.main import create_app


@pytest.fixture
def file_settings(tmp_path):
    return Settings(
        file_store_path=str(tmp_path / "uploads"),
        file_kv_store_path=str(tmp_path / "upload-meta"),
        config_store=ConfigStoreKind.FILE,
        session_store=ConfigStoreKind.MEMORY,
        s3_bucket=TEST_BUCKET,
        secret_key=TEST_SECRET,
    )


@pytest.fixture
async def file_client(file_settings, s3_client):
    app = create_app(file_settings, s3_client=s3_client)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def _create(client, token, name, length=3):
    r = await client.post(
        "/files",
        headers=tus_headers(
            token, **{"Upload-Length": str(length), "Upload-Metadata": upload_metadata(datasetID="p", name=name)}
        ),
    )
    assert r.status_code == 201
    return r


async def test_json_named_upload_leaves_sibling_session_intact(file_client, token, file_settings):
    await _create(file_client, token, "a.pdf")
    await _create(file_client, token, "a.pdf.json")

    r = await file_client.head("/files/p/a.pdf", headers=tus_headers(token))
    assert r.status_code == 200
    assert r.headers["Upload-Offset"] == "0"
    assert r.headers["Upload-Length"] == "3"
    r = await file_client.head("/files/p/a.pdf.json", headers=tus_headers(token))
    assert r.status_code == 200

    uploads = Path(file_settings.file_store_path)
    assert sorted(p.name for p in (uploads / "p").iterdir()) == ["a.pdf", "a.pdf.json"]


async def test_folder_info_counts_only_uploaded_files(file_client, token):
    await _create(file_client, token, "a.pdf")
    await _create(file_client, token, "b.pdf")
    r = await file_client.post(
        "/api/1/files", json={"id_or_path": "p"}, headers={"Authorization": f"Bearer {token}"}
    )
    assert r.status_code == 200
    data = r.json()
    assert data["file_count"] == 2
    assert [c["name"] for c in data["children"]] == ["a.pdf", "b.pdf"]


async def test_object_clear_keeps_filesystem_sessions(file_client, token, s3_client):
    await _create(file_client, token, "doc.pdf")
    s3_client.objects["p/other.pdf"] = b"x"

    r = await file_client.get("/api/1/object-clear?prefix=", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 200
    assert s3_client.objects == {}

    r = await file_client.head("/files/p/doc.pdf", headers=tus_headers(token))
    assert r.status_code == 200
    assert r.headers["Upload-Offset"] == "0"


async def test_adapters_keep_separate_directories(file_settings, s3_client):
    app = create_app(file_settings, s3_client=s3_client)
    gateway = app.state.gateway
    file_root = gateway.file_store.configstore.root
    s3_root = gateway.s3_store.configstore.root
    assert file_root != s3_root
    assert not file_root.is_relative_to(Path(file_settings.file_store_path).resolve())


@pytest.mark.parametrize("kv_path", ["uploads", "uploads/meta"])
def test_config_store_inside_upload_root_rejected(tmp_path, kv_path):
    with pytest.raises(ValidationError):
        Settings(
            file_store_path=str(tmp_path / "uploads"),
            file_kv_store_path=str(tmp_path / kv_path),
            config_store=ConfigStoreKind.FILE,
        )


def test_memory_config_store_ignores_kv_path(tmp_path):
    settings = Settings(
        file_store_path=str(tmp_path / "uploads"),
        file_kv_store_path=str(tmp_path / "uploads"),
        config_store=ConfigStoreKind.MEMORY,
    )
    assert settings.config_store is ConfigStoreKind.MEMORY
