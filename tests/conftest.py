"""Pytest fixtures: settings on tmp dirs, app client, in-memory S3 fake, bearer tokens."""
import base64
import io
import itertools

import pytest
from botocore.exceptions import ClientError
from httpx import ASGITransport, AsyncClient

from upload_gateway.core.config import ConfigStoreKind, Settings
from upload_gateway.core.security import create_access_token
from upload_gateway.main import create_app

TEST_SECRET = "test-secret"
TEST_BUCKET = "test-bucket"


def _missing(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "missing"}}, operation)


class FakeS3Client:
    """Just enough of the boto3 S3 client for S3Store. page_size drives list_objects_v2 pagination."""

    def __init__(self, page_size: int = 1000):
        self.objects: dict[str, bytes] = {}
        self.tags: dict[str, str] = {}
        self.uploads: dict[str, dict] = {}
        self.page_size = page_size
        self.fail_delete: set[str] = set()
        self.calls: list[str] = []
        self._ids = itertools.count(1)

    # objects

    def put_object(self, Bucket, Key, Body, Tagging=None, **kw):
        self.calls.append("put_object")
        self.objects[Key] = bytes(Body)
        if Tagging:
            self.tags[Key] = Tagging
        return {}

    def get_object(self, Bucket, Key):
        self.calls.append("get_object")
        if Key not in self.objects:
            raise _missing("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def head_object(self, Bucket, Key):
        self.calls.append("head_object")
        if Key not in self.objects:
            raise _missing("404", "HeadObject")
        return {"ContentLength": len(self.objects[Key])}

    def delete_object(self, Bucket, Key):
        self.calls.append("delete_object")
        self.objects.pop(Key, None)
        return {}

    def delete_objects(self, Bucket, Delete):
        self.calls.append("delete_objects")
        deleted, errors = [], []
        for obj in Delete["Objects"]:
            if obj["Key"] in self.fail_delete:
                errors.append({"Key": obj["Key"], "Code": "AccessDenied", "Message": "denied"})
                continue
            self.objects.pop(obj["Key"], None)
            deleted.append({"Key": obj["Key"]})
        resp = {"Deleted": deleted}
        if errors:
            resp["Errors"] = errors
        return resp

    def list_objects_v2(self, Bucket, Prefix="", ContinuationToken=None):
        self.calls.append("list_objects_v2")
        # continuation token is the last key returned, so deleting between pages is safe
        keys = sorted(
            k for k in self.objects if k.startswith(Prefix) and (ContinuationToken is None or k > ContinuationToken)
        )
        page = keys[: self.page_size]
        resp = {"Contents": [{"Key": k, "Size": len(self.objects[k])} for k in page], "KeyCount": len(page)}
        if len(keys) > self.page_size:
            resp["IsTruncated"] = True
            resp["NextContinuationToken"] = page[-1]
        else:
            resp["IsTruncated"] = False
        return resp

    def put_object_tagging(self, Bucket, Key, Tagging):
        self.calls.append("put_object_tagging")
        self.tags[Key] = ",".join(f"{t['Key']}={t['Value']}" for t in Tagging["TagSet"])
        return {}

    # multipart

    def create_multipart_upload(self, Bucket, Key, **kw):
        self.calls.append("create_multipart_upload")
        upload_id = f"upload-{next(self._ids)}"
        self.uploads[upload_id] = {"Key": Key, "parts": {}}
        return {"UploadId": upload_id}

    def upload_part(self, Bucket, Key, UploadId, PartNumber, Body):
        self.calls.append("upload_part")
        if UploadId not in self.uploads:
            raise _missing("NoSuchUpload", "UploadPart")
        self.uploads[UploadId]["parts"][PartNumber] = bytes(Body)
        return {"ETag": f'"etag-{PartNumber}"'}

    def list_parts(self, Bucket, Key, UploadId, PartNumberMarker=0):
        self.calls.append("list_parts")
        if UploadId not in self.uploads:
            raise _missing("NoSuchUpload", "ListParts")
        parts = self.uploads[UploadId]["parts"]
        return {
            "Parts": [
                {"PartNumber": n, "ETag": f'"etag-{n}"', "Size": len(parts[n])}
                for n in sorted(parts)
                if n > PartNumberMarker
            ],
            "IsTruncated": False,
        }

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        self.calls.append("complete_multipart_upload")
        upload = self.uploads.pop(UploadId)
        numbers = [p["PartNumber"] for p in MultipartUpload["Parts"]]
        self.objects[Key] = b"".join(upload["parts"][n] for n in numbers)
        return {}

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        self.calls.append("abort_multipart_upload")
        if UploadId not in self.uploads:
            raise _missing("NoSuchUpload", "AbortMultipartUpload")
        del self.uploads[UploadId]
        return {}

    def list_multipart_uploads(self, Bucket, Prefix="", **kw):
        self.calls.append("list_multipart_uploads")
        return {
            "Uploads": [
                {"Key": u["Key"], "UploadId": upload_id}
                for upload_id, u in self.uploads.items()
                if u["Key"].startswith(Prefix)
            ],
            "IsTruncated": False,
        }


def b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def upload_metadata(**fields) -> str:
    return ",".join(f"{k} {b64(v)}" for k, v in fields.items())


def tus_headers(token: str | None = None, **extra) -> dict:
    headers = {"Tus-Resumable": "1.0.0"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    headers.update(extra)
    return headers


@pytest.fixture
def settings(tmp_path):
    return Settings(
        file_store_path=str(tmp_path / "uploads"),
        file_kv_store_path=str(tmp_path / "upload-meta"),
        session_store_path=str(tmp_path / "sessions"),
        config_store=ConfigStoreKind.MEMORY,
        session_store=ConfigStoreKind.MEMORY,
        s3_bucket=TEST_BUCKET,
        secret_key=TEST_SECRET,
    )


@pytest.fixture
def s3_client():
    return FakeS3Client()


@pytest.fixture
def app(settings, s3_client):
    return create_app(settings, s3_client=s3_client)


@pytest.fixture
def gateway(app):
    return app.state.gateway


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def token():
    return create_access_token("user-1", TEST_SECRET)


@pytest.fixture
def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}
