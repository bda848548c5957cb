from __future__ import annotations

from typing import Dict, List, Optional

import pytest
from botocore.exceptions import ClientError

from cold_backup.cloud import S3Writer, UploadError
from cold_backup.config import BackupConfig
from cold_backup.fleet import UnitState


class FakeFleet:
    """In-memory stand-in for the fleet API."""

    def __init__(self, states=(), error: Optional[Exception] = None,
                 set_errors: Optional[Dict[str, Exception]] = None) -> None:
        self.states = list(states)
        self.error = error
        self.set_errors = set_errors or {}
        self.requests: List[tuple] = []
        self.queries = 0

    def unit_states(self) -> List[UnitState]:
        self.queries += 1
        if self.error is not None:
            raise self.error
        return list(self.states)

    def set_unit_target_state(self, name: str, target: str) -> None:
        if target in self.set_errors:
            raise self.set_errors[target]
        self.requests.append((name, target))


class FakeS3Client:
    """Records S3 calls and assembles uploaded objects in memory."""

    def __init__(self, fail_on: Optional[str] = None, error: Optional[Exception] = None) -> None:
        self.fail_on = fail_on
        self.error = error or ClientError({"Error": {"Code": "500", "Message": "boom"}}, fail_on or "op")
        self.objects: Dict[str, bytes] = {}
        self.uploads: Dict[str, Dict[int, bytes]] = {}
        self.aborted: List[str] = []
        self.calls: List[str] = []

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if name == self.fail_on:
            raise self.error

    def put_object(self, Bucket, Key, Body):
        self._record("put_object")
        self.objects[Key] = bytes(Body)
        return {"ETag": '"single"'}

    def create_multipart_upload(self, Bucket, Key):
        self._record("create_multipart_upload")
        upload_id = f"upload-{len(self.uploads) + len(self.aborted) + 1}"
        self.uploads[upload_id] = {}
        return {"UploadId": upload_id}

    def upload_part(self, Bucket, Key, UploadId, PartNumber, Body):
        self._record("upload_part")
        self.uploads[UploadId][PartNumber] = bytes(Body)
        return {"ETag": f'"etag-{PartNumber}"'}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        self._record("complete_multipart_upload")
        parts = self.uploads.pop(UploadId)
        self.objects[Key] = b"".join(parts[part["PartNumber"]] for part in MultipartUpload["Parts"])
        return {}

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        self._record("abort_multipart_upload")
        self.aborted.append(UploadId)
        self.uploads.pop(UploadId, None)
        return {}


class FakeProvider:
    def __init__(self, client: Optional[FakeS3Client] = None, part_size: int = 256 * 1024,
                 error: Optional[Exception] = None) -> None:
        self.client = client or FakeS3Client()
        self.part_size = part_size
        self.error = error
        self.writers: List[S3Writer] = []

    def get_writer(self, name: str) -> S3Writer:
        if self.error is not None:
            raise self.error
        writer = S3Writer(self.client, "bucket", name, part_size=self.part_size)
        self.writers.append(writer)
        return writer


class RecordingSink:
    """Write sink that remembers every close call."""

    def __init__(self, fail_after: Optional[int] = None) -> None:
        self.data = bytearray()
        self.fail_after = fail_after
        self.close_calls: List[Optional[BaseException]] = []

    def write(self, data: bytes) -> int:
        if self.fail_after is not None and len(self.data) + len(data) > self.fail_after:
            raise UploadError("connection reset by storage")
        self.data.extend(data)
        return len(data)

    def close(self, error: Optional[BaseException] = None) -> None:
        self.close_calls.append(error)


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides) -> BackupConfig:
        values = {
            "aws_access_key": "AKIAEXAMPLE",
            "aws_secret_key": "secret-example",
            "data_folder": str(tmp_path / "data") + "/",
            "target_folder": str(tmp_path / "backup"),
            "env": "test",
        }
        values.update(overrides)
        return BackupConfig(**values)

    return _make


@pytest.fixture
def fake_s3():
    return FakeS3Client()
