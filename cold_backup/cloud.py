"""Object storage integration used by the backup tool."""
from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ReadTimeoutError
from botocore.exceptions import ConnectionError as BotoConnectionError

from .archive import ArchiveError
from .errors import ConnectivityError

LOGGER = logging.getLogger(__name__)

# S3 rejects multipart parts smaller than 5 MiB (except the last one).
PART_SIZE = 5 * 1024 * 1024
COPY_CHUNK_SIZE = 64 * 1024
DEFAULT_REGION = "us-east-1"

_REGION_RE = re.compile(r"^s3[.-](?P<region>[a-z0-9-]+)\.amazonaws\.com$")


class UploadError(Exception):
    """Raised when writing the archive to object storage fails."""


class WriteSink(Protocol):
    def write(self, data: bytes) -> int:
        ...

    def close(self, error: Optional[BaseException] = None) -> None:
        ...


def region_for_domain(domain: str) -> str:
    match = _REGION_RE.match(domain)
    if match and match.group("region") != "external-1":
        return match.group("region")
    return DEFAULT_REGION


def _storage_error(action: str, exc: Exception) -> Exception:
    if isinstance(exc, (BotoConnectionError, ReadTimeoutError)):
        return ConnectivityError(f"Could not reach object storage while trying to {action}: {exc}")
    return UploadError(f"Object storage failed to {action}: {exc}")


class S3Writer:
    """Write-stream handle over an S3 multipart upload.

    Bytes are buffered into parts of ``part_size``. The multipart upload is
    only started once the first full part is available; smaller archives are
    sent with a single ``put_object`` on close. Closing with an error aborts
    the upload so no partial object is ever published.
    """

    def __init__(self, client, bucket: str, key: str, part_size: int = PART_SIZE,
                 logger: logging.Logger = LOGGER) -> None:
        self.client = client
        self.bucket = bucket
        self.key = key
        self.part_size = part_size
        self.logger = logger
        self.upload_id: Optional[str] = None
        self.parts: List[Dict[str, object]] = []
        self.bytes_written = 0
        self.closed = False
        self._buffer = bytearray()

    def write(self, data: bytes) -> int:
        if self.closed:
            raise UploadError(f"Write to closed S3 writer for '{self.key}'.")
        self._buffer.extend(data)
        self.bytes_written += len(data)
        while len(self._buffer) >= self.part_size:
            part = bytes(self._buffer[: self.part_size])
            del self._buffer[: self.part_size]
            self._upload_part(part)
        return len(data)

    def _upload_part(self, body: bytes) -> None:
        try:
            if self.upload_id is None:
                response = self.client.create_multipart_upload(Bucket=self.bucket, Key=self.key)
                self.upload_id = response["UploadId"]
                self.logger.debug("Started multipart upload %s for %s.", self.upload_id, self.key)
            number = len(self.parts) + 1
            response = self.client.upload_part(
                Bucket=self.bucket,
                Key=self.key,
                UploadId=self.upload_id,
                PartNumber=number,
                Body=body,
            )
        except (BotoCoreError, ClientError) as exc:
            raise _storage_error(f"upload part of '{self.key}'", exc) from exc
        self.parts.append({"ETag": response["ETag"], "PartNumber": number})

    def close(self, error: Optional[BaseException] = None) -> None:
        """Publish the object, or discard it when *error* is given."""

        if self.closed:
            return
        self.closed = True
        if error is not None:
            self._abort(error)
            return
        try:
            if self.upload_id is None:
                self.client.put_object(Bucket=self.bucket, Key=self.key, Body=bytes(self._buffer))
            else:
                if self._buffer:
                    self._upload_part(bytes(self._buffer))
                self.client.complete_multipart_upload(
                    Bucket=self.bucket,
                    Key=self.key,
                    UploadId=self.upload_id,
                    MultipartUpload={"Parts": self.parts},
                )
        except (BotoCoreError, ClientError) as exc:
            failure = _storage_error(f"complete upload of '{self.key}'", exc)
            self._abort(failure)
            raise failure from exc
        except (ConnectivityError, UploadError) as exc:
            self._abort(exc)
            raise
        finally:
            self._buffer.clear()
        self.logger.info("Uploaded s3://%s/%s: bytes=%d parts=%d.", self.bucket, self.key,
                         self.bytes_written, max(len(self.parts), 1))

    def _abort(self, error: BaseException) -> None:
        self._buffer.clear()
        if self.upload_id is None:
            return
        self.logger.warning("Aborting multipart upload of %s after error: %s", self.key, error)
        try:
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=self.key, UploadId=self.upload_id)
        except (BotoCoreError, ClientError) as exc:
            self.logger.error("Could not abort multipart upload %s of %s: %s", self.upload_id, self.key, exc)


class S3WriterProvider:
    """Hand out :class:`S3Writer` objects for one bucket."""

    def __init__(self, access_key: str, secret_key: str, domain: str, bucket: str, client=None) -> None:
        self.domain = domain
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            endpoint_url=f"https://{domain}",
            region_name=region_for_domain(domain),
            config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
        )

    def get_writer(self, name: str) -> S3Writer:
        LOGGER.info("Opening S3 writer for s3://%s/%s via %s.", self.bucket, name, self.domain)
        return S3Writer(self.client, self.bucket, name)


def upload_to_s3(sink: WriteSink, source, chunk_size: int = COPY_CHUNK_SIZE,
                 logger: logging.Logger = LOGGER) -> int:
    """Copy every byte from *source* to *sink*.

    The source is closed once the copy ends and the sink is closed exactly
    once on every exit path, with the failure when there was one.
    """

    error: Optional[BaseException] = None
    try:
        try:
            return _copy(sink, source, chunk_size)
        finally:
            source.close()
    except BaseException as exc:
        error = exc
        logger.error("Cannot upload archive to S3: %s", exc)
        raise
    finally:
        sink.close(error)


def _copy(sink: WriteSink, source, chunk_size: int) -> int:
    copied = 0
    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            return copied
        try:
            sink.write(chunk)
        except (ArchiveError, ConnectivityError, UploadError):
            raise
        except (OSError, ValueError) as exc:
            raise UploadError(f"Could not write archive to storage: {exc}") from exc
        copied += len(chunk)


__all__ = [
    "PART_SIZE",
    "S3Writer",
    "S3WriterProvider",
    "UploadError",
    "WriteSink",
    "region_for_domain",
    "upload_to_s3",
]
