import uuid
from dataclasses import dataclass
from typing import Any, Iterator
from urllib.parse import urlparse

import boto3
import structlog
from botocore.client import Config
from botocore.exceptions import ClientError

from scenedesk.core.config import Settings
from scenedesk.core.errors import ObjectNotFoundError, RangeNotSatisfiableError

logger = structlog.get_logger()

UPLOAD_DIR = "videos"
STREAM_CHUNK_SIZE = 64 * 1024


def _with_scheme(endpoint: str) -> str:
    if not endpoint.startswith(("http://", "https://")):
        return f"http://{endpoint}"
    return endpoint


@dataclass
class ObjectStream:
    body: Any
    content_type: str
    content_length: int
    content_range: str | None = None

    @property
    def partial(self) -> bool:
        return self.content_range is not None

    def iter_chunks(self, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
        try:
            yield from self.body.iter_chunks(chunk_size)
        finally:
            self.body.close()


class StorageService:
    """S3-compatible blob storage for uploaded videos (MinIO in development).

    Uploads go straight from the browser to the bucket through a presigned PUT
    URL; the API only ever sees the resulting object path
    (``/objects/videos/<id>``) and streams it back on request.
    """

    def __init__(self, settings: Settings) -> None:
        endpoint = _with_scheme(settings.minio_endpoint)
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint,
            aws_access_key_id=settings.minio_access_key,
            aws_secret_access_key=settings.minio_secret_key,
            config=Config(signature_version="s3v4"),
        )
        self.bucket = settings.minio_bucket
        self.object_prefix = settings.object_prefix.rstrip("/")
        self.public_dir = settings.public_object_dir.strip("/")
        self.expires_in = settings.presigned_url_expiry_seconds

        # Client for presigned URLs (external access)
        external_endpoint = _with_scheme(settings.minio_external_endpoint or endpoint)
        self.presign_client = boto3.client(
            "s3",
            endpoint_url=external_endpoint,
            aws_access_key_id=settings.minio_access_key,
            aws_secret_access_key=settings.minio_secret_key,
            config=Config(signature_version="s3v4"),
        )

    def generate_upload_url(self, expires_in: int | None = None) -> str:
        key = f"{UPLOAD_DIR}/{uuid.uuid4()}"
        url = self.presign_client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in or self.expires_in,
        )
        logger.info("upload_url_issued", bucket=self.bucket, key=key)
        return url

    def object_path_from_upload_url(self, upload_url: str) -> str:
        """Turn a presigned upload URL into the ``/objects/...`` path served by the API.

        URLs that do not point into our bucket are returned unchanged.
        """
        path = urlparse(upload_url).path
        bucket_prefix = f"/{self.bucket}/"
        if not path.startswith(bucket_prefix):
            return upload_url
        return f"{self.object_prefix}/{path[len(bucket_prefix):]}"

    def key_from_object_path(self, object_path: str) -> str:
        key = object_path
        if key.startswith(self.object_prefix + "/"):
            key = key[len(self.object_prefix) + 1:]
        return key.lstrip("/")

    def public_key(self, file_path: str) -> str:
        return f"{self.public_dir}/{file_path.lstrip('/')}"

    def open_stream(self, key: str, range_header: str | None = None) -> ObjectStream:
        params = {"Bucket": self.bucket, "Key": key}
        if range_header:
            params["Range"] = range_header
        try:
            response = self.client.get_object(**params)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404", "NotFound"):
                raise ObjectNotFoundError(key)
            if code == "InvalidRange":
                size = e.response["Error"].get("ActualObjectSize")
                raise RangeNotSatisfiableError(key, int(size) if size else None)
            raise

        return ObjectStream(
            body=response["Body"],
            content_type=response.get("ContentType") or "application/octet-stream",
            content_length=response["ContentLength"],
            content_range=response.get("ContentRange") if range_header else None,
        )

    def ensure_bucket_exists(self) -> None:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except ClientError:
            self.client.create_bucket(Bucket=self.bucket)
            logger.info("bucket_created", bucket=self.bucket)
