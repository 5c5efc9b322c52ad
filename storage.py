"""
Object storage on Cloudflare R2 through its S3-compatible API.

Keys written by this service look like ``users/{userId}/{fileId}.{ext}``;
the ``users/{userId}`` prefix is what the file gateway uses to decide ownership.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

import settings

logger = logging.getLogger(__name__)

USER_NAMESPACE = "users"
FILES_URL_PREFIX = "/api/files/"

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass
class StoredObject:
    body: Iterator[bytes]
    etag: str
    content_type: Optional[str] = None
    size: Optional[int] = None


@dataclass
class ObjectHead:
    size: int
    etag: Optional[str]


def build_storage_key(user_id: str, file_id: str, extension: str) -> str:
    return f"{USER_NAMESPACE}/{user_id}/{file_id}.{extension}"


def storage_key_to_url(key: str) -> str:
    return f"{FILES_URL_PREFIX}{key}"


def file_extension(file_name: str, default: str) -> str:
    """Lower-cased extension of ``file_name`` or ``default`` when it has none."""
    _, dot, ext = (file_name or "").rpartition(".")
    ext = ext.strip().lower()
    return ext if dot and ext else default


def _is_missing(err: ClientError) -> bool:
    code = str(err.response.get("Error", {}).get("Code", ""))
    return code in _MISSING_CODES


class BlobStore:
    """Thin wrapper over a boto3 S3 client bound to a single bucket."""

    def __init__(self, client, bucket: str):
        self._client = client
        self.bucket = bucket

    @classmethod
    def from_settings(cls) -> "BlobStore":
        if not settings.R2_ACCESS_KEY_ID or not settings.R2_SECRET_ACCESS_KEY:
            raise RuntimeError(
                "R2 API credentials not configured. "
                "Set R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY."
            )

        endpoint = settings.R2_ENDPOINT_URL
        if not endpoint:
            if not settings.R2_ACCOUNT_ID:
                raise RuntimeError("Set R2_ACCOUNT_ID or R2_ENDPOINT_URL.")
            endpoint = f"https://{settings.R2_ACCOUNT_ID}.r2.cloudflarestorage.com"

        client = boto3.client(
            "s3",
            endpoint_url=endpoint,
            aws_access_key_id=settings.R2_ACCESS_KEY_ID,
            aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
            region_name="auto",
            config=Config(signature_version="s3v4"),
        )
        return cls(client, settings.R2_BUCKET_NAME)

    # ---------- reads ----------
    def get(self, key: str) -> Optional[StoredObject]:
        try:
            obj = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as err:
            if _is_missing(err):
                return None
            raise

        return StoredObject(
            body=obj["Body"].iter_chunks(),
            etag=obj.get("ETag", ""),
            content_type=obj.get("ContentType"),
            size=obj.get("ContentLength"),
        )

    def head(self, key: str) -> Optional[ObjectHead]:
        try:
            res = self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as err:
            if _is_missing(err):
                return None
            raise
        return ObjectHead(size=int(res.get("ContentLength", 0)), etag=res.get("ETag"))

    # ---------- writes ----------
    def put(self, key: str, data: bytes, content_type: str) -> None:
        self._client.put_object(
            Bucket=self.bucket, Key=key, Body=data, ContentType=content_type
        )

    def delete(self, key: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=key)

    # ---------- presigned URLs ----------
    def presigned_upload_url(
        self,
        key: str,
        content_type: str,
        content_length: int,
        expires_in: int = settings.PRESIGN_EXPIRES_SECONDS,
    ) -> str:
        # ContentType and ContentLength are part of the signature:
        # a client sending a different MIME type or size gets a signature error.
        return self._client.generate_presigned_url(
            "put_object",
            Params={
                "Bucket": self.bucket,
                "Key": key,
                "ContentType": content_type,
                "ContentLength": content_length,
            },
            ExpiresIn=expires_in,
        )
