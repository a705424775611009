from typing import Any, BinaryIO

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.logging.logger import Log
from app.storage.base import BaseObjectStore
from app.storage.exceptions import TransferError

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound", "NoSuchBucket"})


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3ObjectStore(BaseObjectStore):
    """S3-compatible object store backed by boto3 (AWS S3 or MinIO via endpoint_url)."""

    def __init__(
        self,
        endpoint_url: str | None,
        access_key: str,
        secret_key: str,
        region: str,
        connect_timeout_seconds: int,
        read_timeout_seconds: int,
        max_attempts: int,
        client: Any | None = None,
    ) -> None:
        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url or None,
                aws_access_key_id=access_key or None,
                aws_secret_access_key=secret_key or None,
                config=Config(
                    region_name=region,
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                    retries={"max_attempts": max_attempts, "mode": "standard"},
                    connect_timeout=connect_timeout_seconds,
                    read_timeout=read_timeout_seconds,
                ),
            )
        self._client = client
        self._region = region

    def put(
        self,
        bucket: str,
        key: str,
        stream: BinaryIO,
        length: int,
        content_type: str | None,
    ) -> None:
        self.ensure_bucket(bucket)
        extra: dict[str, Any] = {"ContentLength": length}
        if content_type:
            extra["ContentType"] = content_type
        try:
            self._client.put_object(Bucket=bucket, Key=key, Body=stream, **extra)
        except (BotoCoreError, ClientError, OSError) as exc:
            raise TransferError(f"Upload of {bucket}/{key} failed: {exc}") from exc
        Log.info(f"Stored object {bucket}/{key} ({length} bytes)")

    def delete(self, bucket: str, key: str) -> None:
        # S3 DeleteObject succeeds for missing keys, so absence is checked first
        if not self.exists(bucket, key):
            raise TransferError(f"Object {bucket}/{key} does not exist")
        try:
            self._client.delete_object(Bucket=bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise TransferError(f"Delete of {bucket}/{key} failed: {exc}") from exc
        Log.info(f"Deleted object {bucket}/{key}")

    def exists(self, bucket: str, key: str) -> bool:
        try:
            self._client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return False
            Log.warning(f"Could not check object {bucket}/{key}: {exc}")
            return False
        except BotoCoreError as exc:
            Log.warning(f"Could not check object {bucket}/{key}: {exc}")
            return False

    def ensure_bucket(self, bucket: str) -> None:
        try:
            self._client.head_bucket(Bucket=bucket)
            return
        except ClientError as exc:
            if _error_code(exc) not in _NOT_FOUND_CODES:
                raise TransferError(f"Cannot access bucket {bucket}: {exc}") from exc
        except BotoCoreError as exc:
            raise TransferError(f"Cannot access bucket {bucket}: {exc}") from exc

        create_args: dict[str, Any] = {"Bucket": bucket}
        if self._region and self._region != "us-east-1":
            create_args["CreateBucketConfiguration"] = {
                "LocationConstraint": self._region
            }
        try:
            self._client.create_bucket(**create_args)
        except ClientError as exc:
            if _error_code(exc) in {"BucketAlreadyOwnedByYou", "BucketAlreadyExists"}:
                return
            raise TransferError(f"Cannot create bucket {bucket}: {exc}") from exc
        except BotoCoreError as exc:
            raise TransferError(f"Cannot create bucket {bucket}: {exc}") from exc
        Log.info(f"Created bucket {bucket}")
