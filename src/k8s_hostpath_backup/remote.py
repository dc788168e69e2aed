from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any
import json
import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import RemoteCredentialsError, RotationError
from .models import RemoteObject

ARCHIVE_CONTENT_TYPE = "application/gzip"
R2_ENDPOINT_TEMPLATE = "https://{account_id}.r2.cloudflarestorage.com"
LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteStoreCredentials:
    access_key_id: str
    secret_access_key: str
    bucket: str
    account_id: str | None = None
    endpoint_url: str | None = None
    region: str = "auto"

    @property
    def resolved_endpoint_url(self) -> str:
        if self.endpoint_url:
            return self.endpoint_url
        return R2_ENDPOINT_TEMPLATE.format(account_id=self.account_id)


def load_remote_credentials(path: str | Path) -> RemoteStoreCredentials:
    credentials_path = Path(path).expanduser()
    try:
        raw = json.loads(credentials_path.read_text(encoding="utf-8"))
    except OSError as error:
        raise RemoteCredentialsError(f"reading credentials file '{credentials_path}': {error}") from error
    except json.JSONDecodeError as error:
        raise RemoteCredentialsError(f"parsing credentials JSON '{credentials_path}': {error}") from error

    if not isinstance(raw, dict):
        raise RemoteCredentialsError(f"credentials file '{credentials_path}' must contain a JSON object")

    missing = [field for field in ("access_key_id", "secret_access_key", "bucket") if not raw.get(field)]
    if not raw.get("account_id") and not raw.get("endpoint_url"):
        missing.append("account_id or endpoint_url")
    if missing:
        raise RemoteCredentialsError(f"credentials: {', '.join(missing)} required")

    return RemoteStoreCredentials(
        access_key_id=str(raw["access_key_id"]),
        secret_access_key=str(raw["secret_access_key"]),
        bucket=str(raw["bucket"]),
        account_id=raw.get("account_id") or None,
        endpoint_url=raw.get("endpoint_url") or None,
        region=str(raw.get("region") or "auto"),
    )


class RemoteStore:
    """Archive copies in one S3-compatible bucket, keyed by archive filename."""

    def __init__(self, *, s3_client: Any, bucket: str, logger: logging.Logger | None = None) -> None:
        self.s3_client = s3_client
        self.bucket = bucket
        self.logger = logger or LOGGER

    @classmethod
    def from_credentials(
        cls,
        credentials: RemoteStoreCredentials,
        *,
        logger: logging.Logger | None = None,
    ) -> RemoteStore:
        s3_client = boto3.client(
            "s3",
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            endpoint_url=credentials.resolved_endpoint_url,
            region_name=credentials.region,
        )
        return cls(s3_client=s3_client, bucket=credentials.bucket, logger=logger)

    def upload(self, archive_path: str | Path, key: str) -> None:
        self.logger.info("Uploading %s -> s3://%s/%s", archive_path, self.bucket, key)
        self.s3_client.upload_file(
            str(archive_path),
            self.bucket,
            key,
            ExtraArgs={"ContentType": ARCHIVE_CONTENT_TYPE},
        )
        self.logger.debug("Uploaded %s", key)

    def download(self, key: str, dest_path: str | Path) -> None:
        destination = Path(dest_path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        self.logger.info("Downloading s3://%s/%s -> %s", self.bucket, key, destination)
        self.s3_client.download_file(self.bucket, key, str(destination))
        self.logger.debug("Downloaded %s", key)

    def list_by_prefix(self, prefix: str) -> list[RemoteObject]:
        """Return objects under ``prefix``, newest first."""
        self.logger.debug("Listing objects with prefix %r in bucket %s", prefix, self.bucket)
        objects: list[RemoteObject] = []
        paginator = self.s3_client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                objects.append(
                    RemoteObject(
                        key=item["Key"],
                        size=int(item.get("Size", 0)),
                        last_modified=item["LastModified"],
                    )
                )

        objects.sort(key=lambda obj: obj.last_modified, reverse=True)
        self.logger.debug("Found %d object(s) with prefix %r", len(objects), prefix)
        return objects

    def delete(self, key: str) -> None:
        self.logger.info("Deleting s3://%s/%s", self.bucket, key)
        self.s3_client.delete_object(Bucket=self.bucket, Key=key)

    def rotate(self, prefix: str, keep_last: int) -> list[str]:
        """Delete every object under ``prefix`` except the newest ``keep_last``.

        Stops at the first failed deletion and raises ``RotationError`` carrying
        the keys deleted before it.
        """
        if keep_last <= 0:
            return []

        objects = self.list_by_prefix(prefix)
        if len(objects) <= keep_last:
            return []

        deleted: list[str] = []
        for obj in objects[keep_last:]:
            try:
                self.delete(obj.key)
            except (ClientError, BotoCoreError) as error:
                raise RotationError(prefix=prefix, key=obj.key, deleted=deleted, cause=error) from error
            deleted.append(obj.key)

        self.logger.info("Rotated prefix %r: kept %d, deleted %d", prefix, keep_last, len(deleted))
        return deleted
