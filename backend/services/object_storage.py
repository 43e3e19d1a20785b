"""Where uploaded lab files live.

With ``S3_BUCKET`` set, files go to S3 through boto3 and ``file_url`` is the
object's https URL. Otherwise they are written under ``UPLOAD_DIR`` and
``file_url`` is a ``local://`` reference. Files are only handed back through
the authenticated lab-result download route.
"""

import logging
from pathlib import Path
from urllib.parse import urlparse

from config import settings

logger = logging.getLogger(__name__)

LOCAL_SCHEME = "local://"


class ObjectStorageError(Exception):
    pass


class LocalObjectStorage:
    def __init__(self, root: Path | None = None):
        self.root = Path(root or settings.UPLOAD_DIR)

    def _path_for(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key).resolve()
        if root not in path.parents:
            raise ObjectStorageError(f"Refusing path outside upload directory: {key}")
        return path

    def _key_from_url(self, file_url: str) -> str:
        if not file_url.startswith(LOCAL_SCHEME):
            raise ObjectStorageError(f"Not a local file reference: {file_url}")
        return file_url[len(LOCAL_SCHEME):]

    def save(self, key: str, payload: bytes, *, content_type: str, original_name: str | None = None) -> str:
        _ = content_type, original_name
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload)
        return f"{LOCAL_SCHEME}{key}"

    def load(self, file_url: str) -> bytes:
        path = self._path_for(self._key_from_url(file_url))
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ObjectStorageError(f"Failed to read {file_url}: {exc}") from exc

    def delete(self, file_url: str) -> None:
        path = self._path_for(self._key_from_url(file_url))
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise ObjectStorageError(f"Failed to delete {file_url}: {exc}") from exc


class S3ObjectStorage:
    def __init__(self, bucket: str, region: str, client=None):
        self.bucket = bucket
        self.region = region
        if client is None:
            import boto3

            client = boto3.client("s3", region_name=region)
        self.client = client

    def _url_for(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def _key_from_url(self, file_url: str) -> str:
        return urlparse(file_url).path.lstrip("/")

    def save(self, key: str, payload: bytes, *, content_type: str, original_name: str | None = None) -> str:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=payload,
                ContentType=content_type,
                Metadata={"original-name": (original_name or "")[:200]},
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 upload failed for {key}: {exc}")
            raise ObjectStorageError(f"Failed to upload file: {exc}") from exc
        return self._url_for(key)

    def load(self, file_url: str) -> bytes:
        from botocore.exceptions import BotoCoreError, ClientError

        key = self._key_from_url(file_url)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 download failed for {key}: {exc}")
            raise ObjectStorageError(f"Failed to read file: {exc}") from exc

    def delete(self, file_url: str) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        key = self._key_from_url(file_url)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 delete failed for {key}: {exc}")
            raise ObjectStorageError(f"Failed to delete file: {exc}") from exc
        logger.info(f"Deleted stored file {key}")


def get_object_storage() -> LocalObjectStorage | S3ObjectStorage:
    if settings.S3_BUCKET:
        return S3ObjectStorage(settings.S3_BUCKET, settings.AWS_REGION)
    return LocalObjectStorage()
