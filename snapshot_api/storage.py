# snapshot_api/storage.py
import abc
import os
from datetime import datetime
from pathlib import Path

import boto3
from botocore.client import Config
from botocore.exceptions import ClientError
from fastapi.responses import FileResponse, Response

from .logger import get_logger
from .utils import random_suffix, storage_safe_timestamp, utcnow

logger = get_logger(__name__)


def generate_backup_key(backup_type: str = "scheduled", encrypted: bool = False, moment: datetime = None) -> str:
    """
    backups/<type>/<timestamp>-<random suffix>.json[.encrypted]
    """
    timestamp = storage_safe_timestamp(moment or utcnow())
    suffix = ".encrypted" if encrypted else ""
    return f"backups/{backup_type}/{timestamp}-{random_suffix()}.json{suffix}"


class StorageProvider(abc.ABC):
    @abc.abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Stores ``data`` under ``key`` and returns a locator for it."""

    @abc.abstractmethod
    def get(self, key: str) -> bytes:
        pass

    @abc.abstractmethod
    def delete(self, key: str) -> bool:
        pass

    def get_download_response(self, key: str) -> Response:
        return Response(
            content=self.get(key),
            media_type="application/octet-stream",
            headers={"Content-Disposition": f'attachment; filename="{os.path.basename(key)}"'},
        )


class LocalStorage(StorageProvider):
    def __init__(self, base_path: str):
        self.base_path = base_path
        os.makedirs(self.base_path, exist_ok=True)

    def _path(self, key: str) -> Path:
        base = Path(self.base_path).resolve()
        path = (base / key).resolve()
        if base not in path.parents:
            raise ValueError(f"Storage key escapes the storage directory: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".part")
        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        return path.as_uri()

    def get(self, key: str) -> bytes:
        return self._path(key).read_bytes()

    def get_download_response(self, key: str) -> FileResponse:
        return FileResponse(path=self._path(key), filename=os.path.basename(key))

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if path.exists():
            try:
                path.unlink()
                return True
            except OSError as e:
                logger.error(f"Failed to delete {key} from local storage: {e}")
                return False
        return True


class S3Storage(StorageProvider):
    def __init__(self, endpoint_url: str, access_key: str, secret_key: str, bucket: str):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.s3_client = boto3.client(
            's3',
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=Config(signature_version='s3v4')
        )
        self._create_bucket_if_not_exists()

    def _create_bucket_if_not_exists(self):
        try:
            self.s3_client.head_bucket(Bucket=self.bucket)
        except ClientError as e:
            if e.response['Error']['Code'] == '404':
                self.s3_client.create_bucket(Bucket=self.bucket)
            else:
                raise

    def put(self, key: str, data: bytes, content_type: str) -> str:
        self.s3_client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"s3://{self.bucket}/{key}"

    def get(self, key: str) -> bytes:
        response = self.s3_client.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()

    def delete(self, key: str) -> bool:
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            logger.error(f"Failed to delete {key} from S3: {e}")
            return False


def build_storage_provider(config: dict) -> StorageProvider:
    storage_config = config.get('storage') or {'type': 'local'}
    if storage_config.get('type') == 's3':
        return S3Storage(**storage_config['s3'])
    local = storage_config.get('local') or {}
    return LocalStorage(base_path=local.get('base_path', 'data'))


def upload_backup(storage: StorageProvider, key: str, data: bytes, content_type: str = "application/json") -> str:
    logger.info(f"Uploading {len(data)} bytes to '{key}'.")
    locator = storage.put(key, data, content_type)
    logger.debug(f"Upload of '{key}' stored at {locator}")
    return locator
