import abc
import base64
import logging
import mimetypes
import os
import shutil
from pathlib import Path
from typing import List, Optional, Tuple

from subocr.core.config import settings

logger = logging.getLogger(__name__)

StoredObject = Tuple[str, int]  # (key, size in bytes)


class StorageProvider(abc.ABC):
    """
    Abstract base class for object storage (Local, S3, R2, etc.)
    Objects are addressed by '/'-separated keys.
    """

    @abc.abstractmethod
    def put_bytes(self, key: str, data: bytes, content_type: str, cache_control: Optional[str] = None) -> None:
        pass

    @abc.abstractmethod
    def put_file(self, key: str, file_path: str, content_type: str, cache_control: Optional[str] = None) -> None:
        pass

    @abc.abstractmethod
    def download_to_file(self, key: str, file_path: str) -> None:
        """
        Stream an object to a local path, creating parent directories.
        """
        pass

    @abc.abstractmethod
    def get_bytes(self, key: str) -> bytes:
        pass

    @abc.abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abc.abstractmethod
    def size(self, key: str) -> Optional[int]:
        """
        Object size in bytes, or None when the object does not exist.
        """
        pass

    @abc.abstractmethod
    def list_prefix(self, prefix: str) -> List[StoredObject]:
        pass

    @abc.abstractmethod
    def delete(self, key: str) -> bool:
        pass

    @abc.abstractmethod
    def create_signed_url(self, key: str, ttl_seconds: int) -> str:
        """
        Time-limited URL the batch completion service can fetch the object from.
        """
        pass

    def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        for key, _ in self.list_prefix(prefix):
            if self.delete(key):
                deleted += 1
        return deleted


class LocalStorageProvider(StorageProvider):
    """
    Stores objects on the local filesystem.
    Suitable for development or single-server deployment.
    """
    def __init__(self, base_dir: str = "storage"):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.base_dir / key).resolve()
        if self.base_dir.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes the storage root: {key}")
        return path

    def put_bytes(self, key: str, data: bytes, content_type: str, cache_control: Optional[str] = None) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def put_file(self, key: str, file_path: str, content_type: str, cache_control: Optional[str] = None) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(file_path, path)

    def download_to_file(self, key: str, file_path: str) -> None:
        source = self._path(key)
        if not source.is_file():
            raise FileNotFoundError(f"Object {key} not found in local storage.")
        os.makedirs(os.path.dirname(file_path) or ".", exist_ok=True)
        with open(source, "rb") as src, open(file_path, "wb") as dst:
            shutil.copyfileobj(src, dst)

    def get_bytes(self, key: str) -> bytes:
        return self._path(key).read_bytes()

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def size(self, key: str) -> Optional[int]:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.stat().st_size

    def list_prefix(self, prefix: str) -> List[StoredObject]:
        # Only the deepest directory the prefix names needs walking
        folder = prefix.rsplit("/", 1)[0] if "/" in prefix else ""
        if ".." in Path(folder).parts:
            raise ValueError(f"Storage prefix escapes the storage root: {prefix}")
        root = self.base_dir / folder if folder else self.base_dir
        if not root.is_dir():
            return []

        objects: List[StoredObject] = []
        for path in root.rglob("*"):
            if not path.is_file():
                continue
            key = path.relative_to(self.base_dir).as_posix()
            if key.startswith(prefix):
                objects.append((key, path.stat().st_size))
        return sorted(objects)

    def delete(self, key: str) -> bool:
        try:
            os.remove(self._path(key))
            return True
        except FileNotFoundError:
            return False

    def create_signed_url(self, key: str, ttl_seconds: int) -> str:
        # A local directory has no public endpoint, so the object is inlined.
        content_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
        encoded = base64.b64encode(self.get_bytes(key)).decode("ascii")
        return f"data:{content_type};base64,{encoded}"


# ─── S3 ──────────────────────────────────────────────────────────────────────

class S3StorageProvider(StorageProvider):
    """
    Stores objects in AWS S3 or an S3-compatible service (R2, MinIO).
    Requires: boto3
    """
    def __init__(self):
        import boto3
        self.s3 = boto3.client(
            "s3",
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            region_name=settings.AWS_REGION,
            endpoint_url=settings.S3_ENDPOINT_URL,
        )
        self.bucket = settings.AWS_BUCKET_NAME

    @staticmethod
    def _is_not_found(error: Exception) -> bool:
        response = getattr(error, "response", None) or {}
        code = str(response.get("Error", {}).get("Code", ""))
        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return code in ("404", "NoSuchKey", "NotFound") or status == 404

    def _extra_args(self, content_type: str, cache_control: Optional[str]) -> dict:
        extra = {"ContentType": content_type}
        if cache_control:
            extra["CacheControl"] = cache_control
        return extra

    def put_bytes(self, key: str, data: bytes, content_type: str, cache_control: Optional[str] = None) -> None:
        self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, **self._extra_args(content_type, cache_control))

    def put_file(self, key: str, file_path: str, content_type: str, cache_control: Optional[str] = None) -> None:
        self.s3.upload_file(file_path, self.bucket, key, ExtraArgs=self._extra_args(content_type, cache_control))

    def download_to_file(self, key: str, file_path: str) -> None:
        os.makedirs(os.path.dirname(file_path) or ".", exist_ok=True)
        self.s3.download_file(self.bucket, key, file_path)

    def get_bytes(self, key: str) -> bytes:
        response = self.s3.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()

    def exists(self, key: str) -> bool:
        return self.size(key) is not None

    def size(self, key: str) -> Optional[int]:
        from botocore.exceptions import ClientError
        try:
            response = self.s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if self._is_not_found(e):
                return None
            raise
        return response.get("ContentLength")

    def list_prefix(self, prefix: str) -> List[StoredObject]:
        objects: List[StoredObject] = []
        paginator = self.s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                objects.append((obj["Key"], obj["Size"]))
        return objects

    def delete(self, key: str) -> bool:
        from botocore.exceptions import ClientError
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            logger.warning(f"S3 delete failed for {key}: {e}")
            return False

    def delete_prefix(self, prefix: str) -> int:
        keys = [key for key, _ in self.list_prefix(prefix)]
        # Delete in batches of 1000 (S3 limit)
        for start in range(0, len(keys), 1000):
            chunk = keys[start:start + 1000]
            self.s3.delete_objects(
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key} for key in chunk]},
            )
        return len(keys)

    def create_signed_url(self, key: str, ttl_seconds: int) -> str:
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=ttl_seconds,
        )


# ─── Factory ─────────────────────────────────────────────────────────────────

def get_storage_provider() -> StorageProvider:
    if settings.STORAGE_TYPE.lower() == "s3":
        return S3StorageProvider()
    return LocalStorageProvider(settings.LOCAL_STORAGE_DIR)


# ─── Key Layout ──────────────────────────────────────────────────────────────

def job_prefix(job_id: str) -> str:
    return f"jobs/{job_id}/"

def crop_key(job_id: str, filename: str) -> str:
    return f"{job_prefix(job_id)}crops/{Path(filename).stem}.png"

def normalized_key(job_id: str, filename: str) -> str:
    return f"{job_prefix(job_id)}normalized/{filename}"

def cropped_key(job_id: str, filename: str) -> str:
    return f"{job_prefix(job_id)}cropped/{filename}"

def raw_zip_key(job_id: str) -> str:
    return f"{job_prefix(job_id)}images.zip"

def cropped_zip_key(job_id: str) -> str:
    return f"{job_prefix(job_id)}images-no-subtitles.zip"

def thumbnail_key(job_id: str) -> str:
    return f"{job_prefix(job_id)}thumbnail.jpg"

def txt_key(job_id: str) -> str:
    return f"{job_prefix(job_id)}ocr.txt"

def docx_key(job_id: str) -> str:
    return f"{job_prefix(job_id)}ocr.docx"
