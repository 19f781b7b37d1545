import logging
import os
import shutil
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import ConfigError, PublishError

logger = logging.getLogger("dynwall-backend")


@dataclass(frozen=True)
class ArtifactKind:
    prefix: str
    extension: str
    content_type: str

    def key_for(self, job_id: str) -> str:
        return make_key(self.prefix, f"{job_id}{self.extension}")


WALLPAPER = ArtifactKind("wallpapers", ".heic", "image/heic")
PREVIEW = ArtifactKind("previews", ".jpg", "image/jpeg")


def make_key(*parts: str) -> str:
    return "/".join([p.strip("/") for p in parts])


def public_url_for(base: str, key: str) -> str:
    return f"{base.rstrip('/')}/{key}"


class R2ArtifactPublisher:
    """Uploads artifacts to an S3-compatible bucket (Cloudflare R2 by default)."""

    backend = "r2"

    def __init__(self, client, bucket: Optional[str], public_base: Optional[str]):
        self.client = client
        self.bucket = bucket
        self.public_base = public_base

    @classmethod
    def from_settings(cls, settings: Settings) -> "R2ArtifactPublisher":
        client = boto3.client(
            "s3",
            endpoint_url=settings.storage_endpoint,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
            region_name=settings.s3_region,
            config=Config(signature_version="s3v4"),
        )
        return cls(client, settings.bucket_name, settings.public_url)

    def publish(self, local_path: str, key: str, content_type: str) -> str:
        if not self.bucket:
            raise ConfigError("R2_BUCKET_NAME is not set")
        if not self.public_base:
            raise ConfigError("R2_PUBLIC_URL is not set")
        logger.info("Uploading %s to %s/%s", local_path, self.bucket, key)
        try:
            with open(local_path, "rb") as f:
                self.client.put_object(
                    Bucket=self.bucket, Key=key, Body=f, ContentType=content_type
                )
        except (ClientError, BotoCoreError, OSError) as e:
            raise PublishError(f"upload of {key} failed: {e}") from e
        return public_url_for(self.public_base, key)


class LocalArtifactPublisher:
    """Development publisher: copies artifacts under a local directory.

    The HTTP app serves that directory at /assets.
    """

    backend = "local"

    def __init__(self, root: str, public_base: Optional[str] = None):
        self.root = root
        self.public_base = public_base or "/assets"

    def publish(self, local_path: str, key: str, content_type: str) -> str:
        dest = os.path.join(self.root, key)
        try:
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            shutil.copyfile(local_path, dest)
        except OSError as e:
            raise PublishError(f"copy of {key} failed: {e}") from e
        logger.info("Stored %s at %s (%s)", key, dest, content_type)
        return public_url_for(self.public_base, key)


def build_publisher(settings: Settings):
    if settings.storage_backend == "local":
        return LocalArtifactPublisher(settings.data_dir, settings.public_url)
    if settings.storage_backend == "r2":
        return R2ArtifactPublisher.from_settings(settings)
    raise ConfigError(f"unknown STORAGE_BACKEND {settings.storage_backend!r}")
