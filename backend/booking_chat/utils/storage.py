"""Blob storage backends for chat attachments.

Two backends share one tiny surface (``put(key, data, content_type) -> url``):

- ``LocalStorage`` writes under ``ATTACHMENTS_DIR`` and serves through the
  ``/attachments`` static mount (default, used in development and tests).
- ``R2Storage`` uploads to a Cloudflare R2 / S3-compatible bucket and returns
  the public URL on the configured custom domain.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import boto3
from botocore.config import Config

from ..core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised by a backend when the blob could not be stored."""


class LocalStorage:
    def __init__(self, root_dir: str, public_base_url: str) -> None:
        self.root_dir = os.path.abspath(root_dir)
        self.public_base_url = public_base_url.rstrip("/")

    def put(self, key: str, data: bytes, content_type: Optional[str]) -> str:
        path = os.path.abspath(os.path.join(self.root_dir, key))
        if not path.startswith(self.root_dir + os.sep):
            raise StorageError(f"Refusing to write outside attachments dir: {key}")
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as buffer:
                buffer.write(data)
        except OSError as exc:
            raise StorageError(str(exc)) from exc
        return f"{self.public_base_url}/{key}"


class R2Storage:
    """S3 client configured for Cloudflare R2.

    Important bits:
    - signature_version s3v4
    - region "auto" (R2 requirement)
    - path-style addressing
    - endpoint_url MUST match the host you will call (eu vs non-eu)
    """

    def __init__(self, cfg: Settings) -> None:
        self.bucket = cfg.R2_BUCKET
        self.endpoint_url = cfg.R2_S3_ENDPOINT or (
            f"https://{cfg.R2_ACCOUNT_ID}.r2.cloudflarestorage.com" if cfg.R2_ACCOUNT_ID else ""
        )
        # Fall back to the path-style base (endpoint + bucket) when no public
        # custom domain is configured.
        public = cfg.R2_PUBLIC_BASE_URL
        if not public and self.endpoint_url and self.bucket:
            public = f"{self.endpoint_url.rstrip('/')}/{self.bucket}"
        self.public_base_url = public.rstrip("/")
        self._client = boto3.client(
            "s3",
            aws_access_key_id=cfg.R2_ACCESS_KEY_ID,
            aws_secret_access_key=cfg.R2_SECRET_ACCESS_KEY,
            endpoint_url=self.endpoint_url,
            region_name="auto",
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
                connect_timeout=5,
                read_timeout=20,
                retries={"max_attempts": 2},
            ),
        )

    def put(self, key: str, data: bytes, content_type: Optional[str]) -> str:
        params = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            params["ContentType"] = content_type
        try:
            self._client.put_object(**params)
        except Exception as exc:  # botocore raises a wide family of errors
            raise StorageError(str(exc)) from exc
        return f"{self.public_base_url}/{key}"


def build_storage(cfg: Settings | None = None):
    """Pick R2 when fully configured, otherwise the local attachments dir."""
    cfg = cfg or default_settings
    if cfg.r2_configured:
        logger.info("Attachment storage: R2 bucket=%s", cfg.R2_BUCKET)
        return R2Storage(cfg)
    return LocalStorage(cfg.ATTACHMENTS_DIR, cfg.ATTACHMENTS_PUBLIC_BASE_URL)
