"""S3-compatible object storage for sealed archives."""

from pathlib import Path
from typing import List, Optional

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from .._utils import logger
from ..config import RemoteConfig
from ..exceptions import ArchiveFailedError
from ..models import RemoteLocation


class S3ObjectStore:
    """Upload, download and list archives in a bucket."""

    def __init__(self, config: RemoteConfig, session: Optional[aioboto3.Session] = None):
        self.config = config
        self.session = session or aioboto3.Session()

    def _client(self):
        return self.session.client(
            "s3",
            region_name=self.config.region,
            endpoint_url=self.config.endpoint_url,
        )

    def location_for(self, key: str) -> RemoteLocation:
        if not self.config.enabled:
            raise ArchiveFailedError("Remote storage is not configured (set FOUNDRY_BACKUP_BUCKET or --bucket)")
        return RemoteLocation(bucket=self.config.bucket, prefix=self.config.prefix, key=key)

    async def upload_file(self, local_path: Path, location: RemoteLocation) -> str:
        """Upload a file.

        Returns:
            ``s3://`` URI of the uploaded object

        Raises:
            ArchiveFailedError: Transfer failed
        """
        logger.info(f"Uploading {local_path.name} to {location.uri}")
        try:
            async with self._client() as s3:
                await s3.upload_file(str(local_path), location.bucket, location.object_key)
        except (BotoCoreError, ClientError, OSError) as e:
            raise ArchiveFailedError(f"Upload to {location.uri} failed: {e}")
        logger.info(f"Uploaded {location.uri}")
        return location.uri

    async def download_file(self, location: RemoteLocation, local_path: Path) -> Path:
        """Download an object to ``local_path``.

        Raises:
            ArchiveFailedError: Object missing or transfer failed
        """
        logger.info(f"Downloading {location.uri} to {local_path}")
        local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            async with self._client() as s3:
                await s3.download_file(location.bucket, location.object_key, str(local_path))
        except (BotoCoreError, ClientError, OSError) as e:
            local_path.unlink(missing_ok=True)
            raise ArchiveFailedError(f"Download of {location.uri} failed: {e}")
        return local_path

    async def list_keys(self, prefix: Optional[str] = None) -> List[str]:
        """List object keys under a prefix (defaults to the configured prefix).

        Raises:
            ArchiveFailedError: Listing failed
        """
        if not self.config.enabled:
            return []
        prefix = self.config.prefix if prefix is None else prefix
        if prefix and not prefix.endswith("/"):
            prefix += "/"

        keys = []
        try:
            async with self._client() as s3:
                paginator = s3.get_paginator("list_objects_v2")
                async for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix):
                    keys.extend(obj["Key"] for obj in page.get("Contents", []))
        except (BotoCoreError, ClientError) as e:
            raise ArchiveFailedError(f"Listing s3://{self.config.bucket}/{prefix} failed: {e}")
        return sorted(keys)
