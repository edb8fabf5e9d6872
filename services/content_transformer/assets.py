"""Asset stores that receive images referenced by synced content."""

import asyncio
import logging
import mimetypes
import uuid
from abc import ABC, abstractmethod
from typing import Optional

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from shared.exceptions import UploadError

logger = logging.getLogger(__name__)


class AssetStore(ABC):
    """Accepts a named byte blob and returns a stable path usable in markdown."""

    @abstractmethod
    async def upload(self, filename: str, data: bytes) -> str:
        """
        Upload an asset.

        Args:
            filename: Name to store the asset under
            data: Asset bytes

        Returns:
            Asset path or URL to reference from the document

        Raises:
            UploadError: If the store rejects the upload
        """


class SiyuanAssetStore(AssetStore):
    """Uploads assets through the SiYuan kernel API."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        assets_dir: str = "/assets/",
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.assets_dir = assets_dir
        headers = {"Authorization": f"Token {token}"} if token else {}
        self.http = http_client or httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=60.0)

    async def aclose(self) -> None:
        await self.http.aclose()

    async def upload(self, filename: str, data: bytes) -> str:
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        try:
            response = await self.http.post(
                "/api/asset/upload",
                data={"assetsDirPath": self.assets_dir},
                files=[("file[]", (filename, data, content_type))],
            )
        except httpx.HTTPError as e:
            raise UploadError(f"Asset upload failed: {e}") from e

        if not response.is_success:
            raise UploadError(f"Asset upload failed: HTTP {response.status_code}")

        try:
            result = response.json()
        except ValueError as e:
            raise UploadError(f"Asset upload returned invalid JSON: {e}") from e

        if result.get("code") != 0:
            raise UploadError(f"Asset upload failed: {result.get('msg')}")

        succ_map = (result.get("data") or {}).get("succMap") or {}
        asset_path = succ_map.get(filename) or next(iter(succ_map.values()), None)
        if not asset_path:
            err_files = (result.get("data") or {}).get("errFiles") or []
            raise UploadError(f"Asset upload rejected: {', '.join(err_files) or filename}")

        logger.info(f"Uploaded asset {filename} -> {asset_path}")
        return asset_path


class S3AssetStore(AssetStore):
    """Uploads assets to an S3 bucket with public read access."""

    def __init__(
        self,
        bucket_name: str,
        region: str = "us-east-1",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        prefix: str = "note-push-assets"
    ):
        """
        Initialize S3 asset store.

        Args:
            bucket_name: S3 bucket name
            region: AWS region
            access_key_id: AWS access key ID (optional, uses default credentials if not provided)
            secret_access_key: AWS secret access key (optional)
            prefix: Key prefix for uploaded objects
        """
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix.strip('/')

        if access_key_id and secret_access_key:
            self.s3_client = boto3.client(
                's3',
                region_name=region,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key
            )
        else:
            self.s3_client = boto3.client('s3', region_name=region)

    async def upload(self, filename: str, data: bytes) -> str:
        # Filenames repeat across records; the key must not
        key = f"{self.prefix}/{uuid.uuid4().hex}/{filename}"
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"

        try:
            await asyncio.to_thread(
                self.s3_client.put_object,
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
                ACL='public-read'
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to upload asset to S3: {e}", exc_info=True)
            raise UploadError(f"S3 upload failed: {e}") from e

        s3_url = f"https://{self.bucket_name}.s3.{self.region}.amazonaws.com/{key}"
        logger.info(f"Uploaded asset {filename} -> {s3_url}")
        return s3_url
