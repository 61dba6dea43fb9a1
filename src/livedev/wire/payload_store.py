"""Out-of-band storage for payloads too large to fragment economically

When an event serializes above the offload threshold, the sender uploads it
here and publishes a small `pointer` event instead. The receiver downloads
the object, deletes it, and continues with the full event.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class PayloadStoreError(Exception):
    """Payload store operation failed"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PayloadStore(ABC):
    """Blob store keyed by (bucket, key)"""

    def __init__(self, bucket: str, prefix: str = "livedev/payloads"):
        self.bucket = bucket
        self.prefix = prefix.strip("/")

    def new_key(self) -> str:
        return f"{self.prefix}/{uuid.uuid4().hex}.json"

    @abstractmethod
    async def put(self, body: str) -> Tuple[str, str]:
        """Upload body, returns (bucket, key)"""

    @abstractmethod
    async def take(self, bucket: str, key: str) -> str:
        """Download and delete an object"""


class MemoryPayloadStore(PayloadStore):
    """Dictionary backed store for tests and single-process sessions"""

    def __init__(self, bucket: str = "memory", prefix: str = "livedev/payloads"):
        super().__init__(bucket, prefix)
        self.objects: Dict[Tuple[str, str], str] = {}

    async def put(self, body: str) -> Tuple[str, str]:
        key = self.new_key()
        self.objects[(self.bucket, key)] = body
        return self.bucket, key

    async def take(self, bucket: str, key: str) -> str:
        try:
            return self.objects.pop((bucket, key))
        except KeyError:
            raise PayloadStoreError(f"No such payload: {bucket}/{key}")


class S3PayloadStore(PayloadStore):
    """Amazon S3 store

    boto3 is blocking, so calls run in the default executor.
    """

    def __init__(self, bucket: str, prefix: str = "livedev/payloads", client=None, region_name: Optional[str] = None):
        super().__init__(bucket, prefix)
        self.client = client if client is not None else boto3.client("s3", region_name=region_name)

    async def put(self, body: str) -> Tuple[str, str]:
        key = self.new_key()
        try:
            await asyncio.get_running_loop().run_in_executor(
                None,
                lambda: self.client.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=body.encode("utf-8"),
                    ContentType="application/json",
                ),
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("S3 upload error: %s", e)
            raise PayloadStoreError(f"Failed to upload payload to {self.bucket}/{key}: {e}")
        return self.bucket, key

    async def take(self, bucket: str, key: str) -> str:
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None, lambda: self.client.get_object(Bucket=bucket, Key=key)
            )
            body = await loop.run_in_executor(None, response["Body"].read)
        except (BotoCoreError, ClientError) as e:
            logger.error("S3 download error: %s", e)
            raise PayloadStoreError(f"Failed to download payload {bucket}/{key}: {e}")

        try:
            await loop.run_in_executor(
                None, lambda: self.client.delete_object(Bucket=bucket, Key=key)
            )
        except (BotoCoreError, ClientError) as e:
            # payload is already in hand; a leftover object is only garbage
            logger.warning("S3 delete error for %s/%s: %s", bucket, key, e)

        if isinstance(body, bytes):
            body = body.decode("utf-8")
        return body
