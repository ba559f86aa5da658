"""
Media object storage (S3).

Uploads happen outside this service; the pipeline only references objects
by locator (the S3 key) and downloads them when a provider needs bytes.
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

from app.core.config import settings
from app.core.errors import PipelineError
from app.services.adapters.aws import classify_aws_error, get_aws_client

logger = logging.getLogger(__name__)


class MediaStorage:
    """Thin async wrapper over the media bucket."""

    def __init__(self, bucket: Optional[str] = None, client=None):
        self.bucket = bucket or settings.MEDIA_BUCKET
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_aws_client("s3")
        return self._client

    def s3_object(self, locator: str) -> Dict[str, Dict[str, str]]:
        """Object reference in the shape Rekognition expects."""
        return {"S3Object": {"Bucket": self.bucket, "Name": locator}}

    async def download(self, locator: str, directory: Optional[str] = None) -> Path:
        """
        Download an object to a local temp file.

        The caller owns the returned file and must delete it.

        Raises:
            PermanentInputError: object missing or not readable
            TransientProviderError: S3 unavailable
        """
        suffix = Path(locator).suffix
        fd, path = tempfile.mkstemp(suffix=suffix, dir=directory)
        os.close(fd)

        try:
            await asyncio.to_thread(self.client.download_file, self.bucket, locator, path)
        except PipelineError:
            os.unlink(path)
            raise
        except Exception as e:
            os.unlink(path)
            raise classify_aws_error(e, "s3") from e

        logger.debug(f"Downloaded s3://{self.bucket}/{locator} to {path}")
        return Path(path)
