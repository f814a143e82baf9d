# scribe/storage.py
"""Object storage access over the Supabase-style storage REST API."""
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import httpx

from scribe.background import run_sync
from scribe.errors import StorageError
from scribe.settings.config import settings

logger = logging.getLogger(__name__)


class StorageClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        service_key: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.STORAGE_URL).rstrip("/")
        self.service_key = service_key if service_key is not None else settings.STORAGE_SERVICE_KEY
        self.timeout = timeout if timeout is not None else settings.DOWNLOAD_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> dict:
        if not self.service_key:
            return {}
        return {"Authorization": f"Bearer {self.service_key}", "apikey": self.service_key}

    async def create_signed_url(self, bucket: str, path: str, ttl_seconds: int = 3600) -> str:
        url = f"{self.base_url}/object/sign/{quote(bucket)}/{quote(path.lstrip('/'))}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(url, json={"expiresIn": int(ttl_seconds)}, headers=self._headers())
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            raise StorageError(
                f"Failed to sign {bucket}/{path}: HTTP {code}",
                retryable=code == 429 or code >= 500,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise StorageError(f"Failed to sign {bucket}/{path}: {e}") from e

        signed = (data or {}).get("signedURL") or (data or {}).get("signedUrl")
        if not signed:
            raise StorageError(f"No signed URL returned for {bucket}/{path}", retryable=False)
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}/{signed.lstrip('/')}"

    async def download_to(self, url: str, dest: Path) -> int:
        """Stream ``url`` into ``dest``; returns the byte count."""
        written = 0
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport,
                                         follow_redirects=True) as client:
                async with client.stream("GET", url) as r:
                    r.raise_for_status()
                    fh = await run_sync(open, dest, "wb")
                    try:
                        async for chunk in r.aiter_bytes():
                            await run_sync(fh.write, chunk)
                            written += len(chunk)
                    finally:
                        await run_sync(fh.close)
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            raise StorageError(
                f"Download failed: HTTP {code}", retryable=code == 429 or code >= 500
            ) from e
        except httpx.HTTPError as e:
            raise StorageError(f"Download failed: {e}") from e
        if written == 0:
            raise StorageError("Downloaded file is empty", retryable=False)
        logger.debug("Downloaded %d bytes to %s", written, dest)
        return written
