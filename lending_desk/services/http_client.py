import asyncio
import logging
from typing import Optional

import httpx

from lending_desk.config import settings

logger = logging.getLogger(__name__)


class OptimizedHTTPClient:
    """Pooled async HTTP client shared by the OCR and record-store services"""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: Optional[float] = None):
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )

        read_timeout = timeout or settings.http_timeout
        timeout_config = httpx.Timeout(
            timeout=read_timeout,
            connect=5.0,
            read=read_timeout,
            write=5.0
        )

        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=timeout_config,
            follow_redirects=True,
            transport=transport,
        )

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self._client.get(url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self._client.post(url, **kwargs)

    async def patch(self, url: str, **kwargs) -> httpx.Response:
        return await self._client.patch(url, **kwargs)

    async def get_with_retry(self, url: str, retries: Optional[int] = None, backoff: float = 0.5, **kwargs) -> httpx.Response:
        """GET with exponential backoff on transport errors; the last error is re-raised"""
        attempts = retries or settings.http_retries
        for attempt in range(attempts):
            try:
                return await self.get(url, **kwargs)
            except httpx.TransportError as e:
                if attempt < attempts - 1:
                    wait_time = backoff * (2 ** attempt)
                    logger.warning(f"GET {url} failed ({e}); retrying in {wait_time:.1f}s")
                    await asyncio.sleep(wait_time)
                    continue
                raise

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


# Global HTTP client instance
_global_client: Optional[OptimizedHTTPClient] = None


async def get_http_client() -> OptimizedHTTPClient:
    """Return the global HTTP client, creating it on first use"""
    global _global_client
    if _global_client is None:
        _global_client = OptimizedHTTPClient()
    return _global_client


async def cleanup_http_client():
    global _global_client
    if _global_client:
        await _global_client.close()
        _global_client = None
