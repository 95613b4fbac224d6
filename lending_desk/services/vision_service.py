import base64
import logging
import time
from typing import Iterator, Optional

import httpx

from lending_desk.config import settings
from lending_desk.errors import ExternalServiceError
from lending_desk.services.http_client import OptimizedHTTPClient, get_http_client

logger = logging.getLogger(__name__)

# Lines this short are page numbers, prices, publisher marks and the like
MIN_TITLE_LENGTH = 3


def candidate_titles(text: str) -> Iterator[str]:
    """Yield the stripped OCR lines worth trying as a title query, in order."""
    for line in (text or "").split("\n"):
        stripped = line.strip()
        if len(stripped) > MIN_TITLE_LENGTH:
            yield stripped


class VisionService:
    """Text extraction through the Google Cloud Vision images:annotate API"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        http: Optional[OptimizedHTTPClient] = None,
    ):
        self.api_key = api_key or settings.google_cloud_api_key
        self.api_url = api_url or settings.vision_api_url
        self._http = http

    async def _client(self) -> OptimizedHTTPClient:
        if self._http is None:
            self._http = await get_http_client()
        return self._http

    async def extract_text(self, image_bytes: bytes) -> str:
        """
        Run text detection on an image

        Args:
            image_bytes: raw bytes of the uploaded photo

        Returns:
            The full recognized text, or an empty string when nothing was recognized
        """
        payload = {
            "requests": [
                {
                    "image": {"content": base64.b64encode(image_bytes).decode("ascii")},
                    "features": [{"type": "TEXT_DETECTION", "maxResults": 50}],
                }
            ]
        }

        client = await self._client()
        start_time = time.time()
        try:
            response = await client.post(self.api_url, params={"key": self.api_key}, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Vision API unreachable: {e}")
            raise ExternalServiceError() from e

        response_time_ms = int((time.time() - start_time) * 1000)
        if response.status_code != 200:
            logger.error(f"Vision API request failed: {response.status_code} - {response.text}")
            raise ExternalServiceError()

        try:
            responses = response.json().get("responses") or [{}]
        except ValueError as e:
            logger.error(f"Vision API returned a non-JSON body: {response.text[:200]!r}")
            raise ExternalServiceError() from e
        first = responses[0]
        if first.get("error"):
            logger.error(f"Vision API annotation error: {first['error']}")
            raise ExternalServiceError()

        annotations = first.get("textAnnotations") or []
        if not annotations:
            logger.info(f"Vision API found no text ({response_time_ms}ms)")
            return ""

        text = annotations[0].get("description", "")
        logger.info(f"Vision API extracted {len(text)} chars ({response_time_ms}ms)")
        return text
