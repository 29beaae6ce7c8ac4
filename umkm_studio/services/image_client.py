"""Client for the external image generation API.

The API is OpenAI-compatible ``/chat/completions``; image models answer with
``choices[0].message.images[0].image_url.url`` (usually a data URL).
The whole call, connect through body, is bounded by one hard timeout.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from umkm_studio.core.config import settings

logger = logging.getLogger(__name__)

# Upper bound on stored upstream error bodies
MAX_ERROR_BODY_CHARS = 500


class UpstreamGenerationError(Exception):
    """Raised when the image API times out, errors or returns no image.

    Attributes:
        error_code: TIMEOUT, HTTP_<status>, NO_IMAGE or REQUEST_FAILED
    """

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        super().__init__(message)


def build_messages(prompt: str, reference_images: Optional[list[str]] = None) -> list[dict]:
    """Build the chat payload: one text part plus one part per reference image."""
    content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
    for image in reference_images or []:
        content.append({"type": "image_url", "image_url": {"url": image}})
    return [{"role": "user", "content": content}]


def extract_image_url(result: dict) -> Optional[str]:
    """Pull the first generated image reference out of a completion."""
    try:
        return result["choices"][0]["message"]["images"][0]["image_url"]["url"]
    except (KeyError, IndexError, TypeError):
        return None


class ImageGenerationClient:
    """Async client for the image generation API."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url or settings.IMAGE_API_URL
        self.api_key = api_key if api_key is not None else settings.IMAGE_API_KEY
        self.timeout_seconds = timeout_seconds or settings.IMAGE_API_TIMEOUT_SECONDS
        self._transport = transport

    async def _post(self, body: dict) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds, transport=self._transport
        ) as client:
            return await client.post(
                self.api_url,
                json=body,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )

    async def generate(self, model: str, messages: list[dict]) -> tuple[str, dict]:
        """Request one image.

        Args:
            model: Image model ID
            messages: Chat messages payload

        Returns:
            Tuple of (image URL or data URL, raw completion JSON)

        Raises:
            UpstreamGenerationError: On timeout, non-2xx, transport error or
                a completion without an image
        """
        body = {"model": model, "messages": messages}

        try:
            response = await asyncio.wait_for(self._post(body), timeout=self.timeout_seconds)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.error(f"Image API timed out after {self.timeout_seconds}s")
            raise UpstreamGenerationError(
                "TIMEOUT", f"Image API timed out after {self.timeout_seconds:.0f}s"
            )
        except httpx.HTTPError as e:
            logger.error(f"Image API request failed: {e}")
            raise UpstreamGenerationError("REQUEST_FAILED", f"Image API request failed: {e}")

        if response.status_code >= 400:
            detail = response.text[:MAX_ERROR_BODY_CHARS]
            logger.error(f"Image API error {response.status_code}: {detail}")
            raise UpstreamGenerationError(
                f"HTTP_{response.status_code}",
                f"API Error: {response.status_code} - {detail}",
            )

        try:
            result = response.json()
        except ValueError:
            raise UpstreamGenerationError("NO_IMAGE", "Image API returned invalid JSON")

        image_url = extract_image_url(result)
        if not image_url:
            raise UpstreamGenerationError("NO_IMAGE", "Image API response contained no image")

        return image_url, result


def get_image_client() -> ImageGenerationClient:
    """Get an image client configured from settings."""
    return ImageGenerationClient()
