"""Tests for the image generation API client."""

import asyncio

import httpx
import pytest

from umkm_studio.services.image_client import (
    ImageGenerationClient,
    UpstreamGenerationError,
    build_messages,
    extract_image_url,
)

DATA_URL = "data:image/png;base64,iVBORw0KGgo="


def completion(image_url: str = DATA_URL) -> dict:
    return {
        "choices": [
            {"message": {"role": "assistant", "images": [{"image_url": {"url": image_url}}]}}
        ]
    }


def make_client(handler, timeout_seconds: float = 5.0) -> ImageGenerationClient:
    return ImageGenerationClient(
        api_url="https://images.test/v1/chat/completions",
        api_key="test-key",
        timeout_seconds=timeout_seconds,
        transport=httpx.MockTransport(handler),
    )


class TestPayload:
    """Tests for request/response helpers."""

    def test_build_messages_text_only(self):
        messages = build_messages("Kopi susu di meja kayu")
        assert messages == [
            {"role": "user", "content": [{"type": "text", "text": "Kopi susu di meja kayu"}]}
        ]

    def test_build_messages_with_references(self):
        messages = build_messages("Produk", ["https://img.test/a.png", DATA_URL])
        content = messages[0]["content"]
        assert len(content) == 3
        assert content[1] == {"type": "image_url", "image_url": {"url": "https://img.test/a.png"}}
        assert content[2]["image_url"]["url"] == DATA_URL

    def test_extract_image_url(self):
        assert extract_image_url(completion()) == DATA_URL

    @pytest.mark.parametrize(
        "result",
        [{}, {"choices": []}, {"choices": [{"message": {"content": "no image"}}]}, None],
    )
    def test_extract_image_url_missing(self, result):
        assert extract_image_url(result) is None


class TestGenerate:
    """Tests for ImageGenerationClient.generate."""

    async def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = request.read()
            return httpx.Response(200, json=completion())

        image_ref, result = await make_client(handler).generate("model-x", build_messages("Test"))

        assert image_ref == DATA_URL
        assert result["choices"][0]["message"]["images"]
        assert seen["auth"] == "Bearer test-key"
        assert b'"model":"model-x"' in seen["body"].replace(b" ", b"")

    async def test_http_error(self):
        client = make_client(lambda request: httpx.Response(503, text="overloaded"))

        with pytest.raises(UpstreamGenerationError) as exc_info:
            await client.generate("model-x", build_messages("Test"))

        assert exc_info.value.error_code == "HTTP_503"
        assert "overloaded" in str(exc_info.value)

    async def test_no_image(self):
        client = make_client(
            lambda request: httpx.Response(
                200, json={"choices": [{"message": {"content": "I cannot draw that"}}]}
            )
        )

        with pytest.raises(UpstreamGenerationError) as exc_info:
            await client.generate("model-x", build_messages("Test"))

        assert exc_info.value.error_code == "NO_IMAGE"

    async def test_invalid_json(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(UpstreamGenerationError) as exc_info:
            await client.generate("model-x", build_messages("Test"))

        assert exc_info.value.error_code == "NO_IMAGE"

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(UpstreamGenerationError) as exc_info:
            await make_client(handler).generate("model-x", build_messages("Test"))

        assert exc_info.value.error_code == "REQUEST_FAILED"

    async def test_timeout(self):
        client = make_client(lambda request: httpx.Response(200, json=completion()), timeout_seconds=0.05)

        async def slow_post(body):
            await asyncio.sleep(1)

        client._post = slow_post

        with pytest.raises(UpstreamGenerationError) as exc_info:
            await client.generate("model-x", build_messages("Test"))

        assert exc_info.value.error_code == "TIMEOUT"

    async def test_httpx_timeout_maps_to_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out")

        with pytest.raises(UpstreamGenerationError) as exc_info:
            await make_client(handler).generate("model-x", build_messages("Test"))

        assert exc_info.value.error_code == "TIMEOUT"
