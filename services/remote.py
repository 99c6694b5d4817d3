"""Async client for the PlateMate backend endpoints replayed by the sync engine."""
from __future__ import annotations

import base64
import binascii
from typing import Any, Dict, Optional, Tuple

import httpx

from core.settings import API, build_api_url


class RemoteWriteError(Exception):
    """The backend answered with a non-success status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


def encode_image(content: bytes, mime: str = "image/jpeg") -> str:
    """Build the data URL stored in ``analysis`` payloads under ``imageData``."""
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def decode_image(value: str) -> Tuple[bytes, str]:
    """Return ``(content, mime)`` from a data URL or bare base64 string."""
    mime = "application/octet-stream"
    payload = value.strip()
    if payload.startswith("data:"):
        header, sep, payload = payload.partition(",")
        if not sep:
            raise ValueError("Malformed data URL")
        meta = header[len("data:"):]
        if not meta.endswith(";base64"):
            raise ValueError("Only base64 data URLs are supported")
        mime = meta[: -len(";base64")] or mime
    try:
        return base64.b64decode(payload, validate=True), mime
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid image data: {exc}") from exc


def _filename_for(mime: str) -> str:
    subtype = mime.split("/", 1)[-1] if "/" in mime else "bin"
    return f"image.{'jpg' if subtype == 'jpeg' else subtype}"


class PlateMateApi:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: float = API.request_timeout_sec,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = API.base_url if base_url is None else base_url
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def url(self, path: str) -> str:
        return build_api_url(path, self.base_url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def create_diary_entry(self, data: Dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        response = await client.post(self.url(API.diary_path), json=data)
        if not response.is_success:
            raise RemoteWriteError(
                f"Failed to sync diary entry: {response.status_code}", response.status_code
            )
        return response

    async def submit_analysis(self, data: Dict[str, Any]) -> httpx.Response:
        files = None
        image_data = (data or {}).get("imageData")
        if image_data:
            content, mime = decode_image(image_data)
            files = {"image": (_filename_for(mime), content, mime)}

        client = await self._get_client()
        if files:
            response = await client.post(self.url(API.analyze_path), files=files)
        else:
            response = await client.post(self.url(API.analyze_path))
        if not response.is_success:
            raise RemoteWriteError(
                f"Failed to sync analysis: {response.status_code}", response.status_code
            )
        return response

    async def head(self, path: str) -> httpx.Response:
        client = await self._get_client()
        return await client.head(self.url(path))


__all__ = ["PlateMateApi", "RemoteWriteError", "decode_image", "encode_image"]
