"""Conversions between base64 image payloads and raw bytes.

A MediaPayload is what crosses the network boundary: base64 text plus a MIME
type. Uploads arrive as data URLs or raw file bytes; generated media comes
back from the vendor as bytes.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Optional

import requests

from errors import DownloadFailed, ValidationError

log = logging.getLogger(__name__)

DEFAULT_IMAGE_MIME = "image/png"

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]*)(?P<params>(;[^;,]*)*),(?P<data>.*)$", re.DOTALL)


@dataclass(frozen=True)
class MediaPayload:
    data: str          # base64 text
    mime_type: str

    def __repr__(self) -> str:
        return f"MediaPayload(mime_type={self.mime_type!r}, {len(self.data)} b64 chars)"


def payload_to_bytes(payload: MediaPayload) -> bytes:
    try:
        return base64.b64decode(payload.data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"Image data is not valid base64: {exc}") from exc


def bytes_to_payload(raw: bytes, mime_type: str) -> MediaPayload:
    return MediaPayload(data=base64.b64encode(raw).decode("ascii"), mime_type=mime_type)


def is_image_mime(mime_type: Optional[str]) -> bool:
    return bool(mime_type) and mime_type.lower().startswith("image/")


def parse_data_url(url: str) -> MediaPayload:
    """Split ``data:<mime>;base64,<data>`` into a payload.

    Browsers omit the MIME type for some files; those default to PNG.
    """
    match = _DATA_URL_RE.match((url or "").strip())
    if not match:
        raise ValidationError("Expected a base64 data URL (data:<mime>;base64,...)")
    if ";base64" not in match.group("params"):
        raise ValidationError("Only base64-encoded data URLs are supported")
    mime_type = match.group("mime") or DEFAULT_IMAGE_MIME
    return MediaPayload(data=match.group("data"), mime_type=mime_type)


def payload_from_upload(raw: bytes, mime_type: Optional[str]) -> MediaPayload:
    """Build a payload from an uploaded file, accepting image types only."""
    if not is_image_mime(mime_type):
        raise ValidationError(f"Unsupported file type {mime_type or 'unknown'!r}; please upload an image.")
    if not raw:
        raise ValidationError("The uploaded file is empty.")
    return bytes_to_payload(raw, mime_type)


def ensure_image_payload(payload: MediaPayload) -> MediaPayload:
    if not is_image_mime(payload.mime_type):
        raise ValidationError(f"Unsupported file type {payload.mime_type!r}; please upload an image.")
    if not payload.data:
        raise ValidationError("The uploaded file is empty.")
    payload_to_bytes(payload)
    return payload


async def fetch_payload(
    url: str,
    session: Optional[requests.Session] = None,
    timeout: float = 90,
) -> MediaPayload:
    """Fetch *url* and return its body as a payload."""
    getter = session.get if session is not None else requests.get

    def _get() -> requests.Response:
        return getter(url, timeout=timeout)

    resp = await asyncio.to_thread(_get)
    if not resp.ok:
        log.warning("Fetch failed: %s -> %s", url, resp.status_code)
        raise DownloadFailed(f"Failed to fetch image from URL: {url} (status {resp.status_code})")
    mime_type = (resp.headers.get("Content-Type") or "application/octet-stream").split(";")[0].strip()
    return bytes_to_payload(resp.content, mime_type)
