"""Generative media calls for the studio. Used by both the web app and CLI.

Three vendor operations sit behind SceneClient: text-to-image scene
generation, multi-reference compositing, and image-to-video animation. Every
call goes through retry.with_retry; the video call is a small state machine
(VideoJob) that submits, polls and downloads.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from errors import (
    ConfigurationError,
    DownloadFailed,
    GenerationFailed,
    UnsupportedModel,
    ValidationError,
)
from media_codec import MediaPayload, bytes_to_payload, payload_to_bytes
from retry import with_retry

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Model catalogue
# ---------------------------------------------------------------------------

SCENE_MODEL = "imagen-4.0-generate-001"
COMPOSITE_MODEL = "gemini-2.5-flash-image-preview"
VIDEO_MODEL = "veo-2.0-generate-001"


class CompositeModel(str, Enum):
    """Vendors that can composite a product into a scene."""

    GEMINI = "gemini"
    OPENAI = "openai"   # selectable, not implemented

    @classmethod
    def parse(cls, value: Any) -> "CompositeModel":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnsupportedModel(f"Unknown compositing model {value!r}") from None


COMPOSITE_MODELS: List[Dict] = [
    {
        "id": CompositeModel.GEMINI.value,
        "name": "Gemini 2.5 Flash Image ★ Recommended",
        "model": COMPOSITE_MODEL,
        "description": "Places the product into the scene using every reference angle.",
        "available": True,
    },
    {
        "id": CompositeModel.OPENAI.value,
        "name": "OpenAI (coming soon)",
        "model": None,
        "description": "Not implemented yet. Selecting it fails without a network call.",
        "available": False,
    },
]

DEFAULT_COMPOSITE_MODEL = CompositeModel.GEMINI

COMPOSITE_INSTRUCTION = (
    "The first image is the background scene. The second image is the primary product. "
    "The subsequent images are additional angles of the same product for reference. "
    "Place the primary product from the second image seamlessly into the scene from the first image. "
    "Use the additional angles to accurately render lighting, shadows, perspective, and scale. "
    "The output must be only the composed image."
)

REMOVE_BACKGROUND_INSTRUCTION = (
    "Remove the background from the preceding image. Make the background transparent. "
    "The output must be a PNG image of only the main subject, with a transparent background."
)

# Retry budgets per call site. Status checks are flakier than submits.
SUBMIT_RETRIES = 3
POLL_RETRIES = 5
DOWNLOAD_RETRIES = 3

POLL_INTERVAL = 10.0  # seconds

_RETRYABLE_CLIENT_CODES = (408, 429)


def load_api_key() -> str:
    """Return the vendor credential from the environment."""
    key = os.environ.get("GEMINI_API_KEY") or os.environ.get("API_KEY") or ""
    if not key.strip():
        raise ConfigurationError(
            "The Gemini API key is missing. Set GEMINI_API_KEY (or API_KEY) in the environment."
        )
    return key.strip()


def is_retryable(exc: BaseException) -> bool:
    """HTTP 4xx answers (other than timeout / rate limit) will not improve on retry."""
    code: Optional[int] = None
    if isinstance(exc, genai_errors.ClientError):
        code = getattr(exc, "code", None)
    elif isinstance(exc, requests.HTTPError) and exc.response is not None:
        code = exc.response.status_code
    if code is not None and 400 <= code < 500:
        return code in _RETRYABLE_CLIENT_CODES
    return True


def build_composite_parts(
    primary: MediaPayload,
    angles: Sequence[MediaPayload],
    background: MediaPayload,
    refinement: str,
) -> List[types.Part]:
    """Request parts in model order: background, primary, angles, then the text."""
    ordered = [background, primary, *angles]
    parts = [_inline_part(p) for p in ordered]
    parts.append(types.Part(text=f"{COMPOSITE_INSTRUCTION}\n\nUser's refinement: {refinement}"))
    return parts


def _inline_part(payload: MediaPayload) -> types.Part:
    return types.Part(
        inline_data=types.Blob(data=payload_to_bytes(payload), mime_type=payload.mime_type)
    )


def _first_inline_image(response: Any) -> Optional[MediaPayload]:
    for candidate in (getattr(response, "candidates", None) or [])[:1]:
        content = getattr(candidate, "content", None)
        for part in (getattr(content, "parts", None) or []):
            inline = getattr(part, "inline_data", None)
            if inline is None or inline.data is None:
                continue
            data = inline.data
            if isinstance(data, str):
                return MediaPayload(data=data, mime_type=inline.mime_type or "image/png")
            return bytes_to_payload(data, inline.mime_type or "image/png")
    return None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class SceneClient:
    """Thin wrapper over the Gemini SDK with retries and typed failures."""

    def __init__(
        self,
        genai_client: Any,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        poll_interval: float = POLL_INTERVAL,
        retry_delay: float = 1.0,
    ) -> None:
        self._genai = genai_client
        self._api_key = api_key
        self._session = session or requests.Session()
        self.sleep = sleep
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay

    @classmethod
    def from_env(cls, **kwargs: Any) -> "SceneClient":
        api_key = load_api_key()
        return cls(genai.Client(api_key=api_key), api_key, **kwargs)

    async def _retry(self, fn: Callable[[], Any], label: str, max_retries: int = SUBMIT_RETRIES,
                     on_retry: Optional[Callable[[int, BaseException], Any]] = None) -> Any:
        return await with_retry(
            fn,
            max_retries=max_retries,
            initial_delay=self.retry_delay,
            on_retry=on_retry,
            label=label,
            sleep=self.sleep,
            retry_if=is_retryable,
        )

    # ------------------------------------------------------------------
    # Scene generation
    # ------------------------------------------------------------------

    async def generate_scene(self, prompt: str) -> MediaPayload:
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValidationError("Please enter a prompt to generate an image.")

        t0 = time.time()
        try:
            response = await self._retry(
                lambda: self._genai.aio.models.generate_images(
                    model=SCENE_MODEL,
                    prompt=prompt,
                    config=types.GenerateImagesConfig(
                        number_of_images=1,
                        output_mime_type="image/jpeg",
                        aspect_ratio="1:1",
                    ),
                ),
                "Scene generation",
            )
        except Exception as exc:
            log.error("Scene generation failed: %s", exc)
            raise GenerationFailed(f"Failed to generate lifestyle image: {exc}") from exc

        generated = getattr(response, "generated_images", None) or []
        if not generated or generated[0].image is None or not generated[0].image.image_bytes:
            raise GenerationFailed("Failed to generate lifestyle image: no image was generated.")

        image = generated[0].image
        log.info("Scene generated: model=%s  %.1fs", SCENE_MODEL, time.time() - t0)
        return bytes_to_payload(image.image_bytes, image.mime_type or "image/jpeg")

    # ------------------------------------------------------------------
    # Compositing
    # ------------------------------------------------------------------

    async def composite(
        self,
        primary: MediaPayload,
        angles: Sequence[MediaPayload],
        background: MediaPayload,
        refinement: str,
        model: Any = DEFAULT_COMPOSITE_MODEL,
    ) -> MediaPayload:
        model = CompositeModel.parse(model)
        if model is CompositeModel.GEMINI:
            return await self._composite_gemini(primary, angles, background, refinement)
        if model is CompositeModel.OPENAI:
            raise UnsupportedModel("OpenAI compositing is not implemented yet. Please choose Gemini.")
        raise UnsupportedModel(f"No compositing implementation for {model.value!r}")

    async def _composite_gemini(
        self,
        primary: MediaPayload,
        angles: Sequence[MediaPayload],
        background: MediaPayload,
        refinement: str,
    ) -> MediaPayload:
        parts = build_composite_parts(primary, angles, background, refinement)
        log.debug("Composite request: %d image parts + instruction", len(parts) - 1)
        return await self._edit(parts, "Image combination")

    async def remove_background(self, image: MediaPayload) -> MediaPayload:
        parts = [_inline_part(image), types.Part(text=REMOVE_BACKGROUND_INSTRUCTION)]
        result = await self._edit(parts, "Background removal")
        # transparency needs PNG whatever the model labels it
        return MediaPayload(data=result.data, mime_type="image/png")

    async def _edit(self, parts: List[types.Part], label: str) -> MediaPayload:
        t0 = time.time()
        try:
            response = await self._retry(
                lambda: self._genai.aio.models.generate_content(
                    model=COMPOSITE_MODEL,
                    contents=parts,
                    config=types.GenerateContentConfig(
                        response_modalities=[types.Modality.IMAGE, types.Modality.TEXT],
                    ),
                ),
                label,
            )
        except Exception as exc:
            log.error("%s failed: %s", label, exc)
            raise GenerationFailed(f"{label} failed: {exc}") from exc

        payload = _first_inline_image(response)
        if payload is None:
            raise GenerationFailed(f"{label} failed: no image was returned by the model.")
        log.info("%s: model=%s  %.1fs", label, COMPOSITE_MODEL, time.time() - t0)
        return payload

    # ------------------------------------------------------------------
    # Video
    # ------------------------------------------------------------------

    async def animate(
        self,
        image: MediaPayload,
        prompt: str,
        on_status: Optional[Callable[[str], None]] = None,
    ) -> Tuple[bytes, str]:
        """Animate *image*; returns ``(video_bytes, mime_type)``."""
        return await VideoJob(self, image, prompt, on_status).run()


# ---------------------------------------------------------------------------
# Video state machine
# ---------------------------------------------------------------------------

class VideoState(str, Enum):
    SUBMITTING = "submitting"
    POLLING = "polling"
    DOWNLOADING = "downloading"
    COMPLETE = "complete"
    FAILED = "failed"


class VideoJob:
    """Submit → poll → download, reporting each step to *on_status*.

    Cannot be cancelled once started; a slow but healthy operation is polled
    for as long as it takes.
    """

    def __init__(
        self,
        client: SceneClient,
        image: MediaPayload,
        prompt: str,
        on_status: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.client = client
        self.image = image
        self.prompt = prompt
        self.on_status = on_status
        self.state = VideoState.SUBMITTING
        self.history: List[VideoState] = [VideoState.SUBMITTING]
        self.polls = 0

    def _emit(self, message: str) -> None:
        log.debug("Video [%s] %s", self.state.value, message)
        if self.on_status is not None:
            self.on_status(message)

    def _transition(self, state: VideoState) -> None:
        self.state = state
        self.history.append(state)

    def _retry_notice(self, step: str) -> Callable[[int, BaseException], None]:
        def notice(attempt: int, exc: BaseException) -> None:
            self._emit(f"Connection issue during {step}, retrying (attempt {attempt})...")
        return notice

    async def run(self) -> Tuple[bytes, str]:
        try:
            operation = await self._submit()
            self._transition(VideoState.POLLING)
            while not operation.done:
                operation = await self._poll(operation)
            self._transition(VideoState.DOWNLOADING)
            self._emit("Video generated! Downloading file...")
            result = await self._download(self._result_uri(operation))
        except Exception as exc:
            self._transition(VideoState.FAILED)
            self._emit(f"Error: {exc}")
            raise
        self._transition(VideoState.COMPLETE)
        self._emit("Video download complete!")
        return result

    async def _submit(self) -> Any:
        self._emit("Starting video generation... This can take a few minutes.")
        image = types.Image(image_bytes=payload_to_bytes(self.image), mime_type=self.image.mime_type)
        try:
            return await self.client._retry(
                lambda: self.client._genai.aio.models.generate_videos(
                    model=VIDEO_MODEL,
                    prompt=self.prompt,
                    image=image,
                    config=types.GenerateVideosConfig(number_of_videos=1),
                ),
                "Video submission",
                SUBMIT_RETRIES,
                self._retry_notice("submission"),
            )
        except Exception as exc:
            raise GenerationFailed(f"Failed to start video generation: {exc}") from exc

    async def _poll(self, operation: Any) -> Any:
        await self.client.sleep(self.client.poll_interval)
        self.polls += 1
        try:
            operation = await self.client._retry(
                lambda: self.client._genai.aio.operations.get(operation),
                "Video status check",
                POLL_RETRIES,
                self._retry_notice("status check"),
            )
        except Exception as exc:
            raise GenerationFailed(f"Failed to check video status: {exc}") from exc
        if not operation.done:
            self._emit(f"Still generating video (check #{self.polls})...")
        return operation

    @staticmethod
    def _result_uri(operation: Any) -> str:
        error = getattr(operation, "error", None)
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise GenerationFailed(f"Video generation failed: {message}")
        response = getattr(operation, "response", None) or getattr(operation, "result", None)
        videos = getattr(response, "generated_videos", None) or []
        video = getattr(videos[0], "video", None) if videos else None
        uri = getattr(video, "uri", None)
        if not uri:
            raise DownloadFailed("Video generation finished, but no download link was found.")
        return uri

    async def _download(self, uri: str) -> Tuple[bytes, str]:
        session = self.client._session
        api_key = self.client._api_key

        async def fetch() -> requests.Response:
            resp = await asyncio.to_thread(session.get, uri, params={"key": api_key}, timeout=300)
            resp.raise_for_status()
            return resp

        t0 = time.time()
        try:
            resp = await self.client._retry(
                fetch, "Video download", DOWNLOAD_RETRIES, self._retry_notice("download"),
            )
        except Exception as exc:
            raise DownloadFailed(f"Failed to download video file: {exc}") from exc

        mime_type = (resp.headers.get("Content-Type") or "video/mp4").split(";")[0].strip()
        if not mime_type.startswith("video/"):
            mime_type = "video/mp4"
        log.info("Video downloaded: %d bytes  %.1fs", len(resp.content), time.time() - t0)
        return resp.content, mime_type
