"""Tests for the generative media client (scene, composite, background removal)."""

from __future__ import annotations

from types import SimpleNamespace

import pytest
import requests

import scene_core
from errors import ConfigurationError, GenerationFailed, UnsupportedModel, ValidationError
from media_codec import MediaPayload, bytes_to_payload
from scene_core import (
    COMPOSITE_INSTRUCTION,
    COMPOSITE_MODEL,
    SCENE_MODEL,
    CompositeModel,
    build_composite_parts,
    is_retryable,
    load_api_key,
)
from tests.fakes import COMBINED_PNG, JPEG_1x1, PNG_10x10, Scripted, content_response


def _payload(tag: bytes, mime_type: str = "image/png") -> MediaPayload:
    return bytes_to_payload(tag, mime_type)


B = _payload(b"background", "image/jpeg")
P = _payload(b"primary")
A1 = _payload(b"angle-1")
A2 = _payload(b"angle-2", "image/webp")


# ---------------------------------------------------------------------------
# Scene generation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_generate_scene_returns_first_image(client, genai_client):
    payload = await client.generate_scene("sunlit kitchen counter")

    assert payload == bytes_to_payload(JPEG_1x1, "image/jpeg")
    call = genai_client.models.generate_images.calls[0]["kwargs"]
    assert call["model"] == SCENE_MODEL
    assert call["prompt"] == "sunlit kitchen counter"
    assert call["config"].number_of_images == 1
    assert call["config"].aspect_ratio == "1:1"
    assert call["config"].output_mime_type == "image/jpeg"


@pytest.mark.asyncio
async def test_generate_scene_with_no_results_fails(client, genai_client):
    genai_client.models.generate_images = Scripted(SimpleNamespace(generated_images=[]))

    with pytest.raises(GenerationFailed, match="no image was generated"):
        await client.generate_scene("empty room")
    assert genai_client.models.generate_images.call_count == 1


@pytest.mark.asyncio
async def test_generate_scene_blank_prompt_never_calls_vendor(client, genai_client):
    with pytest.raises(ValidationError):
        await client.generate_scene("   ")
    assert genai_client.models.generate_images.call_count == 0


@pytest.mark.asyncio
async def test_generate_scene_exhausted_retries_embed_last_cause(client, genai_client, fake_sleep):
    genai_client.models.generate_images = Scripted(ConnectionError("upstream reset"))

    with pytest.raises(GenerationFailed, match="upstream reset") as exc_info:
        await client.generate_scene("sunlit kitchen counter")

    assert genai_client.models.generate_images.call_count == scene_core.SUBMIT_RETRIES + 1
    assert len(fake_sleep.delays) == scene_core.SUBMIT_RETRIES
    assert "after 3 retries" in str(exc_info.value)


@pytest.mark.asyncio
async def test_generate_scene_recovers_from_transient_failure(client, genai_client):
    genai_client.models.generate_images = Scripted(TimeoutError("slow"), SimpleNamespace(
        generated_images=[SimpleNamespace(image=SimpleNamespace(image_bytes=PNG_10x10, mime_type="image/png"))]
    ))

    payload = await client.generate_scene("studio backdrop")

    assert payload.mime_type == "image/png"
    assert genai_client.models.generate_images.call_count == 2


# ---------------------------------------------------------------------------
# Compositing
# ---------------------------------------------------------------------------

def test_composite_parts_order_is_background_primary_angles_then_text():
    parts = build_composite_parts(P, [A1, A2], B, "on the left side")

    assert [p.inline_data.data for p in parts[:-1]] == [b"background", b"primary", b"angle-1", b"angle-2"]
    assert [p.inline_data.mime_type for p in parts[:-1]] == ["image/jpeg", "image/png", "image/png", "image/webp"]
    assert parts[-1].inline_data is None
    assert parts[-1].text == f"{COMPOSITE_INSTRUCTION}\n\nUser's refinement: on the left side"


def test_composite_parts_without_angles():
    parts = build_composite_parts(P, [], B, "")
    assert [p.inline_data.data for p in parts[:-1]] == [b"background", b"primary"]
    assert parts[-1].text.startswith(COMPOSITE_INSTRUCTION)


@pytest.mark.asyncio
async def test_composite_sends_ordered_parts_and_returns_inline_image(client, genai_client):
    result = await client.composite(P, [A1, A2], B, "keep shadows soft", CompositeModel.GEMINI)

    assert result == bytes_to_payload(COMBINED_PNG, "image/png")
    call = genai_client.models.generate_content.calls[0]["kwargs"]
    assert call["model"] == COMPOSITE_MODEL
    sent = call["contents"]
    assert [p.inline_data.data for p in sent[:-1]] == [b"background", b"primary", b"angle-1", b"angle-2"]
    assert "keep shadows soft" in sent[-1].text
    modalities = [str(getattr(m, "value", m)).upper() for m in call["config"].response_modalities]
    assert modalities == ["IMAGE", "TEXT"]


@pytest.mark.asyncio
async def test_composite_accepts_model_name_string(client):
    result = await client.composite(P, [], B, "", "Gemini")
    assert result.mime_type == "image/png"


@pytest.mark.asyncio
async def test_alternate_vendor_fails_without_entering_retry(client, genai_client, monkeypatch):
    wrapped = []

    async def spy(fn, **kwargs):
        wrapped.append(fn)
        return await fn()

    monkeypatch.setattr(scene_core, "with_retry", spy)

    with pytest.raises(UnsupportedModel):
        await client.composite(P, [A1], B, "", CompositeModel.OPENAI)

    assert wrapped == []
    assert genai_client.models.generate_content.call_count == 0


@pytest.mark.asyncio
async def test_unknown_model_name_is_unsupported(client, genai_client):
    with pytest.raises(UnsupportedModel):
        await client.composite(P, [], B, "", "midjourney")
    assert genai_client.models.generate_content.call_count == 0


@pytest.mark.asyncio
async def test_composite_without_inline_image_fails(client, genai_client):
    genai_client.models.generate_content = Scripted(content_response(raw=None))

    with pytest.raises(GenerationFailed, match="no image"):
        await client.composite(P, [], B, "")


# ---------------------------------------------------------------------------
# Background removal
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_remove_background_forces_png(client, genai_client):
    genai_client.models.generate_content = Scripted(content_response(b"cutout", "image/jpeg"))

    result = await client.remove_background(P)

    assert result == MediaPayload(data=bytes_to_payload(b"cutout", "image/png").data, mime_type="image/png")
    sent = genai_client.models.generate_content.calls[0]["kwargs"]["contents"]
    assert sent[0].inline_data.data == b"primary"
    assert "transparent" in sent[1].text


# ---------------------------------------------------------------------------
# Retry classification and configuration
# ---------------------------------------------------------------------------

def _http_error(status: int) -> requests.HTTPError:
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(f"{status}", response=response)


@pytest.mark.parametrize("status, expected", [(400, False), (401, False), (404, False),
                                              (408, True), (429, True), (500, True), (503, True)])
def test_http_client_errors_are_terminal(status, expected):
    assert is_retryable(_http_error(status)) is expected


def test_plain_errors_are_retryable():
    assert is_retryable(ConnectionError("reset"))
    assert is_retryable(RuntimeError("weird"))


def test_load_api_key_prefers_gemini_key(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", " gem-key ")
    monkeypatch.setenv("API_KEY", "legacy")
    assert load_api_key() == "gem-key"


def test_load_api_key_falls_back_to_api_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.setenv("API_KEY", "legacy")
    assert load_api_key() == "legacy"


def test_missing_api_key_is_configuration_error(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("API_KEY", raising=False)
    with pytest.raises(ConfigurationError, match="API key is missing"):
        load_api_key()


def test_composite_model_catalogue_lists_both_variants():
    ids = [m["id"] for m in scene_core.COMPOSITE_MODELS]
    assert ids == [m.value for m in CompositeModel]
