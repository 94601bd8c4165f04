"""Tests for the image-to-video submit/poll/download state machine."""

from __future__ import annotations

import pytest

from errors import DownloadFailed, GenerationFailed
from media_codec import bytes_to_payload
from scene_core import DOWNLOAD_RETRIES, POLL_INTERVAL, SceneClient, VideoJob, VideoState
from tests.fakes import (
    COMBINED_PNG,
    VIDEO_MP4,
    FakeResponse,
    FakeSession,
    Scripted,
    video_operation,
)

SOURCE = bytes_to_payload(COMBINED_PNG, "image/png")
URI = "https://files.example/video.mp4?alt=media"


@pytest.mark.asyncio
async def test_two_pending_polls_then_done(client, genai_client, session, fake_sleep):
    genai_client.operations.get = Scripted(
        video_operation(False), video_operation(False), video_operation(True, uri=URI),
    )
    statuses = []

    data, mime_type = await client.animate(SOURCE, "slow turntable spin", statuses.append)

    assert data == VIDEO_MP4
    assert mime_type == "video/mp4"
    assert statuses == [
        "Starting video generation... This can take a few minutes.",
        "Still generating video (check #1)...",
        "Still generating video (check #2)...",
        "Video generated! Downloading file...",
        "Video download complete!",
    ]
    assert fake_sleep.delays == [POLL_INTERVAL] * 3


@pytest.mark.asyncio
async def test_submit_sends_image_and_prompt(client, genai_client):
    await client.animate(SOURCE, "steam rising from the cup")

    call = genai_client.models.generate_videos.calls[0]["kwargs"]
    assert call["prompt"] == "steam rising from the cup"
    assert call["image"].image_bytes == COMBINED_PNG
    assert call["image"].mime_type == "image/png"


@pytest.mark.asyncio
async def test_download_appends_credential(client, session):
    await client.animate(SOURCE, "pan left")

    assert session.calls == [{"url": URI, "params": {"key": "test-key"}, "timeout": 300}]


@pytest.mark.asyncio
async def test_already_done_operation_skips_polling(client, genai_client, fake_sleep):
    genai_client.models.generate_videos = Scripted(video_operation(True, uri=URI))
    job = VideoJob(client, SOURCE, "zoom in")

    data, _ = await job.run()

    assert data == VIDEO_MP4
    assert genai_client.operations.get.call_count == 0
    assert fake_sleep.delays == []
    assert job.history == [VideoState.SUBMITTING, VideoState.POLLING,
                           VideoState.DOWNLOADING, VideoState.COMPLETE]


@pytest.mark.asyncio
async def test_done_without_uri_fails_without_downloading(client, genai_client, session):
    genai_client.operations.get = Scripted(video_operation(True))
    statuses = []

    with pytest.raises(DownloadFailed, match="no download link"):
        await client.animate(SOURCE, "orbit", statuses.append)

    assert session.calls == []
    assert statuses[-1].startswith("Error: ")


@pytest.mark.asyncio
async def test_operation_error_is_generation_failure(client, genai_client):
    genai_client.operations.get = Scripted(video_operation(True, error={"message": "blocked by safety filter"}))

    with pytest.raises(GenerationFailed, match="blocked by safety filter"):
        await client.animate(SOURCE, "orbit")


@pytest.mark.asyncio
async def test_submit_failure_marks_job_failed(client, genai_client):
    genai_client.models.generate_videos = Scripted(ConnectionError("refused"))
    job = VideoJob(client, SOURCE, "orbit")

    with pytest.raises(GenerationFailed, match="Failed to start video generation"):
        await job.run()

    assert job.state is VideoState.FAILED
    assert genai_client.models.generate_videos.call_count == 4
    assert genai_client.operations.get.call_count == 0


@pytest.mark.asyncio
async def test_flaky_status_check_is_retried_and_reported(client, genai_client, fake_sleep):
    genai_client.operations.get = Scripted(ConnectionError("reset"), video_operation(True, uri=URI))
    statuses = []

    await client.animate(SOURCE, "orbit", statuses.append)

    assert "Connection issue during status check, retrying (attempt 1)..." in statuses
    assert statuses[-1] == "Video download complete!"
    assert fake_sleep.delays[0] == POLL_INTERVAL
    assert len(fake_sleep.delays) == 2


@pytest.mark.asyncio
async def test_download_server_errors_exhaust_retries(genai_client, fake_sleep):
    session = FakeSession(FakeResponse(status_code=500))
    client = SceneClient(genai_client, "test-key", session=session, sleep=fake_sleep)
    statuses = []

    with pytest.raises(DownloadFailed, match="Failed to download video file"):
        await client.animate(SOURCE, "orbit", statuses.append)

    assert len(session.calls) == DOWNLOAD_RETRIES + 1
    assert statuses.count("Connection issue during download, retrying (attempt 1)...") == 1
    assert statuses[-1].startswith("Error: Failed to download video file")


@pytest.mark.asyncio
async def test_download_not_found_is_not_retried(genai_client, fake_sleep):
    session = FakeSession(FakeResponse(status_code=404))
    client = SceneClient(genai_client, "test-key", session=session, sleep=fake_sleep)

    with pytest.raises(DownloadFailed):
        await client.animate(SOURCE, "orbit")

    assert len(session.calls) == 1


@pytest.mark.asyncio
async def test_non_video_content_type_falls_back_to_mp4(genai_client, fake_sleep):
    session = FakeSession(FakeResponse(content_type="application/octet-stream"))
    client = SceneClient(genai_client, "test-key", session=session, sleep=fake_sleep)

    _, mime_type = await client.animate(SOURCE, "orbit")

    assert mime_type == "video/mp4"
