"""Product Scene Studio — Flask web application."""

from __future__ import annotations

import asyncio
import atexit
import json
import logging
import os
import queue
import threading
import time
import uuid
from concurrent.futures import Future
from typing import Any, Awaitable, Callable, Dict, Generator, Optional

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request
from flask_cors import CORS

load_dotenv()

import log_setup
log_setup.configure(filename="studio.log")

import scene_core
from errors import ConfigurationError, DownloadFailed, UnsupportedModel, ValidationError
from media_codec import MediaPayload, fetch_payload, parse_data_url, payload_from_upload
from workspace import DEFAULT_REFINEMENT, Product, StoredImage, StoredVideo, Workspace

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = Flask(__name__)
CORS(app)

# Active SSE queues: job_id -> Queue
_job_queues: Dict[str, queue.Queue] = {}
# Finished jobs nobody has streamed yet: job_id -> monotonic finish time
_finished_jobs: Dict[str, float] = {}
_job_queues_lock = threading.Lock()

JOB_QUEUE_TTL = 300  # seconds a finished job waits for a subscriber


class WorkspaceRuntime:
    """Owns the workspace and the event loop every workspace call runs on.

    Request threads never touch workspace state directly; they hand calls
    to the loop thread and wait for the answer.
    """

    def __init__(self, workspace: Workspace) -> None:
        self.workspace = workspace
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self.loop.run_forever, name="workspace-loop", daemon=True)
        self._thread.start()

    def call(self, fn: Callable[..., Any], *args: Any, timeout: float = 30) -> Any:
        async def invoke() -> Any:
            return fn(*args)
        return asyncio.run_coroutine_threadsafe(invoke(), self.loop).result(timeout)

    def submit(self, coro: Awaitable[Any]) -> Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def stop(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)


_runtime: Optional[WorkspaceRuntime] = None
_config_error: Optional[str] = None


def init_runtime(workspace: Optional[Workspace] = None) -> None:
    """Build the workspace, or record why it cannot be built."""
    global _runtime, _config_error
    shutdown_runtime()
    try:
        if workspace is None:
            workspace = Workspace(scene_core.SceneClient.from_env())
    except ConfigurationError as exc:
        _config_error = str(exc)
        log.critical("Configuration error: %s", exc)
        return
    _config_error = None
    _runtime = WorkspaceRuntime(workspace)
    log.info("Workspace ready")


def shutdown_runtime() -> None:
    """Release every held media handle and stop the loop thread."""
    global _runtime
    if _runtime is None:
        return
    try:
        _runtime.call(_runtime.workspace.close)
    finally:
        _runtime.stop()
        _runtime = None


init_runtime()
atexit.register(shutdown_runtime)


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------

def _sse_event(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


def _get_or_create_queue(job_id: str) -> queue.Queue:
    with _job_queues_lock:
        if job_id not in _job_queues:
            _job_queues[job_id] = queue.Queue(maxsize=500)
        return _job_queues[job_id]


def _cleanup_queue(job_id: str) -> None:
    with _job_queues_lock:
        _job_queues.pop(job_id, None)
        _finished_jobs.pop(job_id, None)


def _mark_finished(job_id: str) -> None:
    with _job_queues_lock:
        if job_id in _job_queues:
            _finished_jobs[job_id] = time.monotonic()


def _sweep_finished_queues(now: Optional[float] = None) -> int:
    """Drop queues of jobs that finished over JOB_QUEUE_TTL ago without a subscriber."""
    now = time.monotonic() if now is None else now
    with _job_queues_lock:
        stale = [job_id for job_id, done_at in _finished_jobs.items() if now - done_at > JOB_QUEUE_TTL]
        for job_id in stale:
            _job_queues.pop(job_id, None)
            del _finished_jobs[job_id]
    if stale:
        log.debug("Dropped %d unclaimed job queues", len(stale))
    return len(stale)


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------

def _describe(item: Any) -> Optional[Dict]:
    if isinstance(item, (StoredImage, StoredVideo)):
        return {"id": item.id, "handle": item.handle, "mime_type": item.mime_type}
    if isinstance(item, Product):
        return {"id": item.id, "primary_image": item.primary_image.id}
    return None


def _start_job(kind: str, action: Callable[[Callable[[str], None]], Awaitable[Any]]) -> str:
    """Run *action* on the workspace loop and stream its progress to a queue."""
    _sweep_finished_queues()
    job_id = str(uuid.uuid4())[:8]
    q = _get_or_create_queue(job_id)

    def progress_cb(event: Dict) -> None:
        try:
            q.put_nowait(event)
        except queue.Full:
            pass

    def on_status(message: str) -> None:
        progress_cb({"job": kind, "status": "status", "message": message})

    async def run() -> None:
        progress_cb({"job": kind, "status": "started", "message": f"{kind.title()} started…"})
        try:
            item = await action(on_status)
            log.info("Job complete: id=%s  kind=%s", job_id, kind)
            progress_cb({"job": kind, "status": "completed", "message": "Done!", "data": _describe(item)})
        except Exception as exc:
            log.error("Job failed: id=%s  kind=%s  error=%s", job_id, kind, exc)
            progress_cb({
                "job": kind,
                "status": "failed",
                "message": str(exc),
                "data": {"type": type(exc).__name__},
            })
        finally:
            # Signal SSE stream to close
            try:
                q.put_nowait(None)
            except queue.Full:
                pass
            _mark_finished(job_id)

    _runtime.submit(run())
    log.info("Job started: id=%s  kind=%s", job_id, kind)
    return job_id


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def _ws() -> Workspace:
    return _runtime.workspace


def _state() -> Response:
    return jsonify(_runtime.call(_ws().snapshot))


def _payload_from_request() -> MediaPayload:
    upload = request.files.get("file")
    if upload is not None:
        return payload_from_upload(upload.read(), upload.mimetype)
    body = request.get_json(silent=True) or {}
    if body.get("data_url"):
        return parse_data_url(body["data_url"])
    if body.get("url"):
        return _runtime.submit(fetch_payload(body["url"])).result(120)
    raise ValidationError("No image provided. Send a 'file' upload, or JSON 'data_url' or 'url'.")


@app.before_request
def _require_configuration():
    if request.endpoint in ("healthz", "static"):
        return None
    if _config_error or _runtime is None:
        return jsonify({
            "error": _config_error or "Workspace is not initialised.",
            "type": "configuration",
        }), 503
    return None


@app.errorhandler(ValidationError)
@app.errorhandler(UnsupportedModel)
def _bad_request(exc: Exception):
    return jsonify({"error": str(exc), "type": type(exc).__name__}), 400


@app.errorhandler(KeyError)
def _not_found(exc: KeyError):
    return jsonify({"error": str(exc.args[0]) if exc.args else "Not found"}), 404


@app.errorhandler(DownloadFailed)
def _bad_gateway(exc: DownloadFailed):
    return jsonify({"error": str(exc), "type": "DownloadFailed"}), 502


# ---------------------------------------------------------------------------
# Routes — status, state and media
# ---------------------------------------------------------------------------

@app.get("/healthz")
def healthz():
    return jsonify({"ok": _config_error is None, "error": _config_error})


@app.get("/api/state")
def api_state():
    return _state()


@app.get("/api/models")
def api_models():
    return jsonify({
        "composite_models": scene_core.COMPOSITE_MODELS,
        "scene_model": scene_core.SCENE_MODEL,
        "video_model": scene_core.VIDEO_MODEL,
        "default_refinement": DEFAULT_REFINEMENT,
    })


@app.get("/media/<path:handle>")
def media(handle: str):
    data, mime_type, filename = _ws().export(handle)
    headers = {}
    if request.args.get("download"):
        headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    return Response(data, mimetype=mime_type, headers=headers)


# ---------------------------------------------------------------------------
# Routes — products
# ---------------------------------------------------------------------------

@app.post("/api/products")
def api_create_product():
    payload = _payload_from_request()
    _runtime.call(_ws().create_product, payload)
    return _state(), 201


@app.post("/api/products/deselect")
def api_deselect_product():
    _runtime.call(_ws().deselect_product)
    return _state()


@app.post("/api/products/<product_id>/select")
def api_select_product(product_id: str):
    _runtime.call(_ws().select_product, product_id)
    return _state()


@app.delete("/api/products/<product_id>")
def api_delete_product(product_id: str):
    _runtime.call(_ws().delete_product, product_id)
    return _state()


@app.post("/api/products/active/angles")
def api_add_angle():
    payload = _payload_from_request()
    _runtime.call(_ws().add_angle, payload)
    return _state(), 201


@app.delete("/api/products/active/angles/<angle_id>")
def api_delete_angle(angle_id: str):
    _runtime.call(_ws().delete_angle, angle_id)
    return _state()


@app.post("/api/products/active/angles/<angle_id>/primary")
def api_set_primary(angle_id: str):
    _runtime.call(_ws().set_primary, angle_id)
    return _state()


@app.post("/api/products/active/remove-background")
def api_remove_background():
    ws = _ws()
    job_id = _start_job("background", lambda on_status: ws.remove_product_background())
    return jsonify({"job_id": job_id}), 202


# ---------------------------------------------------------------------------
# Routes — lifestyle scenes
# ---------------------------------------------------------------------------

@app.post("/api/lifestyles")
def api_upload_lifestyle():
    payload = _payload_from_request()
    _runtime.call(_ws().upload_lifestyle, payload)
    return _state(), 201


@app.post("/api/lifestyles/generate")
def api_generate_lifestyle():
    body = request.get_json(silent=True) or {}
    prompt = (body.get("prompt") or "").strip()
    ws = _ws()
    job_id = _start_job("lifestyle", lambda on_status: ws.generate_lifestyle(prompt))
    return jsonify({"job_id": job_id}), 202


@app.post("/api/lifestyles/deselect")
def api_deselect_lifestyle():
    _runtime.call(_ws().deselect_lifestyle)
    return _state()


@app.post("/api/lifestyles/<image_id>/select")
def api_select_lifestyle(image_id: str):
    _runtime.call(_ws().select_lifestyle, image_id)
    return _state()


@app.delete("/api/lifestyles/<image_id>")
def api_delete_lifestyle(image_id: str):
    _runtime.call(_ws().delete_lifestyle, image_id)
    return _state()


# ---------------------------------------------------------------------------
# Routes — results and videos
# ---------------------------------------------------------------------------

@app.post("/api/results/combine")
def api_combine():
    body = request.get_json(silent=True) or {}
    refinement = body.get("prompt") or DEFAULT_REFINEMENT
    model = scene_core.CompositeModel.parse(body.get("model") or scene_core.DEFAULT_COMPOSITE_MODEL)
    ws = _ws()
    job_id = _start_job("combine", lambda on_status: ws.combine(refinement, model))
    return jsonify({"job_id": job_id}), 202


@app.post("/api/results/<image_id>/select")
def api_select_result(image_id: str):
    _runtime.call(_ws().select_result, image_id)
    return _state()


@app.delete("/api/results/<image_id>")
def api_delete_result(image_id: str):
    _runtime.call(_ws().delete_result, image_id)
    return _state()


@app.post("/api/videos/animate")
def api_animate():
    body = request.get_json(silent=True) or {}
    prompt = body.get("prompt") or ""
    ws = _ws()
    job_id = _start_job("video", lambda on_status: ws.animate(prompt, on_status))
    return jsonify({"job_id": job_id}), 202


@app.post("/api/videos/<video_id>/select")
def api_select_video(video_id: str):
    _runtime.call(_ws().select_video, video_id)
    return _state()


@app.delete("/api/videos/<video_id>")
def api_delete_video(video_id: str):
    _runtime.call(_ws().delete_video, video_id)
    return _state()


@app.post("/api/preview/<image_id>")
def api_open_preview(image_id: str):
    _runtime.call(_ws().open_preview, image_id)
    return _state()


@app.delete("/api/preview")
def api_close_preview():
    _runtime.call(_ws().close_preview)
    return _state()


# ---------------------------------------------------------------------------
# Routes — job progress
# ---------------------------------------------------------------------------

@app.get("/api/stream/<job_id>")
def api_stream(job_id: str):
    """Server-Sent Events stream for a background job."""
    q = _get_or_create_queue(job_id)

    def generate() -> Generator[str, None, None]:
        # Send a heartbeat first so the connection opens
        yield _sse_event({"type": "heartbeat", "job_id": job_id})
        try:
            while True:
                try:
                    event = q.get(timeout=25)
                except queue.Empty:
                    yield _sse_event({"type": "heartbeat"})
                    continue

                if event is None:
                    yield _sse_event({"type": "done"})
                    break

                yield _sse_event(event)
        finally:
            _cleanup_queue(job_id)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    print(f"\n  Product Scene Studio → http://localhost:{port}\n")
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
