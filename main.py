"""Control API: FastAPI routes over the stream orchestrator."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import logging
import os

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

import settings as settings_module
import stream_command
from store import Store, VideoAsset
from stream_command import StreamTarget
from stream_session import (
    AssetNotFound,
    SpawnFailure,
    StartError,
    StreamOrchestrator,
)


log = logging.getLogger(__name__)

# Shown when no stream configuration has been saved yet
_DEFAULT_CONFIG: dict[str, Any] = {
    "platform": "youtube",
    "stream_key": "",
    "rtmp_url": None,
    "resolution": "1920x1080",
    "framerate": 30,
    "bitrate": 2500,
    "audio_quality": 128,
}


def create_orchestrator(settings: dict[str, Any]) -> StreamOrchestrator:
    """Build the store and orchestrator from settings."""
    store = Store(settings["db_path"], settings["uploads_dir"])
    return StreamOrchestrator(store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    stream_command.init(settings_module.load_settings)
    orchestrator = create_orchestrator(settings_module.load_settings())
    app.state.orchestrator = orchestrator
    log.info("Stream control API ready (loop=%s)", orchestrator.loop_enabled)

    yield

    log.info("Shutting down, stopping encoders")
    await orchestrator.shutdown()


app = FastAPI(title="Stream Relay", lifespan=lifespan)


def get_orchestrator(request: Request) -> StreamOrchestrator:
    return request.app.state.orchestrator


# ===========================================================================
# Request Bodies
# ===========================================================================


class StartRequest(BaseModel):
    video_id: int | None = None


class SetCurrentRequest(BaseModel):
    video_id: int


class ReorderRequest(BaseModel):
    video_ids: list[int]


class RenameRequest(BaseModel):
    title: str


class StreamConfigRequest(BaseModel):
    platform: str = "youtube"
    stream_key: str = ""
    rtmp_url: str | None = None
    resolution: str = "1920x1080"
    framerate: int = 30
    bitrate: int = 2500
    audio_quality: int = 128


def _asset_dict(asset: VideoAsset) -> dict[str, Any]:
    return {
        "id": asset.id,
        "title": asset.title,
        "filename": asset.filename,
        "file_size": asset.file_size,
        "duration": asset.duration,
        "playlist_order": asset.playlist_order,
    }


def _mask_key(key: str) -> str:
    if len(key) <= 4:
        return "*" * len(key)
    return "*" * (len(key) - 4) + key[-4:]


def _start_error_status(e: StartError) -> int:
    # Bad input (missing video/file, bad target) vs. server-side failure
    return 500 if isinstance(e, SpawnFailure) else 400


# ===========================================================================
# Videos
# ===========================================================================


@app.get("/api/videos")
async def list_videos(orch: StreamOrchestrator = Depends(get_orchestrator)) -> list[dict[str, Any]]:
    return [_asset_dict(a) for a in orch.store.list_assets()]


@app.put("/api/videos/{video_id}")
async def rename_video(
    video_id: int,
    body: RenameRequest,
    orch: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    if not body.title.strip():
        raise HTTPException(400, "Title is required")
    asset = orch.store.rename_video(video_id, body.title.strip())
    if asset is None:
        raise HTTPException(404, "Video not found")
    return _asset_dict(asset)


@app.delete("/api/videos/{video_id}")
async def delete_video(
    video_id: int,
    orch: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, str]:
    if not orch.store.delete_video(video_id):
        raise HTTPException(404, "Video not found")
    return {"message": "Video deleted successfully"}


@app.post("/api/videos/reorder")
async def reorder_videos(
    body: ReorderRequest,
    orch: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, str]:
    orch.store.reorder(body.video_ids)
    return {"message": "Playlist reordered successfully"}


# ===========================================================================
# Stream Config / Status
# ===========================================================================


@app.get("/api/stream-config")
async def get_stream_config(orch: StreamOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    target = orch.store.get_active_target()
    if target is None:
        return dict(_DEFAULT_CONFIG)
    return {
        "platform": target.platform,
        "stream_key": _mask_key(target.stream_key),
        "rtmp_url": target.rtmp_url,
        "resolution": target.resolution,
        "framerate": target.framerate,
        "bitrate": target.bitrate,
        "audio_quality": target.audio_bitrate,
    }


@app.post("/api/stream-config")
async def save_stream_config(
    body: StreamConfigRequest,
    orch: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, str]:
    if body.framerate <= 0 or body.bitrate <= 0:
        raise HTTPException(400, "framerate and bitrate must be positive")
    orch.store.save_target(
        StreamTarget(
            platform=body.platform.lower(),
            stream_key=body.stream_key,
            rtmp_url=body.rtmp_url or None,
            resolution=body.resolution,
            framerate=body.framerate,
            bitrate=body.bitrate,
            audio_bitrate=body.audio_quality,
        )
    )
    return {"message": "Stream configuration saved"}


@app.get("/api/stream-status")
async def stream_status(orch: StreamOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return orch.query_status()


# ===========================================================================
# Stream Control
# ===========================================================================


@app.post("/api/stream/start")
async def start_stream(
    body: StartRequest | None = None,
    orch: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    video_id = body.video_id if body else None
    try:
        await orch.start(video_id)
    except StartError as e:
        raise HTTPException(_start_error_status(e), str(e)) from e
    return orch.query_status()


@app.post("/api/stream/stop")
async def stop_stream(orch: StreamOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    await orch.stop()
    orch.disable_loop()
    return orch.query_status()


@app.post("/api/stream/set-current")
async def set_current(
    body: SetCurrentRequest,
    orch: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    try:
        orch.set_current(body.video_id)
    except AssetNotFound as e:
        raise HTTPException(404, "Video not found") from e
    return orch.query_status()


@app.post("/api/stream/loop/enable")
async def enable_loop(orch: StreamOrchestrator = Depends(get_orchestrator)) -> dict[str, str]:
    orch.enable_loop()
    return {"message": "24x7 loop enabled"}


@app.post("/api/stream/loop/disable")
async def disable_loop(orch: StreamOrchestrator = Depends(get_orchestrator)) -> dict[str, str]:
    orch.disable_loop()
    return {"message": "24x7 loop disabled"}


@app.get("/api/stream/loop/status")
async def loop_status(orch: StreamOrchestrator = Depends(get_orchestrator)) -> dict[str, bool]:
    return {
        "loop_enabled": orch.store.read_status().loop_playlist,
        "rtmp_loop_enabled": orch.loop_enabled,
    }


@app.post("/api/stream/test")
async def test_encoder(orch: StreamOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    probe = await orch.probe_encoder_available()
    if probe.timed_out:
        raise HTTPException(408, "FFmpeg test timed out")
    if not probe.ok:
        raise HTTPException(400, f"FFmpeg is not available: {probe.error}")
    return {
        "message": f"FFmpeg {probe.version} is available and working",
        "version": probe.version,
        "success": True,
    }


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "5000")))


if __name__ == "__main__":
    main()
