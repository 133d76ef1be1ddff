#!/usr/bin/env python3
import sys


def _require_python_311():
    if sys.version_info[:2] < (3, 11):
        found = sys.version.split()[0]
        raise SystemExit(
            f"ERROR: rerunr requires Python 3.11 or newer; found Python {found} "
            f"(executable: {sys.executable})"
        )


_require_python_311()

import asyncio
import inspect
import logging
import os
from dataclasses import dataclass

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from catalog.twitch import TwitchClient
from config.settings import INITIAL_SCAN_DELAY_SECONDS
from db.connection import init_db
from db.models import DOWNLOAD_COMPLETED, PROCESS_COMPLETED
from db.playlist import PlaylistStore
from db.stream_state import StreamStateStore
from db.vods import VodStore
from download.worker import AcquisitionWorker
from engine.config import Settings, build_settings, load_config_if_present, validate_config
from engine.errors import (
    CapacityExceededError,
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
    RerunError,
)
from engine.events import EventBroadcaster
from engine.job_queue import DownloadQueue
from engine.json_utils import safe_json_dumps
from engine.paths import EnginePaths, build_engine_paths, ensure_dir
from engine.runtime import get_runtime_info
from engine.stream_manager import StreamManager
from engine.supervisor import Supervisor
from media.repair import RepairWorker, sweep_stale_segments
from playlist.builder import PlaylistBuilder
from scheduler.jobs.vod_scan import VodScanner, build_scan_scheduler

EVENT_KEEPALIVE_SECONDS = 15.0

app = FastAPI()


@dataclass
class Services:
    settings: Settings
    paths: EnginePaths
    events: EventBroadcaster
    supervisor: Supervisor
    vods: VodStore
    stream_state: StreamStateStore
    playlist_store: PlaylistStore
    playlist: PlaylistBuilder
    queue: DownloadQueue
    stream: StreamManager
    scanner: VodScanner


class StartStreamRequest(BaseModel):
    resume: bool = False
    from_vod_id: str | None = None
    from_index: int | None = None


def build_services(settings: Settings, paths: EnginePaths) -> Services:
    """Wire the stores, workers and managers around one event broadcaster."""
    events = EventBroadcaster()
    supervisor = Supervisor()
    vods = VodStore(paths.db_path)
    stream_state = StreamStateStore(paths.db_path)
    playlist_store = PlaylistStore(paths.db_path)
    playlist = PlaylistBuilder(
        vods,
        playlist_store,
        stream_state,
        events,
        settings.playlist_capacity_seconds,
    )
    stream = StreamManager(stream_state, playlist_store, vods, supervisor, events, settings)
    queue = DownloadQueue(
        vods,
        AcquisitionWorker(vods, supervisor, events, settings, paths.vod_dir),
        events,
        settings,
        supervisor.registry,
        repair=RepairWorker(vods, supervisor, events, settings, paths.processed_dir),
        playlist=playlist,
        on_playlist_rebuilt=stream.reload_if_streaming,
    )
    scanner = VodScanner(
        TwitchClient(client_id=settings.twitch_client_id, client_secret=settings.twitch_client_secret),
        vods,
        stream_state,
        events,
        settings,
        queue=queue,
    )
    return Services(
        settings=settings,
        paths=paths,
        events=events,
        supervisor=supervisor,
        vods=vods,
        stream_state=stream_state,
        playlist_store=playlist_store,
        playlist=playlist,
        queue=queue,
        stream=stream,
        scanner=scanner,
    )


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "rerunr.log")
    root.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    has_file = False
    has_console = False
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                has_file = True
        elif isinstance(handler, logging.StreamHandler):
            has_console = True
    if not has_file:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.INFO)
        root.addHandler(file_handler)
    if not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)


def _load_settings(config_path):
    config = load_config_if_present(config_path)
    errors = validate_config(config)
    if errors:
        for error in errors:
            logging.error("Invalid config %s: %s", config_path, error)
        logging.warning("Ignoring invalid config file; using defaults")
        config = {}
    return build_settings(config)


def _scan_configured(settings: Settings) -> bool:
    return bool(
        settings.twitch_client_id
        and settings.twitch_client_secret
        and (settings.twitch_channel_id or settings.twitch_channel_login)
    )


def _services() -> Services:
    return app.state.services


@app.on_event("startup")
async def startup():
    try:
        paths = build_engine_paths(os.environ.get("RERUNR_CONFIG"))
    except ValueError as exc:
        logging.error("Invalid RERUNR_CONFIG: %s", exc)
        paths = build_engine_paths()
    _setup_logging(paths.log_dir)
    settings = _load_settings(paths.config_path)

    init_db(paths.db_path)
    services = build_services(settings, paths)
    app.state.services = services
    app.state.scheduler = None

    downloads, processing = services.queue.recover_interrupted()
    logging.info("Startup recovery: %d download(s) requeued/failed, %d repair(s) failed", downloads, processing)
    sweep_stale_segments(paths.processed_dir)
    services.playlist.cleanup()
    services.stream.reset_stuck_state()

    if _scan_configured(settings):
        scheduler = build_scan_scheduler(
            services.scanner,
            settings.scan_schedule,
            initial_delay=INITIAL_SCAN_DELAY_SECONDS,
        )
        scheduler.start()
        app.state.scheduler = scheduler
        logging.info("Catalog scan scheduled: %s", settings.scan_schedule)
    else:
        logging.info("Catalog scan disabled; Twitch credentials or channel not configured")

    services.queue.trigger()


@app.on_event("shutdown")
async def shutdown():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler:
        scheduler.shutdown(wait=False)
    services = getattr(app.state, "services", None)
    if services is None:
        return
    await services.stream.shutdown()
    await services.queue.shutdown()


def _status_code_for(exc):
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (InvalidStateError, CapacityExceededError)):
        return 409
    if isinstance(exc, ConfigurationError):
        return 503
    return 500


async def _call(endpoint, operation, *args, vod_id=None):
    """Run a control operation and translate lifecycle errors to HTTP errors."""
    try:
        result = operation(*args)
        if inspect.isawaitable(result):
            result = await result
        return result
    except RerunError as exc:
        status_code = _status_code_for(exc)
        if status_code >= 500:
            logging.error("%s failed: %s", endpoint, exc)
        _services().events.publish("api_error", endpoint=endpoint, error=str(exc), vodId=vod_id)
        raise HTTPException(status_code=status_code, detail=str(exc)) from exc
    except HTTPException:
        raise
    except Exception as exc:
        logging.exception("%s failed", endpoint)
        _services().events.publish("api_error", endpoint=endpoint, error=str(exc), vodId=vod_id)
        raise HTTPException(status_code=500, detail=str(exc)) from exc


# Status and catalog


@app.get("/api/status")
async def get_status():
    services = _services()
    state = services.stream_state.get()
    vods = services.vods.list_vods()
    return {
        "isStreaming": state.is_streaming,
        "currentVodId": state.current_vod_id,
        "lastScan": state.last_scan_at,
        "playlistUpdated": state.playlist_updated_at,
        "scanRunning": services.scanner.running,
        "stats": {
            "totalVods": len(vods),
            "downloadedVods": sum(1 for vod in vods if vod.download_status == DOWNLOAD_COMPLETED),
            "processedVods": sum(1 for vod in vods if vod.process_status == PROCESS_COMPLETED),
            "playlistCount": len(services.playlist_store.list_entries()),
        },
    }


@app.get("/api/version")
async def get_version():
    return get_runtime_info(_services().settings)


@app.post("/api/status/scan")
async def trigger_scan(clear_history: bool = Query(False)):
    services = _services()
    if clear_history:
        await _call("/api/status/scan", _clear_history)
    return await _call("/api/status/scan", services.scanner.scan)


def _clear_history():
    services = _services()
    if services.stream.is_streaming:
        raise InvalidStateError("Stop the stream before clearing history")
    deleted = services.vods.delete_inactive()
    services.playlist.after_external_change()
    logging.info("Cleared %d VOD record(s) from history", len(deleted))
    return {"success": True, "message": f"Cleared {len(deleted)} VOD(s)", "deleted": deleted}


@app.delete("/api/vods/history")
async def clear_history():
    return await _call("/api/vods/history", _clear_history)


@app.get("/api/vods")
async def list_vods():
    return [vod.to_dict() for vod in _services().vods.list_vods()]


@app.get("/api/vods/{vod_id}")
async def get_vod(vod_id: str):
    vod = _services().vods.get(vod_id)
    if vod is None:
        raise HTTPException(status_code=404, detail="VOD not found")
    return vod.to_dict()


# Download queue


@app.get("/api/queue")
async def get_queue_status():
    return _services().queue.get_status()


@app.post("/api/queue/restart")
async def restart_queue():
    return await _call("/api/queue/restart", _services().queue.restart_queue)


@app.post("/api/vods/{vod_id}/download")
async def enqueue_download(vod_id: str):
    return await _call("/api/vods/download", _services().queue.enqueue, vod_id, vod_id=vod_id)


@app.post("/api/vods/{vod_id}/retry")
async def retry_download(vod_id: str):
    return await _call("/api/vods/retry", _services().queue.retry, vod_id, vod_id=vod_id)


@app.post("/api/vods/{vod_id}/pause")
async def pause_download(vod_id: str):
    return await _call("/api/vods/pause", _services().queue.pause, vod_id, vod_id=vod_id)


@app.post("/api/vods/{vod_id}/resume")
async def resume_download(vod_id: str):
    return await _call("/api/vods/resume", _services().queue.resume, vod_id, vod_id=vod_id)


@app.post("/api/vods/{vod_id}/cancel")
async def cancel_download(vod_id: str):
    return await _call("/api/vods/cancel", _services().queue.stop, vod_id, vod_id=vod_id)


@app.post("/api/vods/{vod_id}/process")
async def process_vod(vod_id: str):
    return await _call("/api/vods/process", _services().queue.process_now, vod_id, vod_id=vod_id)


# Stream


@app.get("/api/stream/status")
async def get_stream_status():
    return _services().stream.get_status()


@app.post("/api/stream/start")
async def start_stream(request: StartStreamRequest | None = None):
    request = request or StartStreamRequest()
    stream = _services().stream
    return await _call(
        "/api/stream/start",
        lambda: stream.start(
            resume=request.resume,
            from_vod_id=request.from_vod_id,
            from_index=request.from_index,
        ),
        vod_id=request.from_vod_id,
    )


@app.post("/api/stream/stop")
async def stop_stream():
    return await _call("/api/stream/stop", _services().stream.stop)


@app.post("/api/stream/skip-next")
async def skip_next():
    return await _call("/api/stream/skip-next", _services().stream.skip_to_next)


@app.post("/api/stream/skip-to/{vod_id}")
async def skip_to(vod_id: str):
    return await _call("/api/stream/skip-to", _services().stream.skip_to_id, vod_id, vod_id=vod_id)


@app.post("/api/stream/reload-playlist")
async def reload_playlist():
    return await _call("/api/stream/reload-playlist", _services().stream.reload_playlist)


# Playlist


@app.get("/api/stream/playlist")
async def get_playlist():
    return _services().playlist.get_playlist()


@app.post("/api/stream/playlist/update")
async def rebuild_playlist():
    services = _services()
    result = await _call("/api/stream/playlist/update", services.playlist.rebuild)
    if services.stream.is_streaming:
        await _call("/api/stream/playlist/update", services.stream.reload_playlist)
    return result


@app.post("/api/stream/playlist/{vod_id}/add")
async def add_to_playlist(vod_id: str):
    return await _call("/api/stream/playlist/add", _services().playlist.add, vod_id, vod_id=vod_id)


@app.post("/api/stream/playlist/{vod_id}/remove")
async def remove_from_playlist(vod_id: str):
    services = _services()
    result = await _call("/api/stream/playlist/remove", services.playlist.remove, vod_id, vod_id=vod_id)
    if services.stream.is_streaming:
        await _call("/api/stream/playlist/remove", services.stream.reload_playlist, vod_id=vod_id)
    return result


@app.get("/api/stream/playlist/{vod_id}/check")
async def check_in_playlist(vod_id: str):
    return {"inPlaylist": _services().playlist.contains(vod_id)}


# Notifications


@app.get("/api/events")
async def stream_events(request: Request):
    broadcaster = _services().events
    subscription = broadcaster.subscribe()

    async def _iter_events():
        try:
            yield ": connected\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(subscription.get(), timeout=EVENT_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: {event['type']}\ndata: {safe_json_dumps(event)}\n\n"
        finally:
            broadcaster.unsubscribe(subscription)

    return StreamingResponse(
        _iter_events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=os.environ.get("RERUNR_HOST", "0.0.0.0"),
        port=int(os.environ.get("RERUNR_PORT", "8090")),
    )
