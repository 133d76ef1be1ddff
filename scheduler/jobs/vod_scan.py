"""Scheduler job that registers newly published VODs from the catalog."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from catalog.twitch import TwitchClient
from db.connection import utc_now
from db.models import DOWNLOAD_PENDING, DOWNLOAD_QUEUED
from db.stream_state import StreamStateStore
from db.vods import VodStore
from engine.config import Settings
from engine.errors import CatalogError, ConfigurationError, InvalidStateError
from engine.events import EventBroadcaster

logger = logging.getLogger(__name__)

SCAN_JOB_ID = "vod_scan"
INITIAL_SCAN_JOB_ID = "vod_scan_initial"


class VodScanner:
    def __init__(
        self,
        client: TwitchClient,
        vods: VodStore,
        state: StreamStateStore,
        events: EventBroadcaster,
        settings: Settings,
        *,
        queue=None,
    ) -> None:
        self.client = client
        self.vods = vods
        self.state = state
        self.events = events
        self.settings = settings
        self.queue = queue
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def _resolve_channel_id(self) -> str:
        if self.settings.twitch_channel_id:
            return self.settings.twitch_channel_id
        login = self.settings.twitch_channel_login
        if not login:
            raise ConfigurationError("TWITCH_CHANNEL_ID or TWITCH_RERUN_CHANNEL must be set")
        channel_id = await asyncio.to_thread(self.client.get_channel_id, login)
        if not channel_id:
            raise CatalogError(f"Twitch channel {login} not found")
        return channel_id

    async def scan(self) -> dict:
        """List recent VODs and insert the unseen ones. Overlapping scans are refused."""
        if self._running:
            raise InvalidStateError("A scan is already running")
        self._running = True
        self.events.publish("scan_start")
        try:
            channel_id = await self._resolve_channel_id()
            videos = await asyncio.to_thread(
                self.client.list_recent_videos,
                channel_id,
                self.settings.scan_days_back,
            )
            status = DOWNLOAD_QUEUED if self.settings.auto_queue_new_vods else DOWNLOAD_PENDING
            added = []
            for video in videos:
                if self.vods.exists(video.id):
                    continue
                mutes = video.muted_segments
                if not mutes:
                    mutes = await asyncio.to_thread(self.client.get_muted_segments, video.id)
                inserted = self.vods.insert_vod(
                    vod_id=video.id,
                    title=video.title,
                    url=video.url,
                    duration_seconds=video.duration_seconds,
                    created_at=video.created_at,
                    muted_segments=mutes,
                    download_status=status,
                )
                if inserted:
                    added.append(video.id)
                    if status == DOWNLOAD_QUEUED:
                        self.events.publish("vod_queued", vodId=video.id, title=video.title)
            self.state.update(last_scan_at=utc_now())
        except Exception as exc:
            logger.exception("VOD scan failed")
            self.events.publish("scan_error", error=str(exc))
            raise
        finally:
            self._running = False

        logger.info("VOD scan complete: %d found, %d new", len(videos), len(added))
        self.events.publish("scan_complete", totalVods=len(videos), newVods=len(added), vodIds=added)
        if added and status == DOWNLOAD_QUEUED and self.queue is not None:
            self.queue.trigger()
        return {"success": True, "message": f"Found {len(added)} new VOD(s)", "found": len(videos), "added": added}

    async def run_scheduled(self) -> None:
        """Scheduler entry point; failures are logged, never raised into APScheduler."""
        try:
            await self.scan()
        except InvalidStateError:
            logger.info("Skipping scheduled scan; a scan is already running")
        except Exception:
            logger.debug("Scheduled scan failed", exc_info=True)


def build_scan_scheduler(scanner: VodScanner, schedule: str, *, initial_delay: float | None = None) -> AsyncIOScheduler:
    """Cron-scheduled scans plus an optional one-off run shortly after startup."""
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        scanner.run_scheduled,
        trigger=CronTrigger.from_crontab(schedule, timezone="UTC"),
        id=SCAN_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    if initial_delay is not None:
        scheduler.add_job(
            scanner.run_scheduled,
            trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=initial_delay)),
            id=INITIAL_SCAN_JOB_ID,
            replace_existing=True,
        )
    return scheduler
