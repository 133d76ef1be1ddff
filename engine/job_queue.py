import asyncio
import inspect
import logging

from db.models import (
    DOWNLOAD_CANCELLED,
    DOWNLOAD_DOWNLOADING,
    DOWNLOAD_FAILED,
    DOWNLOAD_PAUSED,
    DOWNLOAD_QUEUED,
)
from db.vods import VodStore
from download.worker import AcquisitionWorker, download_key
from engine.config import Settings
from engine.errors import (
    CancelledError,
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
    RETRYABLE_ERRORS,
)
from engine.events import EventBroadcaster
from engine.json_utils import safe_json_dumps
from engine.supervisor import ProcessRegistry
from media.repair import RepairWorker

logger = logging.getLogger(__name__)

STOPPABLE_STATUSES = (
    DOWNLOAD_DOWNLOADING,
    DOWNLOAD_PAUSED,
    DOWNLOAD_QUEUED,
    DOWNLOAD_FAILED,
    DOWNLOAD_CANCELLED,
)
RETRYABLE_STATUSES = (DOWNLOAD_FAILED, DOWNLOAD_CANCELLED)


def _log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logging.log(level, safe_json_dumps(payload, sort_keys=True))
    except Exception as exc:
        logging.log(level, f"log_event_serialization_failed: {exc} message={message}")


def is_retryable_error(exc):
    return isinstance(exc, RETRYABLE_ERRORS)


def _result(message, **extra):
    return {"success": True, "message": message, **extra}


class DownloadQueue:
    """Single-flight download loop plus the control operations around it.

    At most one VOD is ``downloading`` at a time. Concurrent triggers collapse
    into the running loop, which keeps selecting candidates until none is
    left. After a successful download the repair step and the playlist
    rebuild are chained when enabled in ``Settings``.
    """

    def __init__(
        self,
        store: VodStore,
        acquisition: AcquisitionWorker,
        events: EventBroadcaster,
        settings: Settings,
        registry: ProcessRegistry,
        *,
        repair: RepairWorker | None = None,
        playlist=None,
        on_playlist_rebuilt=None,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.acquisition = acquisition
        self.repair = repair
        self.playlist = playlist
        self.events = events
        self.settings = settings
        self.registry = registry
        self.on_playlist_rebuilt = on_playlist_rebuilt
        self._sleep = sleep
        self._is_processing = False
        self._current_download = None
        self._paused_this_run = set()
        self._repairing = set()
        self._task = None
        self._stopping = False

    @property
    def is_processing(self):
        return self._is_processing

    @property
    def current_download(self):
        return self._current_download

    # Loop

    def trigger(self):
        """Start the loop unless it is already running. Returns True when started."""
        if self._is_processing or self._stopping:
            return False
        self._is_processing = True
        self._task = asyncio.create_task(self._process_queue(), name="download-queue")
        return True

    async def wait_idle(self):
        task = self._task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def _process_queue(self):
        _log_event(logging.INFO, "queue_loop_started")
        self._publish_status()
        try:
            while not self._stopping:
                vod = self.store.select_next_candidate(
                    self.settings.max_retries,
                    exclude=self._paused_this_run,
                )
                if vod is None:
                    break
                if not await self._run_one(vod):
                    break
        except Exception:
            logger.exception("Download queue loop crashed")
        finally:
            self._is_processing = False
            self._current_download = None
            self._paused_this_run.clear()
            _log_event(logging.INFO, "queue_loop_finished")
            self._publish_status()

    async def _run_one(self, vod):
        """Download one VOD. Returns False when the loop must stop."""
        vod_id = vod.id
        self._current_download = vod_id
        self.store.mark_downloading(vod_id)
        _log_event(
            logging.INFO,
            "download_claimed",
            vod_id=vod_id,
            previous_status=vod.download_status,
            retry_count=vod.retry_count,
        )
        self._publish_status()

        downloaded = False
        try:
            await self.acquisition.download(vod_id)
            downloaded = True
        except CancelledError as exc:
            current = self.store.get(vod_id)
            if current is not None and current.download_status == DOWNLOAD_DOWNLOADING:
                # Terminated without a pause or stop claiming the record.
                self.store.record_download_failure(
                    vod_id,
                    error_message=str(exc),
                    max_retries=self.settings.max_retries,
                )
            _log_event(logging.INFO, "download_terminated", vod_id=vod_id)
        except NotFoundError:
            _log_event(logging.WARNING, "download_vanished", vod_id=vod_id)
        except ConfigurationError as exc:
            self.store.record_download_failure(
                vod_id,
                error_message=str(exc),
                max_retries=self.settings.max_retries,
                exhaust=True,
            )
            _log_event(logging.ERROR, "download_configuration_error", vod_id=vod_id, error=str(exc))
            return False
        except Exception as exc:
            status = self.store.record_download_failure(
                vod_id,
                error_message=str(exc),
                max_retries=self.settings.max_retries,
            )
            will_retry = status == DOWNLOAD_QUEUED
            _log_event(
                logging.WARNING if will_retry else logging.ERROR,
                "download_failed",
                vod_id=vod_id,
                error=str(exc),
                retryable=is_retryable_error(exc),
                will_retry=will_retry,
            )
            self._publish_status()
            if will_retry:
                await self._sleep(self.settings.retry_delay_seconds)
        finally:
            self.registry.discard_pending_kill(download_key(vod_id))
            if self._current_download == vod_id:
                self._current_download = None

        if downloaded:
            self.store.reset_retry_count(vod_id)
            _log_event(logging.INFO, "download_completed", vod_id=vod_id)
            self._publish_status()
            if self.settings.auto_process:
                await self._repair_and_publish(vod_id)
        return True

    async def _repair_and_publish(self, vod_id):
        if self.repair is None:
            return
        try:
            await self.run_repair(vod_id)
        except Exception as exc:
            _log_event(logging.ERROR, "auto_process_failed", vod_id=vod_id, error=str(exc))

    async def run_repair(self, vod_id):
        """Repair one VOD, then rebuild the playlist when enabled."""
        if self.repair is None:
            raise ConfigurationError("repair is not configured")
        if vod_id in self._repairing:
            raise InvalidStateError(f"VOD {vod_id} is already being processed")
        self._repairing.add(vod_id)
        try:
            path = await self.repair.process(vod_id)
        finally:
            self._repairing.discard(vod_id)
        if self.settings.auto_playlist and self.playlist is not None:
            try:
                self.playlist.rebuild()
                await self._notify_playlist_rebuilt()
            except Exception as exc:
                _log_event(logging.ERROR, "auto_playlist_failed", vod_id=vod_id, error=str(exc))
        return path

    async def _notify_playlist_rebuilt(self):
        if self.on_playlist_rebuilt is None:
            return
        outcome = self.on_playlist_rebuilt()
        if inspect.isawaitable(outcome):
            await outcome

    # Control operations

    def _require(self, vod_id):
        vod = self.store.get(vod_id)
        if vod is None:
            raise NotFoundError(f"VOD {vod_id} not found")
        return vod

    def enqueue(self, vod_id):
        vod = self._require(vod_id)
        if vod.is_downloaded:
            return _result("VOD already downloaded")
        if vod.download_status == DOWNLOAD_DOWNLOADING:
            return _result("VOD is already downloading")
        reset = vod.download_status in RETRYABLE_STATUSES
        self.store.mark_queued(vod_id, reset_retries=reset)
        self._paused_this_run.discard(vod_id)
        self.events.publish("vod_queued", vodId=vod_id, title=vod.title)
        _log_event(logging.INFO, "vod_queued", vod_id=vod_id, reset_retries=reset)
        self.trigger()
        self._publish_status()
        return _result("VOD added to download queue")

    def retry(self, vod_id):
        vod = self._require(vod_id)
        if vod.download_status not in RETRYABLE_STATUSES:
            raise InvalidStateError(f"VOD {vod_id} is {vod.download_status}, only failed or cancelled VODs can be retried")
        self.store.mark_queued(vod_id, reset_retries=True)
        self._paused_this_run.discard(vod_id)
        self.events.publish("vod_retry", vodId=vod_id, title=vod.title)
        _log_event(logging.INFO, "vod_retry", vod_id=vod_id)
        self.trigger()
        self._publish_status()
        return _result("VOD queued for retry")

    async def pause(self, vod_id):
        vod = self._require(vod_id)
        if vod.download_status != DOWNLOAD_DOWNLOADING or self._current_download != vod_id:
            raise InvalidStateError(f"VOD {vod_id} is not the active download")
        self.store.mark_paused(vod_id)
        self._paused_this_run.add(vod_id)
        self._current_download = None
        handle = self.registry.kill(download_key(vod_id), expected=True)
        if handle is not None:
            await handle.wait()
        self.events.publish("download_paused", vodId=vod_id, title=vod.title)
        _log_event(logging.INFO, "download_paused", vod_id=vod_id)
        self._publish_status()
        return _result("Download paused")

    def resume(self, vod_id):
        vod = self._require(vod_id)
        if vod.download_status != DOWNLOAD_PAUSED:
            raise InvalidStateError(f"VOD {vod_id} is not paused")
        self.store.mark_queued(vod_id)
        self._paused_this_run.discard(vod_id)
        self.events.publish("vod_queued", vodId=vod_id, title=vod.title)
        _log_event(logging.INFO, "download_resumed", vod_id=vod_id)
        self.trigger()
        self._publish_status()
        return _result("Download resumed")

    async def stop(self, vod_id):
        vod = self._require(vod_id)
        if vod.download_status not in STOPPABLE_STATUSES:
            raise InvalidStateError(f"VOD {vod_id} is {vod.download_status} and cannot be cancelled")
        was_active = vod.download_status == DOWNLOAD_DOWNLOADING
        self.store.mark_cancelled(vod_id)
        self._paused_this_run.discard(vod_id)
        if self._current_download == vod_id:
            self._current_download = None
        handle = self.registry.kill(download_key(vod_id), expected=was_active)
        if handle is not None:
            await handle.wait()
        self.events.publish("download_cancelled", vodId=vod_id, title=vod.title)
        _log_event(logging.INFO, "download_cancelled", vod_id=vod_id, was_active=was_active)
        self._publish_status()
        return _result("Download cancelled")

    def restart_queue(self):
        started = self.trigger()
        if started:
            return _result("Download queue processing started")
        return _result("Download queue is already running")

    async def process_now(self, vod_id):
        self._require(vod_id)
        path = await self.run_repair(vod_id)
        return _result("VOD processed", filePath=path)

    def recover_interrupted(self):
        downloads, processing = self.store.recover_interrupted(self.settings.max_retries)
        if downloads or processing:
            _log_event(
                logging.WARNING,
                "recovered_interrupted_work",
                downloads=downloads,
                processing=processing,
            )
        return downloads, processing

    def get_status(self):
        counts = self.store.count_by_download_status()
        return {
            "queued": counts.get(DOWNLOAD_QUEUED, 0),
            "downloading": counts.get(DOWNLOAD_DOWNLOADING, 0),
            "paused": counts.get(DOWNLOAD_PAUSED, 0),
            "failed": counts.get(DOWNLOAD_FAILED, 0),
            "currentDownload": self._current_download,
            "isProcessing": self._is_processing,
        }

    def _publish_status(self):
        self.events.publish("queue_status_update", **self.get_status())

    async def shutdown(self):
        """Stop selecting work and terminate the active download, if any."""
        self._stopping = True
        for key in self.registry.active_keys():
            if key.startswith(("download:", "process:")):
                handle = self.registry.kill(key)
                if handle is not None:
                    await handle.wait()
        task = self._task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=10)
            except asyncio.TimeoutError:
                task.cancel()
