import asyncio
from datetime import datetime
from typing import List, Optional, Tuple
import httpx
from canvas_zoom_archiver.auth.acquirer import AuthSessionAcquirer
from canvas_zoom_archiver.browser.driver import BrowserDriver
from canvas_zoom_archiver.clients.zoom_client import RecordingApiClient
from canvas_zoom_archiver.config.logging import get_logger
from canvas_zoom_archiver.config.settings import Settings, settings as default_settings
from canvas_zoom_archiver.database.session_store import SessionStore
from canvas_zoom_archiver.exceptions import ArchiverException, DecodeFailure, SessionExpired, TransferFailure
from canvas_zoom_archiver.media.downloader import MediaDownloader
from canvas_zoom_archiver.models.recording import RecordingFile, RecordingSummary
from canvas_zoom_archiver.services.capture_pipeline import (
    CaptureAndDownloadPipeline,
    ItemOutcome,
    PipelineSummary,
    course_download_dir,
    download_headers,
    plan_destinations,
)

logger = get_logger("services.zoom_flow")

SINCE_FORMAT = "%Y-%m-%d"
START_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def filter_since(meetings: List[RecordingSummary], since: Optional[str]) -> List[RecordingSummary]:
    """Keep meetings starting on or after ``since``; unparseable start times are kept."""
    if not since:
        return list(meetings)
    target = datetime.strptime(since, SINCE_FORMAT).date()
    kept = []
    for meeting in meetings:
        try:
            started = datetime.strptime(meeting.start_time or "", START_TIME_FORMAT).date()
        except ValueError:
            kept.append(meeting)
            continue
        if started >= target:
            kept.append(meeting)
    return kept


class ZoomFlowService:
    """Course-level operations over the recording provider."""

    def __init__(self,
                 store: SessionStore,
                 settings: Optional[Settings] = None,
                 acquirer: Optional[AuthSessionAcquirer] = None,
                 downloader: Optional[MediaDownloader] = None,
                 api_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.store = store
        self.settings = settings or default_settings
        self.acquirer = acquirer or AuthSessionAcquirer(store, self.settings)
        self.downloader = downloader or MediaDownloader(
            ffmpeg_path=self.settings.ffmpeg_path,
            timeout=self.settings.http_timeout_seconds,
        )
        self._api_transport = api_transport

    def api_client(self, course_id: int) -> RecordingApiClient:
        return RecordingApiClient(self.store, course_id, self.settings, transport=self._api_transport)

    async def sniff(self, course_id: int) -> int:
        """Capture a session, then try an initial listing. Returns the number of meetings cached."""
        await self.acquirer.acquire(course_id)
        try:
            meetings = await self.api_client(course_id).list_recordings()
        except (SessionExpired, DecodeFailure, TransferFailure) as e:
            logger.warning("Initial listing after session capture failed", course_id=course_id, error=str(e))
            return 0
        await self.store.save_listing(course_id, meetings)
        return len(meetings)

    async def list_meetings(self, course_id: int, since: Optional[str] = None) -> Tuple[List[RecordingSummary], bool]:
        """Live listing, falling back to the cached one when the session has expired.

        Returns the meetings and whether they came from the cache.
        """
        try:
            meetings = await self.api_client(course_id).list_recordings(since)
        except SessionExpired as e:
            cached = filter_since(await self.store.load_cached_listing(course_id), since)
            if not cached:
                raise
            logger.warning("Session expired, using cached listing",
                           course_id=course_id, cached=len(cached), error=e.message)
            return cached, True

        await self.store.save_listing(course_id, meetings)
        return meetings, False

    async def fetch_urls(self, course_id: int) -> int:
        """Fetch and store the playable files of every cached (or freshly listed) meeting."""
        client = self.api_client(course_id)
        meetings = await self.store.load_cached_listing(course_id)
        if not meetings:
            meetings = await client.list_recordings()
            await self.store.save_listing(course_id, meetings)

        stored = 0
        for meeting in meetings:
            files = await client.fetch_files(meeting)
            if not files:
                logger.info("Meeting has no playable files", meeting_id=meeting.meeting_id)
                continue
            await self.store.save_files(course_id, meeting.meeting_id, files)
            stored += len(files)
        logger.info("Recording files stored", course_id=course_id, meetings=len(meetings), files=stored)
        return stored

    async def download_cached(self, course_id: int, concurrency: int = 1) -> PipelineSummary:
        """Download from stored replay assets without a browser, ``concurrency`` files at a time."""
        files = await self.store.load_files(course_id)
        assets = await self.store.load_replay_assets(course_id)
        cookies = await self.store.load_valid_cookies()
        semaphore = asyncio.Semaphore(max(1, concurrency))
        planned = plan_destinations(files, course_download_dir(self.settings, course_id))

        async def worker(recording: RecordingFile, dest) -> ItemOutcome:
            def outcome(status: str, reason: str = "") -> ItemOutcome:
                return ItemOutcome(recording.meeting_id, recording.play_url, status, reason, dest)

            if dest.exists():
                return outcome("skipped", "already downloaded")
            asset = assets.get(recording.play_url)
            if asset is None:
                return outcome("skipped", "no stored replay asset")

            async with semaphore:
                try:
                    result = await self.downloader.download(download_headers(asset, cookies), asset.download_url, dest)
                except ArchiverException as e:
                    return outcome("failed", f"{type(e).__name__}: {e.message}")
                except OSError as e:
                    return outcome("failed", f"filesystem error: {e}")
            return outcome("processed", f"via {result.strategy}")

        logger.info("Downloading from cached assets", course_id=course_id, files=len(planned),
                    assets=len(assets), concurrency=concurrency)
        outcomes = await asyncio.gather(*(worker(recording, dest) for recording, dest in planned))

        summary = PipelineSummary()
        for item in outcomes:
            summary.record(item)
        return summary

    async def _reacquire_on_expiry(self, course_id: int, driver: BrowserDriver, call, *args):
        try:
            return await call(*args)
        except SessionExpired as e:
            logger.info("Session expired mid-run, re-acquiring", course_id=course_id, error=e.message)
            await self.acquirer.acquire(course_id, driver)
            return await call(*args)

    async def run(self, course_id: int, concurrency: int = 1, since: Optional[str] = None) -> PipelineSummary:
        """Validate or acquire a session, list, fetch files, then capture and download each one.

        Per-recording failures end up in the returned summary. Authentication,
        storage and decode failures propagate.
        """
        client = self.api_client(course_id)
        session_valid = await client.validate()

        driver = self.acquirer.new_driver()
        await driver.launch()
        try:
            if session_valid:
                await driver.add_cookies(await self.store.load_valid_cookies())
            else:
                await self.acquirer.acquire(course_id, driver)

            meetings = await self._reacquire_on_expiry(course_id, driver, client.list_recordings, since)
            await self.store.save_listing(course_id, meetings)
            logger.info("Meetings listed", course_id=course_id, meetings=len(meetings))

            files: List[RecordingFile] = []
            for meeting in meetings:
                meeting_files = await self._reacquire_on_expiry(course_id, driver, client.fetch_files, meeting)
                if not meeting_files:
                    logger.info("Meeting has no playable files", meeting_id=meeting.meeting_id)
                    continue
                await self.store.save_files(course_id, meeting.meeting_id, meeting_files)
                files.extend(meeting_files)

            if concurrency > 1:
                logger.info("Browser capture runs one recording at a time; concurrency applies to cached downloads",
                            requested=concurrency)

            pipeline = CaptureAndDownloadPipeline(driver, self.store, self.downloader, course_id, self.settings)
            return await pipeline.run(files)
        finally:
            await driver.close()


async def run_zoom_flow(course_id: int,
                        concurrency: int = 1,
                        since: Optional[str] = None,
                        store: Optional[SessionStore] = None,
                        settings: Optional[Settings] = None) -> PipelineSummary:
    """Entry point for a full course run against the recording provider."""
    own_store = store is None
    store = store or SessionStore()
    try:
        await store.initialize()
        return await ZoomFlowService(store, settings).run(course_id, concurrency, since)
    finally:
        if own_store:
            await store.dispose()
