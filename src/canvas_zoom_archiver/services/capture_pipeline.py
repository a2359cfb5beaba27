import asyncio
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlsplit
from canvas_zoom_archiver.auth import extractors
from canvas_zoom_archiver.auth.sso import SsoNavigator
from canvas_zoom_archiver.browser.driver import BrowserDriver, NetworkRequest
from canvas_zoom_archiver.config.logging import get_logger
from canvas_zoom_archiver.config.settings import Settings, settings as default_settings
from canvas_zoom_archiver.database.session_store import SessionStore
from canvas_zoom_archiver.exceptions import ArchiverException, CaptureTimeout, StorageError
from canvas_zoom_archiver.media.downloader import MediaDownloader
from canvas_zoom_archiver.models.recording import RecordingFile, ReplayAsset, cookie_header
from canvas_zoom_archiver.utils.fsutil import sanitize_component

logger = get_logger("services.capture")

PROVIDER_DIR = "Zoom"


@dataclass
class ItemOutcome:
    meeting_id: str
    play_url: str
    status: str
    reason: str = ""
    dest: Optional[Path] = None


@dataclass
class PipelineSummary:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    items: List[ItemOutcome] = field(default_factory=list)

    def record(self, outcome: ItemOutcome) -> None:
        self.items.append(outcome)
        if outcome.status == "processed":
            self.processed += 1
        elif outcome.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def describe(self) -> str:
        return f"{self.processed} processed, {self.skipped} skipped, {self.failed} failed"


def course_download_dir(settings: Settings, course_id: int) -> Path:
    return settings.download_path / PROVIDER_DIR / str(course_id)


def plan_destinations(files: List[RecordingFile], root: Path) -> List[Tuple[RecordingFile, Path]]:
    """Pair each recording file with its output path.

    Meetings with several files get the file type and a 1-based index appended.
    Different meetings that still collide (same day, same topic) get their start
    time, then their meeting id, so no two files in a batch share a path.
    """
    per_meeting: Dict[str, List[RecordingFile]] = defaultdict(list)
    for f in files:
        per_meeting[f.meeting_id].append(f)

    def suffixed(f: RecordingFile, *extra: str) -> str:
        siblings = per_meeting[f.meeting_id]
        parts = [f.filename_hint(), *[e for e in extra if e]]
        if len(siblings) > 1:
            parts += [f.file_type or "file", str(siblings.index(f) + 1)]
        return sanitize_component(" ".join(parts))

    def clock(f: RecordingFile) -> str:
        start = f.start_time or ""
        return start.split(" ", 1)[1].replace(":", "")[:4] if " " in start else ""

    stems = [suffixed(f) for f in files]
    for disambiguate in (lambda f: suffixed(f, clock(f)), lambda f: suffixed(f, clock(f), f.meeting_id)):
        counts = Counter(stems)
        if all(n == 1 for n in counts.values()):
            break
        stems = [disambiguate(f) if counts[stem] > 1 else stem for f, stem in zip(files, stems)]

    return [(f, root / f"{stem}.mp4") for f, stem in zip(files, stems)]


def download_headers(asset: ReplayAsset, cookies) -> Dict[str, str]:
    """Captured headers verbatim plus a Cookie header built for the asset's host."""
    headers = dict(asset.headers)
    host = urlsplit(asset.download_url).hostname or ""
    value = cookie_header(cookies, host)
    if value:
        headers = {k: v for k, v in headers.items() if k.lower() != "cookie"}
        headers["Cookie"] = value
    else:
        logger.warning("No stored cookies match media host", host=host)
    return headers


class CaptureAndDownloadPipeline:
    """Per recording: revisit its play page, catch the signed media request, download at once.

    Items are handled strictly one after another on the single authenticated
    browser. A failing item is recorded and the loop moves on.
    """

    def __init__(self,
                 driver: BrowserDriver,
                 store: SessionStore,
                 downloader: MediaDownloader,
                 course_id: int,
                 settings: Optional[Settings] = None):
        self.driver = driver
        self.store = store
        self.downloader = downloader
        self.course_id = course_id
        self.settings = settings or default_settings
        self.output_dir = course_download_dir(self.settings, course_id)

    async def run(self, files: List[RecordingFile]) -> PipelineSummary:
        summary = PipelineSummary()
        logger.info("Starting capture pipeline", course_id=self.course_id, files=len(files),
                    output_dir=str(self.output_dir))

        for recording, dest in plan_destinations(files, self.output_dir):
            outcome = await self._process(recording, dest)
            summary.record(outcome)
            log = logger.info if outcome.status != "failed" else logger.warning
            log("Recording " + outcome.status,
                meeting_id=outcome.meeting_id,
                play_url=outcome.play_url,
                reason=outcome.reason,
                dest=str(dest))

        logger.info("Capture pipeline finished", course_id=self.course_id,
                    processed=summary.processed, skipped=summary.skipped, failed=summary.failed)
        return summary

    async def _process(self, recording: RecordingFile, dest: Path) -> ItemOutcome:
        def outcome(status: str, reason: str = "") -> ItemOutcome:
            return ItemOutcome(recording.meeting_id, recording.play_url, status, reason, dest)

        if dest.exists():
            return outcome("skipped", "already downloaded")

        try:
            asset = await self.capture_asset(recording.play_url)
            await self.store.save_replay_asset(self.course_id, recording.play_url, asset)
            cookies = await self.store.load_valid_cookies()
            result = await self.downloader.download(download_headers(asset, cookies), asset.download_url, dest)
        except StorageError:
            raise
        except CaptureTimeout as e:
            return outcome("failed", e.message)
        except ArchiverException as e:
            return outcome("failed", f"{type(e).__name__}: {e.message}")
        except OSError as e:
            return outcome("failed", f"filesystem error: {e}")

        return outcome("processed", f"via {result.strategy}")

    async def capture_asset(self, play_url: str) -> ReplayAsset:
        """Navigate to ``play_url`` and return the first media request it triggers."""
        timeout = self.settings.asset_capture_timeout_seconds
        suffixes = self.settings.media_host_suffixes
        found: asyncio.Queue = asyncio.Queue(maxsize=1)

        def on_request(request: NetworkRequest) -> None:
            if found.empty() and extractors.is_replay_asset(request.url, suffixes):
                found.put_nowait(request)

        unsubscribe = await self.driver.subscribe_network_events(on_request)
        try:
            await self.driver.navigate(play_url)
            if found.empty():
                await SsoNavigator(self.driver, self.settings).run()
            try:
                request = await asyncio.wait_for(found.get(), timeout=timeout)
            except asyncio.TimeoutError:
                raise CaptureTimeout(play_url, timeout)
        finally:
            await unsubscribe()

        logger.debug("Captured replay asset",
                     play_url=play_url,
                     asset_url=request.url.split("?")[0],
                     header_names=sorted(request.headers))
        return ReplayAsset(download_url=request.url, headers=dict(request.headers))
