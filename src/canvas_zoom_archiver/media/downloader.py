import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional
import httpx
from canvas_zoom_archiver.config.logging import get_logger
from canvas_zoom_archiver.exceptions import ProcessFailure, TransferFailure
from canvas_zoom_archiver.media import ffmpeg
from canvas_zoom_archiver.utils.fsutil import staging_path

# Headers httpx must compute itself or that clash with a resumed Range request
_HTTP_DROPPED_HEADERS = {"range", "host", "content-length", "connection", "transfer-encoding"}


@dataclass
class DownloadResult:
    dest: Path
    strategy: str
    bytes_written: int = 0
    resumed_from: int = 0


class MediaDownloader:
    """Header-faithful media transfer: ffmpeg remux first, plain HTTP GET as fallback."""

    STRATEGY_FFMPEG = "ffmpeg"
    STRATEGY_HTTP = "http"

    def __init__(self,
                 ffmpeg_path: str = "ffmpeg",
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = 30.0):
        self.ffmpeg_path = ffmpeg_path
        self._transport = transport
        self._timeout = timeout
        self._ffmpeg_ok: Optional[bool] = None
        self.logger = get_logger("media.downloader")

    async def _ffmpeg_available(self) -> bool:
        if self._ffmpeg_ok is None:
            try:
                await ffmpeg.ensure_available(self.ffmpeg_path)
                self._ffmpeg_ok = True
            except ProcessFailure as e:
                self.logger.warning("ffmpeg preflight failed, using HTTP only",
                                    ffmpeg_path=self.ffmpeg_path, error=e.message)
                self._ffmpeg_ok = False
        return self._ffmpeg_ok

    async def download(self, headers: Dict[str, str], url: str, dest: Path) -> DownloadResult:
        """Download ``url`` to ``dest``. Raises TransferFailure when both strategies fail."""
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = staging_path(dest)

        # A partial staging file from an earlier HTTP attempt is resumed rather than restarted
        resumable = tmp.exists() and tmp.stat().st_size > 0

        if not resumable and await self._ffmpeg_available():
            try:
                await ffmpeg.remux(self.ffmpeg_path, headers, url, dest)
                size = dest.stat().st_size
                self.logger.info("Downloaded with ffmpeg", dest=str(dest), bytes=size)
                return DownloadResult(dest=dest, strategy=self.STRATEGY_FFMPEG, bytes_written=size)
            except ProcessFailure as e:
                self.logger.warning("ffmpeg failed, falling back to HTTP",
                                    dest=str(dest),
                                    returncode=e.returncode,
                                    error=e.message,
                                    stderr=e.stderr[-300:])

        try:
            return await self._http_download(headers, url, dest)
        except (httpx.HTTPError, OSError) as e:
            raise TransferFailure(f"HTTP download of {dest.name} failed: {e}") from e

    async def _http_download(self, headers: Dict[str, str], url: str, dest: Path) -> DownloadResult:
        tmp = staging_path(dest)
        resume_from = tmp.stat().st_size if tmp.exists() else 0

        request_headers = {
            name: value for name, value in headers.items()
            if name.lower() not in _HTTP_DROPPED_HEADERS and not name.startswith(":")
        }
        if resume_from > 0:
            request_headers["Range"] = f"bytes={resume_from}-"

        self.logger.debug("HTTP download",
                          dest=str(dest),
                          header_names=sorted(request_headers),
                          resume_from=resume_from)

        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(self._timeout),
            follow_redirects=True,
            max_redirects=5,
        ) as client:
            async with client.stream("GET", url, headers=request_headers) as response:
                if resume_from > 0 and response.status_code == 416:
                    # Staging file already holds the whole asset
                    os.replace(tmp, dest)
                    self.logger.info("Staging file already complete", dest=str(dest), bytes=resume_from)
                    return DownloadResult(dest=dest, strategy=self.STRATEGY_HTTP, resumed_from=resume_from)
                if not (200 <= response.status_code < 300):
                    raise TransferFailure(f"HTTP {response.status_code} while downloading {dest.name}")

                # A server that ignores Range answers 200 with the whole body
                append = resume_from > 0 and response.status_code == 206
                written = 0
                with open(tmp, "ab" if append else "wb") as fh:
                    async for chunk in response.aiter_raw():
                        fh.write(chunk)
                        written += len(chunk)
                    fh.flush()
                    os.fsync(fh.fileno())

        os.replace(tmp, dest)
        self.logger.info("Downloaded with HTTP",
                         dest=str(dest),
                         bytes=written,
                         resumed_from=resume_from if append else 0)
        return DownloadResult(
            dest=dest,
            strategy=self.STRATEGY_HTTP,
            bytes_written=written,
            resumed_from=resume_from if append else 0,
        )
