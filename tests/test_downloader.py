import httpx
import pytest
from canvas_zoom_archiver.exceptions import TransferFailure
from canvas_zoom_archiver.media.downloader import MediaDownloader
from canvas_zoom_archiver.utils.fsutil import staging_path

ASSET_URL = "https://ssrweb.zoom.us/replay/lesson.mp4?sig=abc"
HEADERS = {
    "Referer": "https://zoom.us/rec/play/abc",
    "User-Agent": "Mozilla/5.0 test",
    "Cookie": "_zm_ssid=abc",
}


class ChunkedBody(httpx.AsyncByteStream):
    """Response body delivered in small chunks, like a real network stream."""

    def __init__(self, content: bytes, chunk_size: int = 4):
        self.content = content
        self.chunk_size = chunk_size

    async def __aiter__(self):
        for start in range(0, len(self.content), self.chunk_size):
            yield self.content[start:start + self.chunk_size]


def _fake_ffmpeg(tmp_path, exit_code=0, source=None):
    """Shell stand-in for ffmpeg: logs its arguments and writes the last one.

    With ``source`` the output is a byte copy of that file, otherwise a fixed marker.
    """
    args_log = tmp_path / "ffmpeg_args.log"
    script = tmp_path / f"fake-ffmpeg-{exit_code}"
    body = [
        "#!/bin/sh",
        'if [ "$1" = "-version" ]; then echo "ffmpeg version test"; exit 0; fi',
        f"printf '%s\\n' \"$@\" > '{args_log}'",
    ]
    if exit_code:
        body.append(f'echo "Server returned 403 Forbidden" >&2; exit {exit_code}')
    else:
        body.append('for last; do :; done')
        if source is not None:
            body.append(f"cat '{source}' > \"$last\"")
        else:
            body.append('printf "remuxed" > "$last"')
    script.write_text("\n".join(body) + "\n")
    script.chmod(0o755)
    return str(script), args_log


def _transport(content=b"full-video-body", status_code=200, seen=None, range_aware=False):
    def handler(request):
        if seen is not None:
            seen.append(request)
        range_header = request.headers.get("range")
        if range_aware and range_header:
            start = int(range_header.split("=")[1].rstrip("-"))
            if start >= len(content):
                return httpx.Response(416, stream=ChunkedBody(b""))
            return httpx.Response(206, stream=ChunkedBody(content[start:]))
        return httpx.Response(status_code, stream=ChunkedBody(content))

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_ffmpeg_remux_is_first_choice(tmp_path):
    ffmpeg_path, args_log = _fake_ffmpeg(tmp_path)
    seen = []
    downloader = MediaDownloader(ffmpeg_path=ffmpeg_path, transport=_transport(seen=seen))
    dest = tmp_path / "out" / "lesson.mp4"

    result = await downloader.download(HEADERS, ASSET_URL, dest)

    assert result.strategy == MediaDownloader.STRATEGY_FFMPEG
    assert dest.read_bytes() == b"remuxed"
    assert not staging_path(dest).exists()
    assert seen == []

    args = args_log.read_text()
    assert ASSET_URL in args
    assert "Referer: https://zoom.us/rec/play/abc" in args
    assert "Cookie: _zm_ssid=abc" in args


@pytest.mark.asyncio
async def test_ffmpeg_failure_falls_back_to_http_with_same_headers(tmp_path):
    ffmpeg_path, _ = _fake_ffmpeg(tmp_path, exit_code=1)
    seen = []
    downloader = MediaDownloader(ffmpeg_path=ffmpeg_path, transport=_transport(seen=seen))
    dest = tmp_path / "lesson.mp4"

    result = await downloader.download(HEADERS, ASSET_URL, dest)

    assert result.strategy == MediaDownloader.STRATEGY_HTTP
    assert dest.read_bytes() == b"full-video-body"
    assert result.bytes_written == len(b"full-video-body")
    assert not staging_path(dest).exists()

    request = seen[0]
    assert str(request.url) == ASSET_URL
    for name, value in HEADERS.items():
        assert request.headers[name] == value
    assert "range" not in request.headers


@pytest.mark.asyncio
async def test_missing_ffmpeg_binary_uses_http(tmp_path):
    downloader = MediaDownloader(ffmpeg_path=str(tmp_path / "no-such-ffmpeg"), transport=_transport())
    dest = tmp_path / "lesson.mp4"

    result = await downloader.download(HEADERS, ASSET_URL, dest)

    assert result.strategy == MediaDownloader.STRATEGY_HTTP
    assert dest.read_bytes() == b"full-video-body"


@pytest.mark.asyncio
async def test_partial_staging_file_is_resumed_with_range(tmp_path):
    seen = []
    downloader = MediaDownloader(
        ffmpeg_path=str(tmp_path / "never-called"),
        transport=_transport(content=b"abcdef", seen=seen, range_aware=True),
    )
    dest = tmp_path / "lesson.mp4"
    staging_path(dest).write_bytes(b"abc")

    result = await downloader.download(HEADERS, ASSET_URL, dest)

    assert seen[0].headers["range"] == "bytes=3-"
    assert dest.read_bytes() == b"abcdef"
    assert result.resumed_from == 3
    assert result.bytes_written == 3
    assert not staging_path(dest).exists()


@pytest.mark.asyncio
async def test_server_ignoring_range_restarts_file(tmp_path):
    downloader = MediaDownloader(
        ffmpeg_path=str(tmp_path / "never-called"),
        transport=_transport(content=b"abcdef"),
    )
    dest = tmp_path / "lesson.mp4"
    staging_path(dest).write_bytes(b"abc")

    result = await downloader.download(HEADERS, ASSET_URL, dest)

    assert dest.read_bytes() == b"abcdef"
    assert result.resumed_from == 0


@pytest.mark.asyncio
async def test_both_strategies_failing_raises_transfer_failure(tmp_path):
    ffmpeg_path, _ = _fake_ffmpeg(tmp_path, exit_code=1)
    downloader = MediaDownloader(ffmpeg_path=ffmpeg_path, transport=_transport(status_code=403))
    dest = tmp_path / "lesson.mp4"

    with pytest.raises(TransferFailure):
        await downloader.download(HEADERS, ASSET_URL, dest)

    assert not dest.exists()
    assert not staging_path(dest).exists()


@pytest.mark.asyncio
async def test_transport_error_is_transfer_failure(tmp_path):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    downloader = MediaDownloader(ffmpeg_path=str(tmp_path / "missing"), transport=httpx.MockTransport(handler))

    with pytest.raises(TransferFailure):
        await downloader.download(HEADERS, ASSET_URL, tmp_path / "lesson.mp4")


@pytest.mark.asyncio
async def test_complete_staging_file_is_finished_on_416(tmp_path):
    seen = []
    downloader = MediaDownloader(
        ffmpeg_path=str(tmp_path / "never-called"),
        transport=_transport(content=b"abcdef", seen=seen, range_aware=True),
    )
    dest = tmp_path / "lesson.mp4"
    staging_path(dest).write_bytes(b"abcdef")

    result = await downloader.download(HEADERS, ASSET_URL, dest)

    assert seen[0].headers["range"] == "bytes=6-"
    assert dest.read_bytes() == b"abcdef"
    assert (result.bytes_written, result.resumed_from) == (0, 6)
    assert not staging_path(dest).exists()


@pytest.mark.asyncio
async def test_http_fallback_matches_ffmpeg_output(tmp_path):
    source = tmp_path / "source.mp4"
    source.write_bytes(bytes(range(256)) * 40)

    ffmpeg_ok, _ = _fake_ffmpeg(tmp_path, source=source)
    via_ffmpeg = await MediaDownloader(ffmpeg_path=ffmpeg_ok, transport=_transport()).download(
        HEADERS, ASSET_URL, tmp_path / "a" / "lesson.mp4")

    ffmpeg_broken, _ = _fake_ffmpeg(tmp_path, exit_code=1)
    via_http = await MediaDownloader(
        ffmpeg_path=ffmpeg_broken,
        transport=_transport(content=source.read_bytes()),
    ).download(HEADERS, ASSET_URL, tmp_path / "b" / "lesson.mp4")

    assert (via_ffmpeg.strategy, via_http.strategy) == (MediaDownloader.STRATEGY_FFMPEG, MediaDownloader.STRATEGY_HTTP)
    assert via_http.dest.read_bytes() == via_ffmpeg.dest.read_bytes() == source.read_bytes()
