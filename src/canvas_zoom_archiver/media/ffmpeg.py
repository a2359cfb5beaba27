"""Thin async wrapper around the ffmpeg binary used to remux provider streams."""
import asyncio
import os
from pathlib import Path
from typing import Dict
from canvas_zoom_archiver.config.logging import get_logger
from canvas_zoom_archiver.exceptions import ProcessFailure
from canvas_zoom_archiver.utils.fsutil import staging_path

logger = get_logger("media.ffmpeg")


async def _run(*args: str):
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ProcessFailure(f"ffmpeg binary not found at {args[0]}") from e
    except PermissionError as e:
        raise ProcessFailure(f"ffmpeg binary at {args[0]} is not executable") from e

    _, stderr = await process.communicate()
    return process.returncode, stderr.decode("utf-8", errors="replace")


async def ensure_available(ffmpeg_path: str) -> None:
    """Run ``ffmpeg -version`` and raise ProcessFailure if it is not callable."""
    returncode, stderr = await _run(ffmpeg_path, "-version")
    if returncode != 0:
        raise ProcessFailure(f"{ffmpeg_path} -version exited with {returncode}",
                             returncode=returncode, stderr=stderr)


def header_blob(headers: Dict[str, str]) -> str:
    return "".join(f"{name}: {value}\r\n" for name, value in headers.items())


async def remux(ffmpeg_path: str, headers: Dict[str, str], url: str, dest: Path) -> Path:
    """Copy all streams from ``url`` into ``dest`` through a staging file.

    The staging file is renamed into place on success and removed on failure.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = staging_path(dest)

    args = [
        ffmpeg_path,
        "-y",
        "-loglevel", "error",
        "-hide_banner",
        "-headers", header_blob(headers),
        "-i", url,
        "-c", "copy",
        "-map", "0",
        "-movflags", "+faststart",
        # Staging name has no media extension, so the muxer is explicit
        "-f", "mp4",
        str(tmp),
    ]

    logger.debug("Running ffmpeg", dest=str(dest), header_count=len(headers))
    try:
        returncode, stderr = await _run(*args)
    except ProcessFailure:
        tmp.unlink(missing_ok=True)
        raise

    if returncode != 0:
        tmp.unlink(missing_ok=True)
        raise ProcessFailure(f"ffmpeg exited with status {returncode}",
                             returncode=returncode, stderr=stderr.strip()[-2000:])

    if not tmp.exists():
        raise ProcessFailure("ffmpeg exited cleanly but produced no output", returncode=returncode)

    os.replace(tmp, dest)
    return dest
