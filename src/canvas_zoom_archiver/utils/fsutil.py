"""Filesystem helpers: safe file names, staging paths and stale staging cleanup."""
import re
import time
import unicodedata
from pathlib import Path
from typing import List

STAGING_SUFFIX = ".part"
MAX_STEM_LENGTH = 120


def sanitize_component(name: str, max_len: int = MAX_STEM_LENGTH) -> str:
    """Reduce ``name`` to ``[A-Za-z0-9_]`` with single underscores between words."""
    name = unicodedata.normalize("NFKD", str(name or "")).encode("ascii", "ignore").decode("ascii")
    name = re.sub(r"[^A-Za-z0-9_]", "_", name)
    name = re.sub(r"_+", "_", name).strip("_")
    if len(name) > max_len:
        name = name[:max_len].rstrip("_")
    return name or "untitled"


def staging_path(dest: Path) -> Path:
    """``lesson.mp4`` -> ``lesson.mp4.part``"""
    return dest.with_suffix(dest.suffix + STAGING_SUFFIX)


def find_stale_staging_files(root: Path, older_than_seconds: float) -> List[Path]:
    if not root.exists():
        return []
    cutoff = time.time() - older_than_seconds
    return sorted(
        path for path in root.rglob(f"*.mp4{STAGING_SUFFIX}")
        if path.is_file() and path.stat().st_mtime <= cutoff
    )
