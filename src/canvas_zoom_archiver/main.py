import argparse
import asyncio
import json
import sys
from datetime import datetime
from typing import List, Optional
import structlog
from canvas_zoom_archiver.config.logging import configure_logging
from canvas_zoom_archiver.config.settings import settings
from canvas_zoom_archiver.database.session_store import SessionStore
from canvas_zoom_archiver.exceptions import ArchiverException, ConfigurationError
from canvas_zoom_archiver.models.recording import RecordingSummary
from canvas_zoom_archiver.services.capture_pipeline import PipelineSummary
from canvas_zoom_archiver.services.zoom_flow import SINCE_FORMAT, ZoomFlowService
from canvas_zoom_archiver.utils.fsutil import find_stale_staging_files

logger = structlog.get_logger("cli")


def _since(value: str) -> str:
    try:
        datetime.strptime(value, SINCE_FORMAT)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="canvas-zoom-archiver",
        description="Back up a course's video-conference recordings behind LMS single sign-on",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sniff = sub.add_parser("sniff", help="Capture a provider session through the browser")
    sniff.add_argument("--course-id", type=int, required=True)

    listing = sub.add_parser("list", help="List recordings, using the cache if the session expired")
    listing.add_argument("--course-id", type=int, required=True)
    listing.add_argument("--since", type=_since, help="Only meetings on or after YYYY-MM-DD")
    listing.add_argument("--json", action="store_true", help="Print the listing as JSON")

    fetch = sub.add_parser("fetch-urls", help="Fetch and store playable file URLs for listed meetings")
    fetch.add_argument("--course-id", type=int, required=True)

    dl = sub.add_parser("dl", help="Download from stored replay assets without a browser")
    dl.add_argument("--course-id", type=int, required=True)
    dl.add_argument("--concurrency", type=int, default=settings.concurrency)

    flow = sub.add_parser("flow", help="Full run: session, listing, per-recording capture and download")
    flow.add_argument("--course-id", type=int, required=True)
    flow.add_argument("--concurrency", type=int, default=settings.concurrency)
    flow.add_argument("--since", type=_since)

    clean = sub.add_parser("clean", help="Remove leftover staging files from interrupted downloads")
    clean.add_argument("--older-than-hours", type=float, default=24.0)

    sub.add_parser("init-db", help="Create the session store tables")
    return parser


def render_listing(meetings: List[RecordingSummary]) -> None:
    print(f"{'Meeting ID':<20} | {'Start':<20} | {'Topic':<40} | {'Timezone':<15}")
    print("-" * 105)
    for item in meetings:
        print(f"{item.meeting_id:<20} | {item.start_time or '?':<20} | "
              f"{(item.topic or '(no topic)')[:40]:<40} | {item.timezone or '':<15}")


def render_summary(summary: PipelineSummary) -> None:
    for item in summary.items:
        if item.status != "processed":
            print(f"  {item.status:<8} {item.meeting_id} {item.play_url}: {item.reason}")
    print(f"Summary: {summary.describe()}")


def _require_browser_settings() -> None:
    missing = settings.missing_fields()
    if missing:
        raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")


async def _run(args: argparse.Namespace) -> int:
    if args.command == "clean":
        root = settings.download_path
        stale = find_stale_staging_files(root, args.older_than_hours * 3600)
        for path in stale:
            path.unlink()
            logger.info("Removed staging file", path=str(path))
        print(f"Removed {len(stale)} staging file(s) under {root}")
        return 0

    store = SessionStore()
    try:
        await store.initialize()
        if args.command == "init-db":
            print(f"Session store ready at {settings.effective_database_url}")
            return 0

        service = ZoomFlowService(store)

        if args.command == "sniff":
            _require_browser_settings()
            count = await service.sniff(args.course_id)
            print(f"Session captured for course {args.course_id}; {count} meeting(s) listed.")
            return 0

        if args.command == "list":
            meetings, from_cache = await service.list_meetings(args.course_id, args.since)
            if args.json:
                print(json.dumps([m.model_dump(by_alias=True) for m in meetings], indent=2))
            else:
                render_listing(meetings)
                if from_cache:
                    print("(Data comes from the local cache; run 'sniff' to refresh it.)")
            return 0

        if args.command == "fetch-urls":
            stored = await service.fetch_urls(args.course_id)
            if stored == 0:
                print("No playable URLs were returned. Does the tool allow downloads?")
            else:
                print(f"Stored {stored} playable file URL(s).")
            return 0

        if args.command == "dl":
            summary = await service.download_cached(args.course_id, args.concurrency)
            render_summary(summary)
            return 0 if summary.ok else 1

        if args.command == "flow":
            _require_browser_settings()
            summary = await service.run(args.course_id, args.concurrency, args.since)
            render_summary(summary)
            return 0 if summary.ok else 1
    finally:
        await store.dispose()

    return 2


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    try:
        return asyncio.run(_run(args))
    except ArchiverException as e:
        logger.error("Command failed", command=args.command, error=e.message, error_type=type(e).__name__)
        print(f"Error: {e.message}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
