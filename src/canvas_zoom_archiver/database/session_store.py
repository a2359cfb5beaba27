"""Durable store for the provider session, captured headers and listing cache."""
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from canvas_zoom_archiver.config.logging import get_logger
from canvas_zoom_archiver.database.connection import create_engine_for, init_db, make_sessionmaker
from canvas_zoom_archiver.database.models.session_state import (
    CourseCorrelationToken,
    MeetingRow,
    RecordingFileRow,
    ReplayHeaderRow,
    RequestHeader,
    StoredCookie,
)
from canvas_zoom_archiver.exceptions import StorageError
from canvas_zoom_archiver.models.recording import (
    Cookie,
    RecordingFile,
    RecordingSummary,
    ReplayAsset,
    Session,
)

logger = get_logger("database")


class SessionStore:
    """Every operation runs in its own short transaction; nothing is held across network I/O."""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[AsyncEngine] = None):
        self.engine = engine or create_engine_for(database_url)
        self._sessionmaker = make_sessionmaker(self.engine)

    async def initialize(self) -> None:
        try:
            await init_db(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not initialize session store: {e}") from e

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def _transaction(self):
        try:
            async with self._sessionmaker() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("Session store operation failed", error=str(e))
            raise StorageError(f"Session store operation failed: {e}") from e

    # Correlation token

    async def save_correlation_token(self, course_id: int, token: str) -> None:
        async with self._transaction() as session:
            await self._put_token(session, course_id, token)

    async def get_correlation_token(self, course_id: int) -> Optional[str]:
        async with self._transaction() as session:
            row = await session.get(CourseCorrelationToken, str(course_id))
            return row.scid if row else None

    # Cookies

    async def replace_cookies(self, cookies: List[Cookie]) -> None:
        async with self._transaction() as session:
            await self._put_cookies(session, cookies)

    async def load_valid_cookies(self) -> List[Cookie]:
        """Return unexpired cookies, deleting expired rows as a side effect."""
        now = time.time()
        async with self._transaction() as session:
            result = await session.execute(select(StoredCookie))
            valid = []
            expired = 0
            for row in result.scalars().all():
                cookie = Cookie(
                    domain=row.host,
                    name=row.name,
                    value=row.value,
                    path=row.path,
                    expires_at=row.expires,
                    secure=row.secure,
                    http_only=row.http_only,
                )
                if cookie.is_expired(now):
                    await session.delete(row)
                    expired += 1
                else:
                    valid.append(cookie)

        if expired:
            logger.info("Purged expired cookies", expired=expired, remaining=len(valid))
        return valid

    # Request headers

    async def replace_headers_for_path(self, course_id: int, path: str, headers: Dict[str, str]) -> None:
        async with self._transaction() as session:
            await self._put_headers(session, course_id, path, headers)

    async def get_all_headers(self, course_id: int) -> Dict[str, str]:
        async with self._transaction() as session:
            result = await session.execute(
                select(RequestHeader)
                .where(RequestHeader.course_id == str(course_id))
                .order_by(RequestHeader.request_path, RequestHeader.header_name)
            )
            return {row.header_name: row.header_value for row in result.scalars().all()}

    async def get_headers_by_path(self, course_id: int) -> Dict[str, Dict[str, str]]:
        async with self._transaction() as session:
            result = await session.execute(
                select(RequestHeader).where(RequestHeader.course_id == str(course_id))
            )
            grouped: Dict[str, Dict[str, str]] = {}
            for row in result.scalars().all():
                grouped.setdefault(row.request_path, {})[row.header_name] = row.header_value
            return grouped

    # Replay assets

    async def save_replay_asset(self, course_id: int, referer: str, asset: ReplayAsset) -> None:
        """Upsert one asset; previously captured assets for other referers are untouched."""
        async with self._transaction() as session:
            await self._put_replay_asset(session, course_id, referer, asset)

    async def load_replay_assets(self, course_id: int) -> Dict[str, ReplayAsset]:
        async with self._transaction() as session:
            result = await session.execute(
                select(ReplayHeaderRow).where(ReplayHeaderRow.course_id == str(course_id))
            )
            return {
                row.referer: ReplayAsset(download_url=row.download_url, headers=dict(row.headers or {}))
                for row in result.scalars().all()
            }

    # Whole-session write

    async def save_session(self, session_state: Session) -> None:
        """Write token, cookies and headers from one capture cycle in a single transaction.

        Headers from earlier cycles are dropped even when this cycle captured none.
        """
        async with self._transaction() as session:
            await self._put_token(session, session_state.course_id, session_state.correlation_token)
            await self._put_cookies(session, session_state.cookies)
            await session.execute(
                delete(RequestHeader).where(RequestHeader.course_id == str(session_state.course_id))
            )
            for path, headers in session_state.request_headers.items():
                await self._put_headers(session, session_state.course_id, path, headers)
            for referer, asset in session_state.replay_assets.items():
                await self._put_replay_asset(session, session_state.course_id, referer, asset)

        logger.info("Session saved",
                    course_id=session_state.course_id,
                    cookies=len(session_state.cookies),
                    header_paths=list(session_state.request_headers.keys()),
                    replay_assets=len(session_state.replay_assets))

    # Listing cache

    async def save_listing(self, course_id: int, meetings: List[RecordingSummary]) -> None:
        async with self._transaction() as session:
            await session.execute(delete(MeetingRow).where(MeetingRow.course_id == str(course_id)))
            for summary in meetings:
                await session.merge(MeetingRow(
                    course_id=str(course_id),
                    meeting_id=summary.meeting_id,
                    payload=summary.model_dump(by_alias=True),
                    fetched_at=datetime.utcnow(),
                ))

    async def load_cached_listing(self, course_id: int) -> List[RecordingSummary]:
        async with self._transaction() as session:
            result = await session.execute(
                select(MeetingRow).where(MeetingRow.course_id == str(course_id))
            )
            return [RecordingSummary.model_validate(row.payload) for row in result.scalars().all()]

    async def save_files(self, course_id: int, meeting_id: str, files: List[RecordingFile]) -> None:
        async with self._transaction() as session:
            await session.execute(delete(RecordingFileRow).where(RecordingFileRow.meeting_id == meeting_id))
            for recording in files:
                enriched = recording.model_copy(update={"meeting_id": meeting_id})
                await session.merge(RecordingFileRow(
                    meeting_id=meeting_id,
                    play_url=enriched.play_url,
                    course_id=str(course_id),
                    payload=enriched.model_dump(),
                    fetched_at=datetime.utcnow(),
                ))

    async def load_files(self, course_id: int) -> List[RecordingFile]:
        async with self._transaction() as session:
            result = await session.execute(
                select(RecordingFileRow)
                .where(RecordingFileRow.course_id == str(course_id))
                .order_by(RecordingFileRow.meeting_id, RecordingFileRow.play_url)
            )
            return [RecordingFile.model_validate(row.payload) for row in result.scalars().all()]

    # Statement helpers shared by the single-purpose and whole-session writes

    async def _put_token(self, session, course_id: int, token: str) -> None:
        await session.merge(CourseCorrelationToken(
            course_id=str(course_id),
            scid=token,
            updated_at=datetime.utcnow(),
        ))

    async def _put_cookies(self, session, cookies: List[Cookie]) -> None:
        await session.execute(delete(StoredCookie))
        seen = {}
        for cookie in cookies:
            seen[cookie.key] = cookie  # last one wins on identity collisions
        now = datetime.utcnow()
        session.add_all([
            StoredCookie(
                host=cookie.domain,
                name=cookie.name,
                path=cookie.path,
                value=cookie.value,
                expires=cookie.expires_at,
                secure=cookie.secure,
                http_only=cookie.http_only,
                updated_at=now,
            )
            for cookie in seen.values()
        ])

    async def _put_headers(self, session, course_id: int, path: str, headers: Dict[str, str]) -> None:
        await session.execute(
            delete(RequestHeader).where(
                RequestHeader.course_id == str(course_id),
                RequestHeader.request_path == path,
            )
        )
        now = datetime.utcnow()
        session.add_all([
            RequestHeader(
                course_id=str(course_id),
                request_path=path,
                header_name=name,
                header_value=value,
                updated_at=now,
            )
            for name, value in sorted(headers.items())
        ])

    async def _put_replay_asset(self, session, course_id: int, referer: str, asset: ReplayAsset) -> None:
        await session.merge(ReplayHeaderRow(
            course_id=str(course_id),
            referer=referer,
            download_url=asset.download_url,
            headers=dict(asset.headers),
            updated_at=datetime.utcnow(),
        ))
