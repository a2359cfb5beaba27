import httpx
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlsplit
from pydantic import ValidationError
from canvas_zoom_archiver.config.settings import Settings, settings as default_settings
from canvas_zoom_archiver.config.logging import get_logger, redact
from canvas_zoom_archiver.database.session_store import SessionStore
from canvas_zoom_archiver.exceptions import DecodeFailure, SessionExpired, TransferFailure
from canvas_zoom_archiver.models.recording import (
    RecordingFile,
    RecordingFileResponse,
    RecordingListResponse,
    RecordingSummary,
    cookie_header,
)
from canvas_zoom_archiver.utils.rate_limiter import RateLimitedHTTPClient, build_api_http_client

API_PATH_PREFIX = "/api/v1/lti/rich/recording"
LISTING_PATH = f"{API_PATH_PREFIX}/COURSE"
FILE_PATH = f"{API_PATH_PREFIX}/file"
MAX_PAGES = 100


class RecordingApiClient:
    """Authenticated facade over the provider's recording listing and file endpoints.

    Credentials are read from the SessionStore on every request so that a
    cookie refresh written by another component is picked up by the retry.
    """

    def __init__(self,
                 store: SessionStore,
                 course_id: int,
                 settings: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 http_client: Optional[RateLimitedHTTPClient] = None):
        self.store = store
        self.course_id = course_id
        self.settings = settings or default_settings
        self.base_url = self.settings.zoom_base_url.rstrip("/")
        self._transport = transport
        self._http = http_client or build_api_http_client(self.settings.max_rps)
        self.logger = get_logger("zoom.api")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(self.settings.http_timeout_seconds),
            follow_redirects=False,
        )

    async def _load_credentials(self) -> Tuple[str, Dict[str, str]]:
        """Return the correlation token and the header set for an API call."""
        scid = await self.store.get_correlation_token(self.course_id)
        if not scid:
            raise SessionExpired(f"No correlation token stored for course {self.course_id}")

        cookies = await self.store.load_valid_cookies()
        captured = await self.store.get_all_headers(self.course_id)

        headers = {"Accept": "application/json, text/plain, */*"}
        headers.update(captured)
        if not any(name.lower() == "user-agent" for name in headers):
            headers["User-Agent"] = self.settings.user_agent

        host = urlsplit(self.base_url).hostname or ""
        cookie_value = cookie_header(cookies, host)
        if cookie_value:
            headers = {k: v for k, v in headers.items() if k.lower() != "cookie"}
            headers["Cookie"] = cookie_value

        return scid, headers

    async def _get(self, client: httpx.AsyncClient, path: str, params: Dict[str, str]) -> httpx.Response:
        """GET with the stored session, retrying a 401/403 exactly once."""
        url = f"{self.base_url}{path}"
        for attempt in range(2):
            scid, headers = await self._load_credentials()
            response = await self._http.request(
                client, "get", url, params={**params, "lti_scid": scid}, headers=headers
            )

            if response.status_code in (401, 403):
                if attempt == 0:
                    self.logger.info("Provider rejected session, retrying once",
                                     status_code=response.status_code, path=path)
                    continue
                self.logger.warning("Session rejected after retry",
                                    status_code=response.status_code, path=path,
                                    scid=redact(scid))
                raise SessionExpired(f"{path} returned {response.status_code}")

            if 300 <= response.status_code < 400 or _is_html(response):
                # Silent redirect to a login page
                raise SessionExpired(f"{path} redirected to a login page ({response.status_code})")

            if response.status_code >= 400:
                raise TransferFailure(f"{path} returned {response.status_code}")

            return response

        raise SessionExpired(f"{path} rejected the session")

    async def validate(self) -> bool:
        """Return True only when a listing call answers 200 with a JSON body."""
        try:
            scid, headers = await self._load_credentials()
        except SessionExpired:
            self.logger.info("No stored session to validate", course_id=self.course_id)
            return False

        async with self._client() as client:
            try:
                response = await self._http.request(
                    client, "get", f"{self.base_url}{LISTING_PATH}",
                    params={**self._listing_params(None, 1), "lti_scid": scid},
                    headers=headers,
                )
            except TransferFailure as e:
                self.logger.warning("Session validation request failed", error=str(e))
                return False

        content_type = response.headers.get("content-type", "")
        valid = response.status_code == 200 and "json" in content_type.lower()
        self.logger.info("Session validated",
                         course_id=self.course_id,
                         status_code=response.status_code,
                         content_type=content_type,
                         valid=valid)
        return valid

    def _listing_params(self, since: Optional[str], page: int) -> Dict[str, str]:
        return {
            "startTime": since or "",
            "endTime": datetime.now(timezone.utc).strftime("%Y-%m-%d"),
            "keyWord": "",
            "searchType": "1",
            "status": "",
            "page": str(page),
            "total": "0",
        }

    async def list_recordings(self, since: Optional[str] = None) -> List[RecordingSummary]:
        all_meetings: List[RecordingSummary] = []
        total_expected: Optional[int] = None

        self.logger.info("Listing recordings", course_id=self.course_id, since=since)

        async with self._client() as client:
            for page in range(1, MAX_PAGES + 1):
                response = await self._get(client, LISTING_PATH, self._listing_params(since, page))
                payload = _decode(response, RecordingListResponse)

                result = payload.result
                if result is None or not result.list:
                    self.logger.debug("Empty page, ending pagination", page=page)
                    break

                if total_expected is None:
                    total_expected = result.total
                all_meetings.extend(result.list)
                self.logger.debug("Retrieved recordings page",
                                  page=page,
                                  batch_size=len(result.list),
                                  total_so_far=len(all_meetings),
                                  declared_total=total_expected)

                if total_expected is not None and len(all_meetings) >= total_expected:
                    break
                if (result.page_size or 0) > len(result.list):
                    break
            else:
                self.logger.warning("Page limit reached, stopping pagination",
                                    max_pages=MAX_PAGES, total_so_far=len(all_meetings))

        self.logger.info("Recordings listed", course_id=self.course_id, count=len(all_meetings))
        return all_meetings

    async def fetch_files(self, meeting: RecordingSummary) -> List[RecordingFile]:
        async with self._client() as client:
            response = await self._get(client, FILE_PATH, {"meetingId": meeting.meeting_id})
        payload = _decode(response, RecordingFileResponse)

        entries = []
        if payload.result and payload.result.recording_files:
            entries = payload.result.recording_files

        files = [RecordingFile.from_entry(meeting, entry) for entry in entries if entry.play_url]
        self.logger.debug("Fetched recording files",
                          meeting_id=meeting.meeting_id,
                          entries=len(entries),
                          playable=len(files))
        return files


def _is_html(response: httpx.Response) -> bool:
    return "text/html" in response.headers.get("content-type", "").lower()


def _decode(response: httpx.Response, model):
    try:
        return model.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        raise DecodeFailure(f"Malformed payload from {response.request.url.path}: {e}") from e
