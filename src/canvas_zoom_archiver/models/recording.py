"""Session state and recording payloads exchanged with the video provider."""
import time
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


def _stringify(value: Any) -> Any:
    # The provider sends numeric ids on some endpoints and strings on others
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value))
    return value


def host_in_domain(host: str, domain: str) -> bool:
    """True when ``host`` is ``domain`` or one of its subdomains; ``notzoom.us`` is not in ``zoom.us``."""
    host = host.lower()
    domain = domain.lower().lstrip(".")
    if not host or not domain:
        return False
    return host == domain or host.endswith("." + domain)


class Cookie(BaseModel):
    domain: str
    name: str
    value: str
    path: str = "/"
    expires_at: Optional[int] = None
    secure: bool = False
    http_only: bool = False

    @property
    def key(self):
        return (self.domain, self.name, self.path)

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Zero or missing expiry means a session cookie, which never expires here."""
        if not self.expires_at or self.expires_at <= 0:
            return False
        return self.expires_at <= (time.time() if now is None else now)

    def matches_host(self, host: str) -> bool:
        return host_in_domain(host, self.domain)


def cookie_header(cookies: List[Cookie], host: str) -> Optional[str]:
    """Render the cookies whose domain covers ``host`` as a Cookie header value."""
    pairs = [f"{c.name}={c.value}" for c in cookies if c.matches_host(host)]
    return "; ".join(pairs) if pairs else None


class ReplayAsset(BaseModel):
    download_url: str
    headers: Dict[str, str] = Field(default_factory=dict)


class Session(BaseModel):
    course_id: int
    correlation_token: str
    cookies: List[Cookie] = Field(default_factory=list)
    request_headers: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    replay_assets: Dict[str, ReplayAsset] = Field(default_factory=dict)


class RecordingSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    meeting_id: str = Field(default="", alias="meetingId")
    meeting_number: Optional[str] = Field(default=None, alias="meetingNumber")
    topic: Optional[str] = None
    start_time: Optional[str] = Field(default=None, alias="startTime")
    timezone: Optional[str] = None

    @field_validator("meeting_id", mode="before")
    @classmethod
    def _coerce_meeting_id(cls, value):
        return "" if value is None else _stringify(value)

    @field_validator("meeting_number", mode="before")
    @classmethod
    def _coerce_meeting_number(cls, value):
        return _stringify(value)


class RecordingsResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page_num: Optional[int] = Field(default=None, alias="pageNum")
    page_size: Optional[int] = Field(default=None, alias="pageSize")
    total: Optional[int] = None
    list: Optional[List[RecordingSummary]] = None


class RecordingListResponse(BaseModel):
    status: Optional[bool] = None
    code: Optional[int] = None
    result: Optional[RecordingsResult] = None

    @property
    def meetings(self) -> List[RecordingSummary]:
        if self.result and self.result.list:
            return self.result.list
        return []

    @classmethod
    def from_meetings(cls, meetings: List[RecordingSummary]) -> "RecordingListResponse":
        return cls(
            status=True,
            code=200,
            result=RecordingsResult(page_size=len(meetings), total=len(meetings), list=meetings),
        )


class RecordingFileEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    play_url: Optional[str] = Field(default=None, alias="playUrl")
    download_url: Optional[str] = Field(default=None, alias="downloadUrl")
    file_type: Optional[str] = Field(default=None, alias="fileType")
    recording_start: Optional[str] = Field(default=None, alias="recordingStart")


class RecordingFileResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    recording_files: Optional[List[RecordingFileEntry]] = Field(default=None, alias="recordingFiles")


class RecordingFileResponse(BaseModel):
    status: Optional[bool] = None
    code: Optional[int] = None
    result: Optional[RecordingFileResult] = None


class RecordingFile(BaseModel):
    meeting_id: str
    play_url: str
    download_url_hint: Optional[str] = None
    file_type: Optional[str] = None
    recording_start: Optional[str] = None
    topic: Optional[str] = None
    start_time: Optional[str] = None
    timezone: Optional[str] = None
    meeting_number: Optional[str] = None

    @property
    def key(self):
        return (self.meeting_id, self.play_url)

    @classmethod
    def from_entry(cls, meeting: RecordingSummary, entry: RecordingFileEntry) -> "RecordingFile":
        return cls(
            meeting_id=meeting.meeting_id,
            play_url=entry.play_url,
            download_url_hint=entry.download_url,
            file_type=entry.file_type,
            recording_start=entry.recording_start,
            topic=meeting.topic,
            start_time=meeting.start_time,
            timezone=meeting.timezone,
            meeting_number=meeting.meeting_number,
        )

    def filename_hint(self) -> str:
        parts = []
        if self.start_time:
            parts.append(self.start_time.split(" ")[0])
        if self.topic:
            parts.append(self.topic)
        if not parts:
            return f"zoom-{self.meeting_id.replace('/', '_')}"
        return " - ".join(parts)
