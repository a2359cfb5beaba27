import httpx
import pytest
from canvas_zoom_archiver.clients.zoom_client import FILE_PATH, LISTING_PATH, RecordingApiClient
from canvas_zoom_archiver.exceptions import DecodeFailure, SessionExpired, TransferFailure
from canvas_zoom_archiver.models.recording import Cookie, RecordingSummary, Session
from canvas_zoom_archiver.utils.rate_limiter import build_api_http_client

COURSE_ID = 1234


@pytest.fixture
async def seeded_store(store):
    await store.save_session(Session(
        course_id=COURSE_ID,
        correlation_token="scid-token",
        cookies=[
            Cookie(domain=".zoom.us", name="_zm_ssid", value="abc"),
            Cookie(domain="school.instructure.com", name="canvas_session", value="nope"),
        ],
        request_headers={LISTING_PATH: {"x-zm-aid": "aid-1", "x-xsrf-token": "xsrf-1"}},
    ))
    return store


def _client(store, settings, handler):
    return RecordingApiClient(
        store,
        COURSE_ID,
        settings=settings,
        transport=httpx.MockTransport(handler),
        http_client=build_api_http_client(1000, base_delay=0.0),
    )


def _meetings(start, count):
    return [{"meetingId": f"m{i}", "topic": f"Lecture {i}", "startTime": "2024-03-01 10:00:00"}
            for i in range(start, start + count)]


@pytest.mark.asyncio
async def test_list_recordings_stops_at_declared_total(seeded_store, test_settings):
    calls = []

    def handler(request):
        calls.append(request)
        page = int(request.url.params["page"])
        # Keeps returning full pages; the declared total must end pagination
        return httpx.Response(200, json={
            "status": True,
            "code": 200,
            "result": {"pageNum": page, "pageSize": 100, "total": 250,
                       "list": _meetings((page - 1) * 100, 100)},
        })

    meetings = await _client(seeded_store, test_settings, handler).list_recordings()

    assert len(calls) == 3
    assert len(meetings) == 300
    assert [c.url.params["page"] for c in calls] == ["1", "2", "3"]


@pytest.mark.asyncio
async def test_list_recordings_stops_on_short_or_empty_page(seeded_store, test_settings):
    def short_page(request):
        return httpx.Response(200, json={"result": {"pageSize": 100, "total": 500, "list": _meetings(0, 7)}})

    meetings = await _client(seeded_store, test_settings, short_page).list_recordings()
    assert len(meetings) == 7

    def empty_page(request):
        return httpx.Response(200, json={"status": True, "result": {"pageSize": 100, "total": 0, "list": []}})

    assert await _client(seeded_store, test_settings, empty_page).list_recordings() == []


@pytest.mark.asyncio
async def test_requests_carry_session_credentials(seeded_store, test_settings):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"result": {"pageSize": 100, "total": 1, "list": _meetings(0, 1)}})

    await _client(seeded_store, test_settings, handler).list_recordings(since="2024-01-01")

    request = seen[0]
    assert request.url.path == LISTING_PATH
    assert request.url.params["lti_scid"] == "scid-token"
    assert request.url.params["startTime"] == "2024-01-01"
    assert request.url.params["searchType"] == "1"
    assert request.headers["x-zm-aid"] == "aid-1"
    assert request.headers["x-xsrf-token"] == "xsrf-1"
    assert request.headers["cookie"] == "_zm_ssid=abc"
    assert request.headers["user-agent"] == test_settings.user_agent


@pytest.mark.asyncio
async def test_validate_requires_json_success(seeded_store, test_settings):
    def json_ok(request):
        return httpx.Response(200, json={"status": True, "result": {"list": []}})

    def html_login(request):
        return httpx.Response(200, text="<html>login</html>", headers={"content-type": "text/html"})

    def unauthorized(request):
        return httpx.Response(401, json={"status": False})

    assert await _client(seeded_store, test_settings, json_ok).validate() is True
    assert await _client(seeded_store, test_settings, html_login).validate() is False
    assert await _client(seeded_store, test_settings, unauthorized).validate() is False


@pytest.mark.asyncio
async def test_validate_without_stored_session(store, test_settings):
    def handler(request):
        raise AssertionError("no request expected")

    assert await _client(store, test_settings, handler).validate() is False


@pytest.mark.asyncio
async def test_rejected_session_is_retried_exactly_once(seeded_store, test_settings):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, json={"status": False})

    with pytest.raises(SessionExpired):
        await _client(seeded_store, test_settings, handler).list_recordings()

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_rejected_session_recovers_on_retry(seeded_store, test_settings):
    responses = [
        httpx.Response(403, json={"status": False}),
        httpx.Response(200, json={"result": {"pageSize": 100, "total": 2, "list": _meetings(0, 2)}}),
    ]

    def handler(request):
        return responses.pop(0)

    meetings = await _client(seeded_store, test_settings, handler).list_recordings()
    assert [m.meeting_id for m in meetings] == ["m0", "m1"]


@pytest.mark.asyncio
async def test_login_redirect_is_session_expiry(seeded_store, test_settings):
    def handler(request):
        return httpx.Response(302, headers={"location": "https://zoom.us/signin"})

    with pytest.raises(SessionExpired):
        await _client(seeded_store, test_settings, handler).list_recordings()


@pytest.mark.asyncio
async def test_missing_token_is_session_expiry(store, test_settings):
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(SessionExpired):
        await _client(store, test_settings, handler).list_recordings()


@pytest.mark.asyncio
async def test_fetch_files_keeps_playable_entries(seeded_store, test_settings):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"status": True, "result": {"recordingFiles": [
            {"playUrl": "https://zoom.us/rec/play/one", "fileType": "MP4", "recordingStart": "2024-03-01 10:00:00"},
            {"playUrl": None, "fileType": "TRANSCRIPT"},
            {"fileType": "CHAT"},
            {"playUrl": "https://zoom.us/rec/play/two", "fileType": "MP4"},
        ]}})

    meeting = RecordingSummary(meeting_id="abc/def==", topic="Algebra", start_time="2024-03-01 10:00:00")
    files = await _client(seeded_store, test_settings, handler).fetch_files(meeting)

    assert seen[0].url.path == FILE_PATH
    assert seen[0].url.params["meetingId"] == "abc/def=="
    assert [f.play_url for f in files] == ["https://zoom.us/rec/play/one", "https://zoom.us/rec/play/two"]
    assert all(f.topic == "Algebra" and f.meeting_id == "abc/def==" for f in files)


@pytest.mark.asyncio
async def test_malformed_payload_is_decode_failure(seeded_store, test_settings):
    def handler(request):
        return httpx.Response(200, content=b"{not json", headers={"content-type": "application/json"})

    with pytest.raises(DecodeFailure):
        await _client(seeded_store, test_settings, handler).list_recordings()


@pytest.mark.asyncio
async def test_transport_errors_exhaust_three_attempts(seeded_store, test_settings):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransferFailure):
        await _client(seeded_store, test_settings, handler).list_recordings()

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_client_errors_are_transfer_failures(seeded_store, test_settings):
    def handler(request):
        return httpx.Response(404, json={"status": False})

    with pytest.raises(TransferFailure):
        await _client(seeded_store, test_settings, handler).list_recordings()
