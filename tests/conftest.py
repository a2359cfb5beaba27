import pytest
from typing import Any, Callable, Dict, List, Optional
from canvas_zoom_archiver.browser.driver import (
    BrowserDriver,
    InterceptedResponse,
    NetworkRequest,
    call_listener,
)
from canvas_zoom_archiver.config.settings import Settings
from canvas_zoom_archiver.database.session_store import SessionStore
from canvas_zoom_archiver.exceptions import TransferFailure
from canvas_zoom_archiver.media.downloader import DownloadResult
from canvas_zoom_archiver.models.recording import Cookie


class FakeDriver(BrowserDriver):
    """Scripted browser: each navigation replays the events registered for that URL."""

    def __init__(self):
        self.requests: Dict[str, List[NetworkRequest]] = {}
        self.responses: Dict[str, List[InterceptedResponse]] = {}
        self.redirects: Dict[str, str] = {}
        self.cookies: List[Cookie] = []
        self.visible: set = set()
        self.content = "<html></html>"
        self.script_handler: Optional[Callable[[str, Any], Any]] = None
        self.navigate_error: Optional[Exception] = None

        self.url = "about:blank"
        self.launched = False
        self.closed = False
        self.navigations: List[str] = []
        self.actions: List[tuple] = []
        self.seeded_cookies: List[Cookie] = []
        self.intercept_patterns: List[str] = []
        self.listeners: List[Callable] = []
        self.handlers: List[Callable] = []
        self.journal: Optional[List[str]] = None

    async def launch(self) -> None:
        self.launched = True

    async def navigate(self, url: str, timeout: Optional[float] = None) -> None:
        if self.navigate_error:
            raise self.navigate_error
        self.navigations.append(url)
        if self.journal is not None:
            self.journal.append(f"navigate {url}")
        self.url = self.redirects.get(url, url)
        for response in self.responses.get(url, []):
            for handler in list(self.handlers):
                await call_listener(handler, response)
        for request in self.requests.get(url, []):
            for listener in list(self.listeners):
                await call_listener(listener, request)

    async def current_url(self) -> str:
        return self.url

    async def evaluate_script(self, script: str, arg: Any = None) -> Any:
        self.actions.append(("script", arg))
        if self.script_handler:
            return self.script_handler(script, arg)
        return None

    async def page_content(self) -> str:
        return self.content

    async def wait_for_load(self, timeout: float) -> None:
        return None

    async def wait_for_selector(self, selector: str, timeout: float) -> bool:
        return selector in self.visible

    async def fill(self, selector: str, value: str, timeout: float) -> None:
        self.actions.append(("fill", selector, value))

    async def click(self, selector: str, timeout: float) -> None:
        self.actions.append(("click", selector))

    async def subscribe_network_events(self, callback):
        self.listeners.append(callback)

        async def unsubscribe():
            self.listeners.remove(callback)

        return unsubscribe

    async def intercept_responses(self, url_pattern: str, handler):
        self.intercept_patterns.append(url_pattern)
        self.handlers.append(handler)

        async def unsubscribe():
            self.handlers.remove(handler)

        return unsubscribe

    async def get_cookies(self) -> List[Cookie]:
        return list(self.cookies)

    async def add_cookies(self, cookies: List[Cookie]) -> None:
        self.seeded_cookies.extend(cookies)

    async def close(self) -> None:
        self.closed = True


class RecordingDownloader:
    """Stands in for MediaDownloader; writes a marker file instead of transferring."""

    def __init__(self, fail_for: Optional[set] = None):
        self.calls: List[tuple] = []
        self.fail_for = fail_for or set()
        self.journal: Optional[List[str]] = None

    async def download(self, headers, url, dest):
        self.calls.append((dict(headers), url, dest))
        if self.journal is not None:
            self.journal.append(f"download {url}")
        if url in self.fail_for:
            raise TransferFailure(f"HTTP 403 while downloading {dest.name}")
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(b"video")
        return DownloadResult(dest=dest, strategy="http", bytes_written=5)


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        canvas_base_url="https://school.instructure.com",
        zoom_base_url="https://applications.zoom.us",
        state_dir=str(tmp_path / "state"),
        download_root=str(tmp_path / "downloads"),
        max_rps=1000,
        token_capture_timeout_seconds=0.3,
        asset_capture_timeout_seconds=0.2,
        sso_step_timeout_seconds=0.1,
        sso_email=None,
        sso_password=None,
    )


@pytest.fixture
async def store(tmp_path):
    session_store = SessionStore(f"sqlite+aiosqlite:///{tmp_path / 'zoom_state.sqlite'}")
    await session_store.initialize()
    yield session_store
    await session_store.dispose()


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def recording_downloader():
    return RecordingDownloader()
