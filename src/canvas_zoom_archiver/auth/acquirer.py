import asyncio
from typing import Callable, Dict, Optional, Tuple
from canvas_zoom_archiver.auth import extractors
from canvas_zoom_archiver.auth.sso import SsoNavigator
from canvas_zoom_archiver.browser.driver import BrowserDriver, InterceptedResponse, NetworkRequest
from canvas_zoom_archiver.clients.zoom_client import API_PATH_PREFIX, LISTING_PATH
from canvas_zoom_archiver.config.logging import get_logger, redact
from canvas_zoom_archiver.config.settings import Settings, settings as default_settings
from canvas_zoom_archiver.database.session_store import SessionStore
from canvas_zoom_archiver.exceptions import AuthError, BrowserError
from canvas_zoom_archiver.models.recording import Session, host_in_domain

logger = get_logger("auth.acquirer")

POLL_INTERVAL_SECONDS = 0.25


class CaptureState:
    """Shared between the network listeners and the polling control flow.

    The lock is only held for the read or update itself, never across an await.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self.correlation_token: Optional[str] = None
        self.token_source: Optional[str] = None
        self.manifest_headers: Dict[str, str] = {}
        self.observed_headers: Dict[str, str] = {}

    async def offer_token(self, token: str, source: str) -> bool:
        async with self._lock:
            if self.correlation_token:
                return False
            self.correlation_token = token
            self.token_source = source
            return True

    async def add_manifest_headers(self, headers: Dict[str, str]) -> None:
        async with self._lock:
            self.manifest_headers.update(headers)

    async def offer_observed_headers(self, headers: Dict[str, str]) -> bool:
        async with self._lock:
            if self.observed_headers:
                return False
            self.observed_headers = dict(headers)
            return True

    async def snapshot(self) -> Tuple[Optional[str], Dict[str, str]]:
        async with self._lock:
            # Manifest values win over whatever the page happened to send
            return self.correlation_token, {**self.observed_headers, **self.manifest_headers}


class AuthSessionAcquirer:
    """Drives the browser through the LTI launch and SSO, then persists the captured session."""

    def __init__(self,
                 store: SessionStore,
                 settings: Optional[Settings] = None,
                 driver_factory: Optional[Callable[[], BrowserDriver]] = None):
        self.store = store
        self.settings = settings or default_settings
        self._driver_factory = driver_factory or self._default_driver

    def _default_driver(self) -> BrowserDriver:
        from canvas_zoom_archiver.browser.playwright_driver import PlaywrightDriver
        return PlaywrightDriver(headless=self.settings.headless, user_agent=self.settings.user_agent)

    def new_driver(self) -> BrowserDriver:
        return self._driver_factory()

    async def acquire(self, course_id: int, driver: Optional[BrowserDriver] = None) -> Session:
        """Capture and persist a fresh session for ``course_id``.

        When ``driver`` is given it must already be launched and stays open so the
        caller can keep using the authenticated browser. Otherwise a browser is
        launched for this call and closed afterwards.
        """
        if driver is not None:
            return await self._acquire_with(course_id, driver)

        driver = self.new_driver()
        try:
            await driver.launch()
            return await self._acquire_with(course_id, driver)
        finally:
            await driver.close()

    async def _acquire_with(self, course_id: int, driver: BrowserDriver) -> Session:
        state = CaptureState()
        timeout = self.settings.token_capture_timeout_seconds
        launch_url = self.settings.lti_launch_url(course_id)

        async def on_request(request: NetworkRequest) -> None:
            await self._on_request(state, request)

        async def on_bootstrap(response: InterceptedResponse) -> None:
            await self._on_bootstrap(state, response)

        logger.info("Acquiring provider session", course_id=course_id, launch_url=launch_url)

        try:
            stop_events = await driver.subscribe_network_events(on_request)
            try:
                stop_intercept = await driver.intercept_responses(self.settings.lti_bootstrap_pattern, on_bootstrap)
                try:
                    await driver.navigate(launch_url)
                    await SsoNavigator(driver, self.settings).run()
                    token, headers = await self._wait_for_token(state, timeout)
                finally:
                    await stop_intercept()
            finally:
                await stop_events()

            browser_cookies = await driver.get_cookies()
        except BrowserError as e:
            raise AuthError(f"Browser failed during session capture: {e.message}",
                            reason=AuthError.BROWSER_FAILURE) from e

        if not token:
            logger.error("Correlation token not captured", course_id=course_id, timeout=timeout)
            raise AuthError(f"No correlation token captured within {timeout:.0f}s for course {course_id}")

        cookies = [c for c in browser_cookies if host_in_domain(c.domain.lstrip("."), self.settings.cookie_domain)]
        if not headers:
            logger.warning("No API headers captured, continuing with cookies only", course_id=course_id)
        if not cookies:
            logger.warning("No provider cookies found in browser", course_id=course_id,
                           cookie_domain=self.settings.cookie_domain)

        session = Session(
            course_id=course_id,
            correlation_token=token,
            cookies=cookies,
            request_headers={LISTING_PATH: headers} if headers else {},
        )
        await self.store.save_session(session)

        logger.info("Provider session captured",
                    course_id=course_id,
                    scid=redact(token),
                    token_source=state.token_source,
                    header_names=sorted(headers),
                    cookies=len(cookies))
        return session

    async def _wait_for_token(self, state: CaptureState, timeout: float):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            token, headers = await state.snapshot()
            if token or loop.time() >= deadline:
                return token, headers
            await asyncio.sleep(min(POLL_INTERVAL_SECONDS, max(0.0, deadline - loop.time())))

    async def _on_request(self, state: CaptureState, request: NetworkRequest) -> None:
        if "lti_scid=" in request.url:
            scid = extractors.extract_scid_from_url(request.url)
            if scid and await state.offer_token(scid, "request_url"):
                logger.debug("Correlation token taken from request URL", scid=redact(scid))

        if API_PATH_PREFIX in request.url:
            if await state.offer_observed_headers(extractors.clean_headers(request.headers)):
                logger.debug("Captured recording API request headers", header_names=sorted(request.headers))

    async def _on_bootstrap(self, state: CaptureState, response: InterceptedResponse) -> None:
        text = extractors.decode_body(response.body, response.base64_encoded)
        token, headers = extractors.extract_app_conf(text, self.settings.header_prefixes)
        if headers:
            await state.add_manifest_headers(headers)
        if token and await state.offer_token(token, "bootstrap_body"):
            logger.debug("Correlation token taken from LTI bootstrap body",
                         scid=redact(token), manifest_headers=len(headers))
