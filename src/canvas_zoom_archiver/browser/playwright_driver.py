import base64
import fnmatch
import re
from typing import Any, Dict, List, Optional
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright
from canvas_zoom_archiver.browser.driver import (
    BrowserDriver,
    InterceptedResponse,
    NetworkRequest,
    RequestCallback,
    ResponseHandler,
    Unsubscribe,
    call_listener,
)
from canvas_zoom_archiver.config.logging import get_logger
from canvas_zoom_archiver.exceptions import BrowserError
from canvas_zoom_archiver.models.recording import Cookie

LAUNCH_ARGS = ["--no-sandbox", "--disable-gpu", "--disable-dev-shm-usage"]


def _string_headers(headers: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return {str(k): str(v) for k, v in (headers or {}).items()}


def url_predicate(url_pattern: str):
    """``*``/``?`` wildcard pattern as a predicate on the whole URL."""
    regex = re.compile(fnmatch.translate(url_pattern))
    return lambda url: regex.match(url) is not None


class PlaywrightDriver(BrowserDriver):
    """Chromium driven through Playwright.

    Requests and intercepted responses are observed on the browser context,
    not the page, so traffic from the cross-site LTI iframe (which Chromium
    runs out of process) is seen as well. Request headers are read with
    ``all_headers()`` so they are the exact set the browser sent.
    """

    def __init__(self, headless: bool = True, user_agent: Optional[str] = None,
                 navigation_timeout: float = 60.0):
        self.headless = headless
        self.user_agent = user_agent
        self.navigation_timeout = navigation_timeout
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None
        self._request_listeners: List[RequestCallback] = []
        self.logger = get_logger("browser")

    async def launch(self) -> None:
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)
            self._context = await self._browser.new_context(user_agent=self.user_agent)
            self._context.on("request", self._dispatch_request)
            self._page = await self._context.new_page()
        except PlaywrightError as e:
            await self.close()
            raise BrowserError(f"Could not launch browser: {e}") from e

        self.logger.info("Browser launched", headless=self.headless)

    def _require_page(self):
        if self._page is None:
            raise BrowserError("Browser is not launched")
        return self._page

    async def _dispatch_request(self, request) -> None:
        if not self._request_listeners:
            return
        try:
            headers = await request.all_headers()
        except PlaywrightError as e:
            # Request already gone; the provisional headers are all that is left
            self.logger.debug("Full request headers unavailable", url=request.url.split("?")[0], error=str(e))
            headers = request.headers
        event = NetworkRequest(
            url=request.url,
            method=request.method,
            headers=_string_headers(headers),
            resource_type=request.resource_type,
        )
        for listener in list(self._request_listeners):
            try:
                await call_listener(listener, event)
            except Exception as e:
                # keep dispatching to the remaining listeners
                self.logger.error("Network listener failed", url=event.url.split("?")[0], error=str(e))

    async def navigate(self, url: str, timeout: Optional[float] = None) -> None:
        page = self._require_page()
        timeout = timeout or self.navigation_timeout
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=timeout * 1000)
        except PlaywrightTimeoutError:
            # Slow players keep loading; the page is still usable
            self.logger.warning("Navigation did not settle in time", url=url.split("?")[0], timeout=timeout)
        except PlaywrightError as e:
            raise BrowserError(f"Navigation to {url.split('?')[0]} failed: {e}") from e

    async def current_url(self) -> str:
        return self._require_page().url

    async def evaluate_script(self, script: str, arg: Any = None) -> Any:
        try:
            return await self._require_page().evaluate(script, arg)
        except PlaywrightError as e:
            raise BrowserError(f"Script evaluation failed: {e}") from e

    async def page_content(self) -> str:
        try:
            return await self._require_page().content()
        except PlaywrightError as e:
            raise BrowserError(f"Could not read page content: {e}") from e

    async def wait_for_load(self, timeout: float) -> None:
        try:
            await self._require_page().wait_for_load_state("domcontentloaded", timeout=timeout * 1000)
        except PlaywrightTimeoutError:
            self.logger.debug("Load state wait timed out", timeout=timeout)
        except PlaywrightError as e:
            raise BrowserError(f"Waiting for page load failed: {e}") from e

    async def wait_for_selector(self, selector: str, timeout: float) -> bool:
        try:
            await self._require_page().wait_for_selector(selector, state="visible", timeout=timeout * 1000)
            return True
        except PlaywrightTimeoutError:
            return False
        except PlaywrightError as e:
            raise BrowserError(f"Waiting for {selector} failed: {e}") from e

    async def fill(self, selector: str, value: str, timeout: float) -> None:
        try:
            await self._require_page().fill(selector, value, timeout=timeout * 1000)
        except PlaywrightError as e:
            raise BrowserError(f"Could not fill {selector}: {e}") from e

    async def click(self, selector: str, timeout: float) -> None:
        try:
            await self._require_page().click(selector, timeout=timeout * 1000)
        except PlaywrightError as e:
            raise BrowserError(f"Could not click {selector}: {e}") from e

    async def subscribe_network_events(self, callback: RequestCallback) -> Unsubscribe:
        self._require_page()
        self._request_listeners.append(callback)

        async def unsubscribe() -> None:
            if callback in self._request_listeners:
                self._request_listeners.remove(callback)

        return unsubscribe

    async def intercept_responses(self, url_pattern: str, handler: ResponseHandler) -> Unsubscribe:
        self._require_page()
        context = self._context
        matcher = url_predicate(url_pattern)

        async def on_route(route) -> None:
            request = route.request
            try:
                # Redirects are passed through untouched; they carry no body
                response = await route.fetch(max_redirects=0)
            except PlaywrightError as e:
                self.logger.warning("Could not fetch intercepted response", error=str(e))
                await route.continue_()
                return

            try:
                if not 300 <= response.status < 400:
                    body = await response.body()
                    await call_listener(handler, InterceptedResponse(
                        url=request.url,
                        status=response.status,
                        body=base64.b64encode(body).decode("ascii"),
                        base64_encoded=True,
                        request_headers=_string_headers(await request.all_headers()),
                    ))
            except PlaywrightError as e:
                self.logger.warning("Could not read intercepted body", error=str(e))
            except Exception as e:
                self.logger.error("Response handler failed", error=str(e))
            finally:
                try:
                    await route.fulfill(response=response)
                except PlaywrightError as e:
                    self.logger.debug("Fulfilling intercepted response failed", error=str(e))

        try:
            await context.route(matcher, on_route)
        except PlaywrightError as e:
            raise BrowserError(f"Could not enable response interception: {e}") from e
        self.logger.debug("Response interception enabled", pattern=url_pattern)

        async def unsubscribe() -> None:
            try:
                await context.unroute(matcher, on_route)
            except PlaywrightError as e:
                self.logger.debug("Removing response interception failed", error=str(e))

        return unsubscribe

    async def get_cookies(self) -> List[Cookie]:
        if self._context is None:
            raise BrowserError("Browser is not launched")
        try:
            raw = await self._context.cookies()
        except PlaywrightError as e:
            raise BrowserError(f"Could not read cookies: {e}") from e

        cookies = []
        for c in raw:
            expires = c.get("expires")
            cookies.append(Cookie(
                domain=c.get("domain", ""),
                name=c.get("name", ""),
                value=c.get("value", ""),
                path=c.get("path") or "/",
                # Playwright reports -1 for session cookies
                expires_at=int(expires) if expires and expires > 0 else None,
                secure=bool(c.get("secure")),
                http_only=bool(c.get("httpOnly")),
            ))
        return cookies

    async def add_cookies(self, cookies: List[Cookie]) -> None:
        if self._context is None:
            raise BrowserError("Browser is not launched")
        payload = []
        for c in cookies:
            entry = {
                "name": c.name,
                "value": c.value,
                "domain": c.domain,
                "path": c.path,
                "secure": c.secure,
                "httpOnly": c.http_only,
            }
            if c.expires_at:
                entry["expires"] = float(c.expires_at)
            payload.append(entry)
        try:
            await self._context.add_cookies(payload)
        except PlaywrightError as e:
            raise BrowserError(f"Could not seed cookies: {e}") from e

    async def close(self) -> None:
        for closer in (self._context, self._browser):
            if closer is not None:
                try:
                    await closer.close()
                except PlaywrightError as e:
                    self.logger.debug("Browser shutdown error", error=str(e))
        if self._playwright is not None:
            await self._playwright.stop()
        self._playwright = self._browser = self._context = self._page = None
        self._request_listeners.clear()
        self.logger.info("Browser closed")
