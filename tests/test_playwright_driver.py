import base64
import pytest
from canvas_zoom_archiver.browser.playwright_driver import PlaywrightDriver, url_predicate
from canvas_zoom_archiver.config.settings import Settings

BOOTSTRAP_URL = "https://applications.zoom.us/lti/advantage?lti_message_hint=abc"


class FakeRequest:
    def __init__(self, url, headers=None, method="GET", resource_type="document"):
        self.url = url
        self.method = method
        self.resource_type = resource_type
        self.headers = {"user-agent": "provisional"}
        self._headers = headers or {}

    async def all_headers(self):
        return self._headers


class FakeResponse:
    def __init__(self, status, body=b""):
        self.status = status
        self._body = body

    async def body(self):
        return self._body


class FakeRoute:
    def __init__(self, request, response):
        self.request = request
        self.response = response
        self.fulfilled = None
        self.continued = False

    async def fetch(self, max_redirects=None):
        return self.response

    async def fulfill(self, response=None):
        self.fulfilled = response

    async def continue_(self):
        self.continued = True


class FakeContext:
    """Context-wide routing table, as a browser context exposes it for every frame."""

    def __init__(self):
        self.routes = []

    async def route(self, url, handler):
        self.routes.append((url, handler))

    async def unroute(self, url, handler):
        self.routes.remove((url, handler))


@pytest.fixture
def context_driver():
    driver = PlaywrightDriver()
    driver._context = FakeContext()
    driver._page = object()
    return driver


def test_url_predicate_matches_the_default_bootstrap_pattern():
    matches = url_predicate(Settings().lti_bootstrap_pattern)

    assert matches(BOOTSTRAP_URL)
    assert matches("https://applications.zoom.us/lti/advantage")
    assert not matches("https://applications.zoom.us/rec/play/abc")


@pytest.mark.asyncio
async def test_request_events_carry_full_headers(context_driver):
    seen = []
    unsubscribe = await context_driver.subscribe_network_events(seen.append)

    await context_driver._dispatch_request(FakeRequest(
        "https://applications.zoom.us/api/v1/lti/rich/recording/COURSE?lti_scid=s",
        headers={"x-zm-aid": "aid", "cookie": "_zm_ssid=abc"},
        resource_type="xhr",
    ))
    await unsubscribe()
    await context_driver._dispatch_request(FakeRequest("https://applications.zoom.us/after"))

    assert len(seen) == 1
    assert seen[0].headers == {"x-zm-aid": "aid", "cookie": "_zm_ssid=abc"}
    assert seen[0].resource_type == "xhr"


@pytest.mark.asyncio
async def test_intercepted_body_reaches_handler_and_page(context_driver):
    received = []
    unsubscribe = await context_driver.intercept_responses("*applications.zoom.us/lti/advantage*", received.append)
    (matcher, on_route), = context_driver._context.routes
    response = FakeResponse(200, b'window.appConf = {scid: "s"}')
    route = FakeRoute(FakeRequest(BOOTSTRAP_URL, method="POST"), response)

    await on_route(route)

    assert matcher(BOOTSTRAP_URL)
    assert route.fulfilled is response
    intercepted, = received
    assert intercepted.status == 200 and intercepted.base64_encoded
    assert base64.b64decode(intercepted.body) == b'window.appConf = {scid: "s"}'

    await unsubscribe()
    assert context_driver._context.routes == []


@pytest.mark.asyncio
async def test_redirect_is_passed_through_without_handler(context_driver):
    received = []
    await context_driver.intercept_responses("*lti/advantage*", received.append)
    _, on_route = context_driver._context.routes[0]
    redirect = FakeResponse(302)
    route = FakeRoute(FakeRequest(BOOTSTRAP_URL), redirect)

    await on_route(route)

    assert received == []
    assert route.fulfilled is redirect
