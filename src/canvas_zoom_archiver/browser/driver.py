"""Capability interface over the automated browser.

Everything the auth flow and the capture pipeline need from a browser goes
through ``BrowserDriver`` so tests can substitute a scripted event stream.
"""
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from canvas_zoom_archiver.models.recording import Cookie


@dataclass
class NetworkRequest:
    """An outgoing request as reported by the browser, headers verbatim."""
    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    resource_type: Optional[str] = None


@dataclass
class InterceptedResponse:
    """A paused response whose body was read before the browser saw it."""
    url: str
    status: int
    body: str
    base64_encoded: bool = False
    request_headers: Dict[str, str] = field(default_factory=dict)


RequestCallback = Callable[[NetworkRequest], Union[None, Awaitable[None]]]
ResponseHandler = Callable[[InterceptedResponse], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], Awaitable[None]]


async def call_listener(listener: Callable, payload: Any) -> None:
    result = listener(payload)
    if inspect.isawaitable(result):
        await result


class BrowserDriver(ABC):

    @abstractmethod
    async def launch(self) -> None:
        ...

    @abstractmethod
    async def navigate(self, url: str, timeout: Optional[float] = None) -> None:
        ...

    @abstractmethod
    async def current_url(self) -> str:
        ...

    @abstractmethod
    async def evaluate_script(self, script: str, arg: Any = None) -> Any:
        ...

    @abstractmethod
    async def page_content(self) -> str:
        ...

    @abstractmethod
    async def wait_for_load(self, timeout: float) -> None:
        """Wait until the current navigation settles, giving up silently after ``timeout``."""

    @abstractmethod
    async def wait_for_selector(self, selector: str, timeout: float) -> bool:
        """True once ``selector`` is visible, False if it never appears."""

    @abstractmethod
    async def fill(self, selector: str, value: str, timeout: float) -> None:
        ...

    @abstractmethod
    async def click(self, selector: str, timeout: float) -> None:
        ...

    @abstractmethod
    async def subscribe_network_events(self, callback: RequestCallback) -> Unsubscribe:
        """Deliver every outgoing request to ``callback`` until the returned function is awaited."""

    @abstractmethod
    async def intercept_responses(self, url_pattern: str, handler: ResponseHandler) -> Unsubscribe:
        """Pause responses matching ``url_pattern``, hand their bodies to ``handler``, then continue them."""

    @abstractmethod
    async def get_cookies(self) -> List[Cookie]:
        ...

    @abstractmethod
    async def add_cookies(self, cookies: List[Cookie]) -> None:
        """Seed the browser with previously captured cookies."""

    @abstractmethod
    async def close(self) -> None:
        ...

    async def __aenter__(self):
        await self.launch()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
