"""Shared fixtures: a fake stream transport and a manual clock."""

from typing import Any, Callable, Dict, List, Optional

import pytest

from async_http import HTTPErrorCode_ClientClosed, HttpRequest, OperationState
from firebase_config import FirebaseConfig
from firebase_stream import StreamSupervisor


class FakeTransport:
    """Records stream requests; the test drives chunks and completions."""

    def __init__(self) -> None:
        self.requests: List[HttpRequest] = []
        self.cancelled: List[HttpRequest] = []

    def Stream(self, url: str, on_chunk: Callable, callback: Optional[Callable] = None,
               headers: Optional[Dict[str, str]] = None) -> HttpRequest:
        request = HttpRequest("GET", url)
        request.Headers = dict(headers or {})
        request.OnChunk = on_chunk
        request.Callback = callback
        request.State = OperationState.PROCESSING
        self.requests.append(request)
        return request

    def Cancel(self, request: Optional[HttpRequest]) -> None:
        if request is None or request.State == OperationState.DONE:
            return
        request._cancelled = True
        self.cancelled.append(request)

    @property
    def last(self) -> HttpRequest:
        return self.requests[-1]

    @property
    def live(self) -> List[HttpRequest]:
        return [r for r in self.requests if not r.Cancelled and r.State != OperationState.DONE]

    def feed(self, text: str, request: Optional[HttpRequest] = None) -> None:
        request = request or self.last
        request.OnChunk(request, text.encode("utf-8"))

    def feed_bytes(self, data: bytes, request: Optional[HttpRequest] = None) -> None:
        request = request or self.last
        request.OnChunk(request, data)

    def finish(self, status: int, headers: Optional[Dict[str, str]] = None,
               body: bytes = b"", request: Optional[HttpRequest] = None) -> None:
        request = request or self.last
        request.Status = status
        request.Succeeded = 200 <= status < 400
        request.ResponseHeaders = dict(headers or {})
        request.Body = body
        request.State = OperationState.DONE
        if request.Callback:
            request.Callback(request)

    def finish_cancelled(self) -> None:
        """Deliver the late completions the real transport sends after Cancel()."""
        for request in self.cancelled:
            if request.State != OperationState.DONE:
                self.finish(HTTPErrorCode_ClientClosed, request=request)


class FakeTimer:
    def __init__(self, due: float, handler: Callable, args: tuple) -> None:
        self.due = due
        self.handler = handler
        self.args = args
        self.cancelled = False
        self.fired = False

    def done(self) -> bool:
        return self.cancelled or self.fired


class FakeTimers:
    """Manual clock: timers fire on advance(), call_soon runs on run_soon()."""

    def __init__(self) -> None:
        self.now = 0.0
        self.timers: List[FakeTimer] = []
        self.soon: List[tuple] = []

    def schedule(self, delay: float, handler: Callable, *args: Any) -> FakeTimer:
        timer = FakeTimer(self.now + delay, handler, args)
        self.timers.append(timer)
        return timer

    def cancel(self, timer: Optional[FakeTimer]) -> None:
        if timer is not None and not timer.done():
            timer.cancelled = True

    def call_soon(self, callback: Callable, *args: Any) -> None:
        self.soon.append((callback, args))

    @property
    def pending(self) -> List[FakeTimer]:
        return [t for t in self.timers if not t.done()]

    def run_soon(self) -> None:
        while self.soon:
            callback, args = self.soon.pop(0)
            callback(*args)

    def advance(self, seconds: float) -> None:
        self.now += seconds
        while True:
            due = [t for t in self.pending if t.due <= self.now]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            timer.fired = True
            timer.handler(*timer.args)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def timers() -> FakeTimers:
    return FakeTimers()


@pytest.fixture
def config() -> FirebaseConfig:
    return FirebaseConfig("https://mydb.firebaseio.com", auth_token="secret")


@pytest.fixture
def supervisor(transport: FakeTransport, timers: FakeTimers, config: FirebaseConfig) -> StreamSupervisor:
    return StreamSupervisor(transport, timers, config)

