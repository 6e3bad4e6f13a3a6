"""Tests for firebase_stream: connection lifecycle, keep-alive and reconnects."""

import asyncio
from typing import Any, List, Tuple

import pytest

from async_http import HTTPErrorCode_HTTPClientException, HTTPErrorCode_SocketIOTimeout
from firebase_stream import ERROR_STREAM_PARSE, ConnectionState, StreamSupervisor


def frame(event: str, data: str) -> str:
    return f"event: {event}\ndata: {data}\n\n"


class Recorder:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, Any]] = []

    def __call__(self, path: str, value: Any) -> None:
        self.calls.append((path, value))


# ---------------------------------------------------------------------------
# Open / close
# ---------------------------------------------------------------------------


class TestOpenClose:
    def test_open_issues_stream_request(self, supervisor: StreamSupervisor, transport) -> None:
        assert supervisor.open("/rooms/")
        assert supervisor.is_open()
        assert supervisor.state == ConnectionState.STREAMING
        assert len(transport.requests) == 1
        request = transport.last
        assert request.Url == "https://mydb.firebaseio.com/rooms.json?ns=mydb&_auth=secret"
        assert request.Headers == {"accept": "text/event-stream"}

    def test_root_url(self, supervisor: StreamSupervisor, transport) -> None:
        supervisor.open()
        assert transport.last.Url.startswith("https://mydb.firebaseio.com/.json?ns=mydb")

    def test_open_twice_returns_false(self, supervisor: StreamSupervisor, transport) -> None:
        assert supervisor.open("/a")
        assert not supervisor.open("/b")
        assert len(transport.requests) == 1
        assert supervisor.path == "/a"

    def test_open_arms_keep_alive(self, supervisor: StreamSupervisor, timers) -> None:
        supervisor.open("/")
        assert len(timers.pending) == 1
        assert timers.pending[0].due == 60.0

    def test_close_cancels_everything(self, supervisor: StreamSupervisor, transport, timers) -> None:
        supervisor.open("/")
        request = transport.last
        supervisor.close()
        assert not supervisor.is_open()
        assert transport.cancelled == [request]
        assert timers.pending == []

    def test_close_is_idempotent(self, supervisor: StreamSupervisor, transport) -> None:
        supervisor.close()
        supervisor.open("/")
        supervisor.close()
        supervisor.close()
        assert len(transport.cancelled) == 1
        assert supervisor.state == ConnectionState.CLOSED

    def test_late_cancel_completion_is_ignored(self, supervisor: StreamSupervisor, transport) -> None:
        supervisor.open("/")
        supervisor.close()
        supervisor.open("/")
        transport.finish_cancelled()
        assert supervisor.is_open()
        assert len(transport.live) == 1
        assert len(transport.requests) == 2

    def test_state_listener(self, supervisor: StreamSupervisor) -> None:
        states = []
        supervisor.on_state_changed = lambda sup, state: states.append(state)
        supervisor.open("/")
        supervisor.close()
        assert states == [ConnectionState.STREAMING, ConnectionState.CLOSED]


# ---------------------------------------------------------------------------
# Chunks: parse, apply, dispatch
# ---------------------------------------------------------------------------


class TestChunks:
    def test_events_update_mirror_and_notify(self, supervisor: StreamSupervisor, transport, timers) -> None:
        root, bar = Recorder(), Recorder()
        supervisor.router.subscribe("/", root)
        supervisor.router.subscribe("/foo/bar", bar)
        supervisor.open("/")

        transport.feed(frame("put", '{"path": "/", "data": {"foo": {"bar": 5, "baz": 6}}}'))
        assert supervisor.tree.extract("/foo/bar") == 5

        # Observers are deferred
        assert root.calls == [] and bar.calls == []
        timers.run_soon()
        assert root.calls == [("/", {"foo": {"bar": 5, "baz": 6}})]
        assert bar.calls == [("/foo/bar", 5)]

        transport.feed(frame("patch", '{"path": "/foo", "data": {"bar": 7}}'))
        timers.run_soon()
        assert bar.calls[-1] == ("/foo/bar", 7)
        assert root.calls[-1] == ("/foo", {"bar": 7})

    def test_observer_order_follows_events(self, supervisor: StreamSupervisor, transport, timers) -> None:
        seen = Recorder()
        supervisor.router.subscribe("/", seen)
        supervisor.open("/")
        transport.feed(
            frame("put", '{"path": "/a", "data": 1}')
            + frame("put", '{"path": "/b", "data": 2}')
            + frame("put", '{"path": "/a", "data": null}')
        )
        timers.run_soon()
        assert seen.calls == [("/a", 1), ("/b", 2), ("/a", None)]
        assert supervisor.tree.root == {"b": 2}

    def test_frame_split_across_chunks(self, supervisor: StreamSupervisor, transport) -> None:
        supervisor.open("/")
        data = frame("put", '{"path": "/name", "data": "café"}').encode("utf-8")
        cut = data.index(b"\xc3") + 1
        transport.feed_bytes(data[:cut])
        assert supervisor.tree.extract("/name") is None
        transport.feed_bytes(data[cut:])
        assert supervisor.tree.extract("/name") == "café"

    def test_keep_alive_frames_do_nothing(self, supervisor: StreamSupervisor, transport, timers) -> None:
        seen = Recorder()
        supervisor.router.subscribe("/", seen)
        supervisor.open("/")
        transport.feed(frame("keep-alive", "null"))
        timers.run_soon()
        assert seen.calls == []
        assert supervisor.tree.root == {}

    def test_observer_error_is_isolated(self, supervisor: StreamSupervisor, transport, timers) -> None:
        def broken(path, value):
            raise RuntimeError("boom")

        good = Recorder()
        supervisor.router.subscribe("/", broken)
        supervisor.router.subscribe("/a", good)
        supervisor.open("/")
        transport.feed(frame("put", '{"path": "/a", "data": 1}'))
        timers.run_soon()
        assert good.calls == [("/a", 1)]
        assert supervisor.tree.extract("/a") == 1

    @pytest.mark.asyncio
    async def test_async_observer_error_is_logged(
        self, supervisor: StreamSupervisor, transport, timers, caplog: pytest.LogCaptureFixture
    ) -> None:
        async def broken(path, value):
            raise RuntimeError("async boom")

        good = Recorder()
        supervisor.router.subscribe("/", broken)
        supervisor.router.subscribe("/a", good)
        supervisor.open("/")
        transport.feed(frame("put", '{"path": "/a", "data": 1}'))
        timers.run_soon()
        for _ in range(3):
            await asyncio.sleep(0)

        assert good.calls == [("/a", 1)]
        errors = [r for r in caplog.records if r.name.startswith("firebase_stream") and r.exc_info]
        assert [r.exc_info[1].args for r in errors] == [("async boom",)]
        supervisor.close()

    def test_chunks_from_old_request_ignored(self, supervisor: StreamSupervisor, transport) -> None:
        supervisor.open("/")
        old = transport.last
        supervisor.close()
        supervisor.open("/")
        transport.feed(frame("put", '{"path": "/a", "data": 1}'), request=old)
        assert supervisor.tree.root == {}


# ---------------------------------------------------------------------------
# Keep-alive watchdog
# ---------------------------------------------------------------------------


class TestKeepAlive:
    def test_expiry_reopens_same_path(self, supervisor: StreamSupervisor, transport, timers) -> None:
        supervisor.open("/rooms")
        first = transport.last
        timers.advance(60)
        assert first in transport.cancelled
        assert len(transport.requests) == 2
        assert transport.last.Url == first.Url
        assert supervisor.is_open()
        assert len(timers.pending) == 1

    def test_chunk_rearms_watchdog(self, supervisor: StreamSupervisor, transport, timers) -> None:
        supervisor.open("/")
        timers.advance(50)
        transport.feed(frame("keep-alive", "null"))
        timers.advance(50)
        assert len(transport.requests) == 1
        timers.advance(10)
        assert len(transport.requests) == 2

    def test_custom_interval(self, transport, timers, config) -> None:
        config.keep_alive_interval = 5
        supervisor = StreamSupervisor(transport, timers, config)
        supervisor.open("/")
        timers.advance(5)
        assert len(transport.requests) == 2


# ---------------------------------------------------------------------------
# Stream termination
# ---------------------------------------------------------------------------


class TestTermination:
    def test_redirect_updates_base_url(self, supervisor: StreamSupervisor, transport, timers) -> None:
        supervisor.open("/a")
        transport.finish(307, {"Location": "https://newhost.firebaseio.com/a.json?ns=mydb"})
        assert len(transport.requests) == 2
        assert transport.last.Url.startswith("https://newhost.firebaseio.com/a.json?")
        assert supervisor.config.base_url == "https://newhost.firebaseio.com"
        assert supervisor.is_open()
        # No delay timer, only the new watchdog
        assert len(timers.pending) == 1

    def test_redirect_without_location_is_an_error(self, supervisor: StreamSupervisor, transport, timers) -> None:
        supervisor.open("/a")
        transport.finish(307)
        assert len(transport.requests) == 1
        timers.advance(1)
        assert len(transport.requests) == 2

    def test_timeout_reconnects_now(self, supervisor: StreamSupervisor, transport) -> None:
        supervisor.open("/")
        transport.finish(HTTPErrorCode_SocketIOTimeout)
        assert len(transport.requests) == 2

    def test_rate_limit_reconnects_now(self, supervisor: StreamSupervisor, transport) -> None:
        supervisor.open("/")
        transport.finish(429)
        assert len(transport.requests) == 2

    def test_clean_end_reconnects_now(self, supervisor: StreamSupervisor, transport) -> None:
        supervisor.open("/")
        transport.finish(200)
        assert len(transport.requests) == 2

    def test_error_retries_after_delay(self, supervisor: StreamSupervisor, transport, timers) -> None:
        supervisor.open("/")
        transport.finish(500, body=b"oops")
        assert len(transport.requests) == 1
        assert supervisor.is_open()
        assert not supervisor.open("/other")
        timers.advance(0.5)
        assert len(transport.requests) == 1
        timers.advance(0.5)
        assert len(transport.requests) == 2
        assert transport.last.Url.startswith("https://mydb.firebaseio.com/.json")

    def test_close_during_retry_delay(self, supervisor: StreamSupervisor, transport, timers) -> None:
        supervisor.open("/")
        transport.finish(HTTPErrorCode_HTTPClientException)
        supervisor.close()
        timers.advance(5)
        assert len(transport.requests) == 1
        assert not supervisor.is_open()

    def test_error_handler_stops_reconnects(self, supervisor: StreamSupervisor, transport, timers) -> None:
        errors = []
        supervisor.open("/", on_error=lambda status, message: errors.append((status, message)))
        transport.finish(401, body=b'{"error": "Permission denied"}')
        assert errors == [(401, '{"error": "Permission denied"}')]
        assert not supervisor.is_open()
        timers.advance(120)
        assert len(transport.requests) == 1

    def test_parse_fault_reconnects_after_delay(self, supervisor: StreamSupervisor, transport, timers) -> None:
        supervisor.open("/")
        first = transport.last
        transport.feed("event: put\ndata: {broken\n\n")
        assert first in transport.cancelled
        assert len(transport.requests) == 1
        timers.advance(1)
        assert len(transport.requests) == 2

    def test_parse_fault_goes_to_error_handler(self, supervisor: StreamSupervisor, transport) -> None:
        errors = []
        supervisor.open("/", on_error=lambda status, message: errors.append(status))
        transport.feed("event: put\ndata: {broken\n\n")
        assert errors == [ERROR_STREAM_PARSE]
        assert supervisor.state == ConnectionState.CLOSED

    def test_invalid_utf8_is_a_parse_fault(self, supervisor: StreamSupervisor, transport) -> None:
        errors = []
        supervisor.open("/", on_error=lambda status, message: errors.append(status))
        first = transport.last
        transport.feed_bytes(b'event: put\ndata: {"path": "/a", "data": "\xff\xfe"}\n\n')
        assert errors == [ERROR_STREAM_PARSE]
        assert first in transport.cancelled
        assert supervisor.tree.root == {}

    def test_oversized_unterminated_frame_is_a_parse_fault(
        self, supervisor: StreamSupervisor, transport, timers
    ) -> None:
        supervisor.max_pending_chars = 64
        supervisor.open("/")
        first = transport.last
        transport.feed("event: put\ndata: " + "x" * 40)
        assert first not in transport.cancelled
        transport.feed("x" * 40)
        assert first in transport.cancelled
        timers.advance(1)
        assert len(transport.requests) == 2

    def test_reconnect_starts_with_empty_buffer(
        self, supervisor: StreamSupervisor, transport, timers
    ) -> None:
        supervisor.max_pending_chars = 64
        supervisor.open("/")
        transport.feed("x" * 100)
        timers.advance(1)
        transport.feed(frame("put", '{"path": "/a", "data": 1}'))
        assert supervisor.tree.extract("/a") == 1


# ---------------------------------------------------------------------------
# Reentrancy
# ---------------------------------------------------------------------------


class TestReentrancy:
    def test_close_and_open_from_observer(self, supervisor: StreamSupervisor, transport, timers) -> None:
        def reconnect(path, value):
            supervisor.close()
            supervisor.open("/other")

        supervisor.router.subscribe("/trigger", reconnect)
        supervisor.open("/")
        transport.feed(frame("put", '{"path": "/trigger", "data": 1}'))
        timers.run_soon()
        transport.finish_cancelled()

        assert len(transport.live) == 1
        assert transport.live[0].Url.startswith("https://mydb.firebaseio.com/other.json")
        assert len(timers.pending) == 1
        assert supervisor.is_open()

    def test_reopen_from_error_handler(self, supervisor: StreamSupervisor, transport, timers) -> None:
        def on_error(status, message):
            supervisor.close()
            supervisor.open("/", on_error=on_error)

        supervisor.open("/", on_error=on_error)
        transport.finish(500)
        assert len(transport.live) == 1
        assert len(timers.pending) == 1
        assert supervisor.is_open()
