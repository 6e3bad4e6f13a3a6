'''
firebase_stream - Supervisor for the long-lived event stream

Owns one streaming request and one keep-alive watchdog at a time. Every
inbound chunk is parsed into change events; each event is applied to the
tree and then routed to observers.

Threading Model:
- Runs on one asyncio loop; the tree is only mutated from the chunk handler
- Apply and dispatch of one event happen without yielding to the loop
- Observer callbacks are deferred with call_soon, in event order
- Completions and chunks of a request that is no longer current are
  ignored, so close()/open() are safe from inside any callback
'''

import codecs
import logging
from enum import Enum
from typing import Any, Callable, Optional

from async_http import (
    HttpRequest,
    HTTPErrorCode_ClientClosed,
    HTTPErrorCode_SocketConnectTimeout,
    HTTPErrorCode_SocketIOTimeout,
)
from firebase_config import FirebaseConfig
from firebase_events import FrameParseError, parse_frames
from firebase_router import Delivery, SubscriptionRouter
from firebase_timers import invoke_callback_sync
from firebase_tree import JsonTree, normalize_path


logger = logging.getLogger('firebase_stream.stream')


HTTP_TEMPORARY_REDIRECT = 307
HTTP_TOO_MANY_REQUESTS = 429

# Reported to on_error when the stream carried undecodable data
ERROR_STREAM_PARSE = 16100

# Statuses that reconnect right away
RECONNECT_NOW_STATUSES = (
    HTTPErrorCode_SocketIOTimeout,
    HTTPErrorCode_SocketConnectTimeout,
    HTTP_TOO_MANY_REQUESTS,
)

STREAM_HEADERS = {'accept': 'text/event-stream'}

FRAME_SEPARATOR = '\n\n'

# Largest unterminated frame kept while waiting for its separator
MAX_PENDING_CHARS = 4 * 1024 * 1024


class ConnectionState(Enum):
    '''Stream connection states'''
    CLOSED = 'closed'          # No stream and no pending reconnect
    STREAMING = 'streaming'    # Stream request live, or reconnect pending


class StreamSupervisor:
    '''
    Keeps the mirror in sync with the server event stream

    Args:
        transport: object with Stream(url, on_chunk, callback, headers) and Cancel(request)
        timers: object with schedule(delay, handler), cancel(handle), call_soon(fn, *args)
        config: base URL, namespace, auth token and intervals
        tree: mirror updated from the stream
        router: observers notified after each applied event
    '''

    def __init__(self, transport, timers, config: FirebaseConfig,
                 tree: Optional[JsonTree] = None,
                 router: Optional[SubscriptionRouter] = None):
        self._transport = transport
        self._timers = timers
        self.config = config
        self.tree = tree if tree is not None else JsonTree()
        self.router = router if router is not None else SubscriptionRouter()

        self._state: ConnectionState = ConnectionState.CLOSED

        # Current stream settings, read by every handler
        self._path: str = '/'
        self._on_error: Optional[Callable] = None

        # Live request and timer handles
        self._request: Optional[HttpRequest] = None
        self._keep_alive_timer: Any = None
        self._retry_timer: Any = None

        # Undecoded tail of the stream (partial frame)
        self._decoder = codecs.getincrementaldecoder('utf-8')()
        self._buffer: str = ''

        self.max_pending_chars: int = MAX_PENDING_CHARS

        # Optional state listener: fn(supervisor, state)
        self.on_state_changed: Optional[Callable] = None

    # Public API

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def path(self) -> str:
        return self._path

    def is_open(self) -> bool:
        return self._state == ConnectionState.STREAMING

    def open(self, path: str = '/', on_error: Optional[Callable] = None) -> bool:
        '''
        Start streaming path

        on_error(status, message) takes over error handling: when given, a
        stream error closes the connection instead of retrying.
        Returns False if already streaming.
        '''
        if self.is_open():
            return False

        self._path = normalize_path(path)
        self._on_error = on_error
        self._start_stream()
        return True

    def close(self):
        '''Stop streaming; safe to call at any time, any number of times'''
        self._stop_keep_alive()
        self._timers.cancel(self._retry_timer)
        self._retry_timer = None

        request, self._request = self._request, None
        if request is not None:
            self._transport.Cancel(request)

        self._set_state(ConnectionState.CLOSED)

    # Stream lifecycle

    def _set_state(self, value: ConnectionState):
        if self._state != value:
            self._state = value
            logger.debug('Stream state: %s', value.value)
            if self.on_state_changed:
                invoke_callback_sync(self.on_state_changed, self, value)

    def _start_stream(self):
        url = self.config.stream_url(self._path)
        logger.info('Opening stream %s', url)

        self._decoder.reset()
        self._buffer = ''
        self._request = self._transport.Stream(
            url,
            self._handle_chunk,
            self._handle_stream_done,
            headers=dict(STREAM_HEADERS),
        )
        self._start_keep_alive()
        self._set_state(ConnectionState.STREAMING)

    def _restart_stream(self):
        '''Drop the current request and reconnect at the same path'''
        request, self._request = self._request, None
        if request is not None:
            self._transport.Cancel(request)
        self._start_stream()

    def _start_keep_alive(self):
        self._timers.cancel(self._keep_alive_timer)
        self._keep_alive_timer = self._timers.schedule(
            self.config.keep_alive_interval, self._keep_alive_expired)

    def _stop_keep_alive(self):
        self._timers.cancel(self._keep_alive_timer)
        self._keep_alive_timer = None

    def _keep_alive_expired(self):
        '''No data within the keep-alive interval: assume a dead socket'''
        self._keep_alive_timer = None
        if self._request is None:
            return
        logger.warning('No data on %s for %ss, reconnecting', self._path, self.config.keep_alive_interval)
        self._restart_stream()

    def _retry_expired(self):
        self._retry_timer = None
        if self._state == ConnectionState.STREAMING and self._request is None:
            self._start_stream()

    # Transport callbacks

    def _handle_chunk(self, request: HttpRequest, chunk: bytes):
        if request is not self._request:
            return

        self._start_keep_alive()

        try:
            text = self._decoder.decode(chunk)
        except UnicodeDecodeError as e:
            logger.error('Undecodable bytes on %s: %s', self._path, e)
            self._fault(ERROR_STREAM_PARSE, f'Invalid UTF-8 in stream: {e}')
            return

        self._buffer = (self._buffer + text).replace('\r\n', '\n')
        end = self._buffer.rfind(FRAME_SEPARATOR)
        if end < 0:
            if len(self._buffer) > self.max_pending_chars:
                logger.error('Unterminated frame on %s exceeds %s chars', self._path, self.max_pending_chars)
                self._fault(ERROR_STREAM_PARSE, 'Frame too large')
            return
        text, self._buffer = self._buffer[:end], self._buffer[end + len(FRAME_SEPARATOR):]

        try:
            events = parse_frames(text)
        except FrameParseError as e:
            logger.error('Bad frame on %s: %s', self._path, e)
            self._fault(ERROR_STREAM_PARSE, str(e))
            return

        for event in events:
            logger.debug('%s %s', event.kind.value, event.path)
            self.tree.apply(event)
            for delivery in self.router.dispatch(event, self.tree):
                self._timers.call_soon(self._deliver, delivery)

    def _handle_stream_done(self, request: HttpRequest):
        if request is not self._request:
            return
        self._request = None
        self._stop_keep_alive()

        status = request.Status
        if status == HTTPErrorCode_ClientClosed:
            # Cancelled outside of close(); nothing more to do
            self._set_state(ConnectionState.CLOSED)
            return

        if status == HTTP_TEMPORARY_REDIRECT:
            location = _header(request, 'Location')
            if location:
                self.config.set_base_host(location)
                self._start_stream()
                return

        if status in RECONNECT_NOW_STATUSES or 200 <= status < 300:
            logger.info('Stream on %s ended with %s, reconnecting', self._path, status)
            self._start_stream()
            return

        self._fault(status, _describe(request))

    def _fault(self, status: int, message: str):
        '''Error path: hand over to on_error, or retry after a short delay'''
        request, self._request = self._request, None
        if request is not None:
            self._transport.Cancel(request)
        self._stop_keep_alive()

        if self._on_error is not None:
            on_error = self._on_error
            self._set_state(ConnectionState.CLOSED)
            invoke_callback_sync(on_error, status, message)
            return

        logger.error('Stream error %s on %s: %s; retrying in %ss',
                     status, self._path, message, self.config.retry_delay)
        self._timers.cancel(self._retry_timer)
        self._retry_timer = self._timers.schedule(self.config.retry_delay, self._retry_expired)

    def _deliver(self, delivery: Delivery):
        try:
            invoke_callback_sync(delivery.observer, delivery.path, delivery.value)
        except Exception:
            logger.exception('Observer for %s failed', delivery.path)


def _header(request: HttpRequest, name: str) -> str:
    for key, value in request.ResponseHeaders.items():
        if key.lower() == name.lower():
            return value
    return ''


def _describe(request: HttpRequest) -> str:
    if request.Body:
        return request.Text()
    return f'HTTP status {request.Status}'
