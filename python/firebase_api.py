'''
firebase_api - Client for a Firebase-style realtime database (REST + event stream)

Keeps a local mirror of the server tree in sync through the event stream and
notifies observers registered per path. One-shot REST calls (get, post, put,
patch, delete) go through a separate request queue.

Threading Model:
- Uses asyncio for asynchronous operations
- All callbacks are executed in the event loop thread
- Callbacks can be both sync and async functions
- HTTP clients are created on first use, so the object itself can be built
  before the event loop starts
'''

import asyncio
import json
import logging
from typing import Any, Callable, Optional

from async_http import AsyncHTTP, HttpRequest
from firebase_config import FirebaseConfig
from firebase_router import SubscriptionRouter
from firebase_stream import ConnectionState, StreamSupervisor
from firebase_timers import TimerService, invoke_callback_sync
from firebase_tree import JsonTree


logger = logging.getLogger('firebase_stream.api')

LOGGER_NAMESPACE = 'firebase_stream'


class FirebaseError(Exception):
    '''A REST call returned a non-2xx status or an unreadable body'''

    def __init__(self, status: int, message: str):
        super().__init__(f'{status}: {message}')
        self.status = status
        self.message = message


def set_debug(enabled: bool):
    '''Toggle debug logging for every firebase_stream logger'''
    logging.getLogger(LOGGER_NAMESPACE).setLevel(logging.DEBUG if enabled else logging.WARNING)


class FirebaseAPI:
    '''
    Realtime database client

    Usage (inside a running event loop):

        api = FirebaseAPI(FirebaseConfig('https://mydb.firebaseio.com'))
        api.subscribe('/rooms/lobby', on_lobby)
        api.open('/rooms')
        ...
        await api.destroy()
    '''

    def __init__(self, config: FirebaseConfig, timers: Optional[TimerService] = None):
        '''Creates the client without starting any network activity'''
        self.config = config
        if config.debug:
            set_debug(True)

        # Mirror and observers
        self.tree = JsonTree()
        self.router = SubscriptionRouter()

        # HTTP clients: REST queue and event stream
        self._http: Optional[AsyncHTTP] = None
        self._http_events: Optional[AsyncHTTP] = None

        self._timers = timers if timers is not None else TimerService()
        self._supervisor: Optional[StreamSupervisor] = None

    # HTTP client methods

    def configure_http_client(self):
        '''Creates and configures HTTP clients for REST and streaming'''
        if self._http is None:
            self._http = AsyncHTTP()
        self._http.ConnectTimeout = self.config.connect_timeout
        self._http.IOTimeout = self.config.io_timeout
        self._http.KeepConnection = True

        if self._http_events is None:
            self._http_events = AsyncHTTP()
        self._http_events.ConnectTimeout = self.config.connect_timeout
        self._http_events.KeepConnection = True

    @property
    def supervisor(self) -> StreamSupervisor:
        if self._supervisor is None:
            self.configure_http_client()
            self._supervisor = StreamSupervisor(
                self._http_events, self._timers, self.config, self.tree, self.router)
        return self._supervisor

    # Streaming

    def open(self, path: str = '/', on_error: Optional[Callable] = None) -> bool:
        '''Start mirroring path; returns False if a stream is already open'''
        return self.supervisor.open(path, on_error)

    def close(self):
        if self._supervisor is not None:
            self._supervisor.close()

    def is_open(self) -> bool:
        return self._supervisor is not None and self._supervisor.is_open()

    @property
    def state(self) -> ConnectionState:
        if self._supervisor is None:
            return ConnectionState.CLOSED
        return self._supervisor.state

    def subscribe(self, path: str, observer: Callable):
        '''observer(path, value) fires whenever the subtree at path changes'''
        self.router.subscribe(path, observer)

    def unsubscribe(self, path: str) -> bool:
        return self.router.unsubscribe(path)

    def read_cached(self, path: str = '/') -> Any:
        '''Current mirror value at path, None when absent'''
        return self.tree.extract(path)

    def set_debug(self, enabled: bool):
        self.config.debug = enabled
        set_debug(enabled)

    # REST API

    def get(self, path: str, callback: Optional[Callable] = None) -> HttpRequest:
        '''Fetch the value at path; callback(error, data)'''
        return self._rest('GET', path, None, callback)

    def post(self, path: str, value: Any, callback: Optional[Callable] = None) -> HttpRequest:
        '''Create a child with a server-generated key; data is {"name": key}'''
        return self._rest('POST', path, value, callback)

    def put(self, path: str, value: Any, callback: Optional[Callable] = None) -> HttpRequest:
        '''Replace the value at path'''
        return self._rest('PUT', path, value, callback)

    def patch(self, path: str, value: dict, callback: Optional[Callable] = None) -> HttpRequest:
        '''Update the given children of path'''
        if not isinstance(value, dict):
            raise TypeError('patch value must be a dict')
        return self._rest('PATCH', path, value, callback)

    def delete(self, path: str, callback: Optional[Callable] = None) -> HttpRequest:
        return self._rest('DELETE', path, None, callback)

    def _rest(self, method: str, path: str, value: Any, callback: Optional[Callable]) -> HttpRequest:
        self.configure_http_client()
        data = json.dumps(value) if method in ('POST', 'PUT', 'PATCH') else ''
        headers = {'content-type': 'application/json'} if data else {}

        def on_done(request: HttpRequest):
            error, result = self.parse_response(request)
            if error is not None:
                logger.warning('%s %s failed: %s', request.HTTPMethod, path, error)
            if callback is not None:
                invoke_callback_sync(callback, error, result)

        return self._http.HttpMethod(method, self.config.build_url(path), on_done, headers, data)

    @staticmethod
    def parse_response(request: HttpRequest):
        '''(error, data) for a finished REST request'''
        if not 200 <= request.Status < 300:
            message = request.Text() if request.Body else f'HTTP status {request.Status}'
            try:
                body = request.JsonBody()
            except ValueError:
                body = None
            if isinstance(body, dict) and 'error' in body:
                message = str(body['error'])
            return FirebaseError(request.Status, message), None

        if not request.Body:
            return None, None
        try:
            return None, request.JsonBody()
        except ValueError as e:
            return FirebaseError(request.Status, f'Invalid JSON response: {e}'), None

    async def destroy(self):
        '''
        Async cleanup method
        Call this explicitly before program exit for clean shutdown
        '''
        self.close()
        self.tree.clear()
        clients = [client for client in (self._http, self._http_events) if client is not None]
        await asyncio.gather(*(client.Destroy() for client in clients), return_exceptions=True)
        self._http = None
        self._http_events = None
        self._supervisor = None
