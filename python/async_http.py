'''
async_http - Asynchronous HTTP request queue with callback support

Uses aiohttp for HTTP operations. Requests are queued and processed one at a
time by a single worker task, so an instance owns at most one live request.
Long-lived event streams get their own instance (see firebase_api).

Threading Model:
- Uses asyncio for asynchronous operations
- Callbacks can be both sync and async functions
- All callbacks are executed in the event loop thread
'''

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

import aiohttp


logger = logging.getLogger('firebase_stream.http')


# Operation status
class OperationState(Enum):
    '''Request lifecycle states'''
    CREATED = 'created'            # Request just created
    QUEUED = 'queued'              # Waiting in queue
    PROCESSING = 'processing'      # Picked up by worker
    DONE = 'done'                  # Finished, callback fired


# Transport error codes, reported in HttpRequest.Status when no HTTP status is available
HTTPErrorCode_ClientClosed = 16499
HTTPErrorCode_UnknownException = 16001
HTTPErrorCode_HTTPClientException = 16002
HTTPErrorCode_Disconnected = 16003
HTTPErrorCode_SocketConnectFailed = 16007
HTTPErrorCode_SocketConnectTimeout = 16008
HTTPErrorCode_SocketIOTimeout = 16009


class HttpRequest:
    '''
    Request object passed to user callbacks

    The same object is returned by the enqueue methods and can be handed
    back to AsyncHTTP.Cancel().
    '''

    def __init__(self, method: str, url: str):
        # HTTP method (GET/POST/...) and request URL
        self.HTTPMethod: str = method
        self.Url: str = url

        # Request headers and optional body
        self.Headers: Dict[str, str] = {}
        self.Data: str = ''

        # HTTP response status code, or HTTPErrorCode_* on transport failure
        self.Status: int = 0

        # True if connection and request succeeded (status 200-399)
        self.Succeeded: bool = False

        # Response headers (empty on transport failure)
        self.ResponseHeaders: Dict[str, str] = {}

        # Response body; stays empty for streamed requests
        self.Body: bytes = b''

        # Completion callback, receives this request
        self.Callback: Optional[Callable] = None

        # Streaming only: receives (request, chunk_bytes) for each body chunk
        self.OnChunk: Optional[Callable] = None

        self.State: OperationState = OperationState.CREATED

        # Internal: cancellation flag
        self._cancelled: bool = False

    @property
    def Streaming(self) -> bool:
        return self.OnChunk is not None

    @property
    def Cancelled(self) -> bool:
        return self._cancelled

    def Text(self) -> str:
        return self.Body.decode('utf-8', errors='replace')

    def JsonBody(self) -> Any:
        '''Decode the response body as JSON; raises ValueError on bad input'''
        return json.loads(self.Body.decode('utf-8'))

    def __repr__(self):
        return f'<HttpRequest {self.HTTPMethod} {self.Url} status={self.Status} state={self.State.value}>'


class AsyncHTTP:
    '''
    Asynchronous HTTP requests with queue management

    CALLBACK BEHAVIOR:
    - The request callback is ALWAYS called, even on errors and cancellation
    - On error: request.Status contains HTTPErrorCode_* and request.Succeeded = False
    - On success: request.Status contains the HTTP status code
    - Streamed requests deliver body chunks to OnChunk as they arrive and
      fire the callback once the stream ends

    Must be constructed while an event loop is running.
    '''

    def __init__(self):
        # Timeout settings (in milliseconds), 0 means no timeout
        self._connect_timeout: int = 0
        self._io_timeout: int = 0

        # Queue for requests
        self._queue: asyncio.Queue = asyncio.Queue()

        # Keep one session for the lifetime of the instance
        self._keep_connection: bool = True
        self._session: Optional[aiohttp.ClientSession] = None

        # Termination flag
        self._terminated: bool = False

        # Request currently being processed and its HTTP task
        self._current_request: Optional[HttpRequest] = None
        self._current_http_task: Optional[asyncio.Task] = None

        # Callbacks of requests dropped by CancelAll, held until they ran
        self._callback_tasks: Set[asyncio.Task] = set()

        # Worker task
        self._worker_task: Optional[asyncio.Task] = None
        self._start_worker()

    def _start_worker(self):
        '''Start the worker task'''
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._worker_loop())

    async def _worker_loop(self):
        '''Main worker loop processing queued requests'''
        while not self._terminated:
            try:
                # Wait for request with timeout to check termination flag
                try:
                    request = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                if request is None:  # Poison pill for shutdown
                    break

                if request._cancelled:
                    # Cancelled while queued, still owed a callback
                    request.Status = HTTPErrorCode_ClientClosed
                    await self._finish(request)
                    continue

                await self._process_request(request)

            except Exception:
                logger.exception('AsyncHTTP worker loop error')

        if self._session:
            await self._session.close()
            self._session = None

    async def _process_request(self, request: HttpRequest):
        '''Process a single HTTP request'''
        self._current_request = request
        request.State = OperationState.PROCESSING

        try:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()

            await self._perform_single_attempt(request)

            if request.Succeeded:
                logger.debug('%s %s -> %s', request.HTTPMethod, request.Url, request.Status)
            else:
                logger.debug('%s %s failed with %s', request.HTTPMethod, request.Url, request.Status)

            await self._finish(request)
        finally:
            self._current_request = None
            if not self._keep_connection and self._session:
                await self._session.close()
                self._session = None

    async def _finish(self, request: HttpRequest):
        request.State = OperationState.DONE
        if request.Callback:
            await self._invoke_callback(request.Callback, request)

    def _build_timeout(self, request: HttpRequest) -> aiohttp.ClientTimeout:
        '''Timeouts are kept in milliseconds, aiohttp uses seconds'''
        connect = self._connect_timeout / 1000.0 if self._connect_timeout > 0 else None
        if request.Streaming:
            # Stream liveness is watched by the caller (keep-alive watchdog)
            return aiohttp.ClientTimeout(total=None, connect=connect, sock_read=None)
        return aiohttp.ClientTimeout(
            total=None,
            connect=connect,
            sock_read=self._io_timeout / 1000.0 if self._io_timeout > 0 else None
        )

    async def _do_http_request(self, request: HttpRequest, kwargs: dict):
        '''
        Perform the actual HTTP request, filling status, headers and body
        This is separated to allow task cancellation
        '''
        if self._session is None or self._session.closed:
            raise RuntimeError('HTTP session is not available')

        async with self._session.request(request.HTTPMethod, request.Url, **kwargs) as response:
            request.Status = response.status
            request.ResponseHeaders = dict(response.headers)

            if request.Streaming and 200 <= response.status < 300:
                async for chunk in response.content.iter_any():
                    if request._cancelled:
                        break
                    await self._invoke_callback(request.OnChunk, request, chunk)
            else:
                request.Body = await response.read()

    async def _perform_single_attempt(self, request: HttpRequest):
        '''Perform a single HTTP request attempt'''
        request.Status = 0
        if request._cancelled:
            request.Status = HTTPErrorCode_ClientClosed
            return

        kwargs = {
            'headers': request.Headers,
            'timeout': self._build_timeout(request),
            # Redirects of a stream are handled by the stream owner
            'allow_redirects': not request.Streaming
        }
        if request.Data:
            kwargs['data'] = request.Data

        try:
            http_task = asyncio.create_task(self._do_http_request(request, kwargs))
            self._current_http_task = http_task

            try:
                await http_task
                request.Succeeded = 200 <= request.Status < 400
            finally:
                if self._current_http_task is http_task:
                    self._current_http_task = None

        except asyncio.CancelledError:
            # Request was cancelled (Cancel or CancelAll)
            request.Status = HTTPErrorCode_ClientClosed
            request.Succeeded = False
            request._cancelled = True

        except aiohttp.ServerTimeoutError:
            request.Status = HTTPErrorCode_SocketConnectTimeout if request.Status == 0 else HTTPErrorCode_SocketIOTimeout
            request.Succeeded = False

        except asyncio.TimeoutError:
            request.Status = HTTPErrorCode_ClientClosed if request._cancelled else HTTPErrorCode_SocketIOTimeout
            request.Succeeded = False

        except aiohttp.ClientConnectorError:
            request.Status = HTTPErrorCode_SocketConnectFailed
            request.Succeeded = False

        except aiohttp.ServerDisconnectedError:
            request.Status = HTTPErrorCode_Disconnected
            request.Succeeded = False

        except aiohttp.ClientError:
            request.Status = HTTPErrorCode_HTTPClientException
            request.Succeeded = False

        except RuntimeError as e:
            # Session closed or other runtime errors
            if 'session' in str(e).lower():
                request.Status = HTTPErrorCode_ClientClosed
            else:
                request.Status = HTTPErrorCode_UnknownException
            request.Succeeded = False

        except Exception:
            request.Status = HTTPErrorCode_UnknownException
            request.Succeeded = False
            logger.exception('AsyncHTTP unexpected error for %s %s', request.HTTPMethod, request.Url)

    async def _invoke_callback(self, callback: Callable, *args):
        '''Invoke callback, handling both sync and async functions'''
        try:
            if inspect.iscoroutinefunction(callback):
                await callback(*args)
            else:
                callback(*args)
        except Exception:
            logger.exception('Error in HTTP callback %r', callback)

    def _enqueue(self, request: HttpRequest) -> HttpRequest:
        request.State = OperationState.QUEUED
        self._queue.put_nowait(request)
        return request

    # Public API methods

    def HttpMethod(self, method: str, url: str, callback: Optional[Callable] = None,
                   headers: Optional[Dict[str, str]] = None, data: str = '') -> HttpRequest:
        '''
        Queue a request with any HTTP method

        Args:
            method: HTTP method (GET, POST, PUT, PATCH, DELETE)
            url: Request URL
            callback: Invoked with the request when done
            headers: Request headers
            data: Request body

        Returns:
            The queued request, usable as a handle for Cancel()
        '''
        request = HttpRequest(method.upper().strip() or 'GET', url)
        request.Headers = dict(headers or {})
        request.Data = data
        request.Callback = callback
        return self._enqueue(request)

    def Get(self, url: str, callback: Optional[Callable] = None,
            headers: Optional[Dict[str, str]] = None) -> HttpRequest:
        return self.HttpMethod('GET', url, callback, headers)

    def Post(self, url: str, data: str, callback: Optional[Callable] = None,
             headers: Optional[Dict[str, str]] = None) -> HttpRequest:
        return self.HttpMethod('POST', url, callback, headers, data)

    def Put(self, url: str, data: str, callback: Optional[Callable] = None,
            headers: Optional[Dict[str, str]] = None) -> HttpRequest:
        return self.HttpMethod('PUT', url, callback, headers, data)

    def Patch(self, url: str, data: str, callback: Optional[Callable] = None,
              headers: Optional[Dict[str, str]] = None) -> HttpRequest:
        return self.HttpMethod('PATCH', url, callback, headers, data)

    def Delete(self, url: str, callback: Optional[Callable] = None,
               headers: Optional[Dict[str, str]] = None) -> HttpRequest:
        return self.HttpMethod('DELETE', url, callback, headers)

    def Stream(self, url: str, on_chunk: Callable, callback: Optional[Callable] = None,
               headers: Optional[Dict[str, str]] = None) -> HttpRequest:
        '''
        Queue a long-lived streaming GET

        The response has no read timeout and redirects are not followed, so
        the callback sees 3xx responses with their Location header.
        '''
        request = HttpRequest('GET', url)
        request.Headers = dict(headers or {})
        request.Callback = callback
        request.OnChunk = on_chunk
        return self._enqueue(request)

    def Cancel(self, request: Optional[HttpRequest]):
        '''
        Cancel one request, queued or in flight

        Safe to call from inside any callback and for requests that already
        finished. The request callback still fires, with
        Status = HTTPErrorCode_ClientClosed.
        '''
        if request is None or request.State == OperationState.DONE:
            return
        request._cancelled = True
        if request is self._current_request and self._current_http_task is not None:
            if not self._current_http_task.done():
                self._current_http_task.cancel()

    def CancelAll(self):
        '''Abort the active request (if any) and cancel everything queued'''
        self.Cancel(self._current_request)
        while not self._queue.empty():
            try:
                request = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if request is not None:
                request._cancelled = True
                request.Status = HTTPErrorCode_ClientClosed
                request.State = OperationState.DONE
                if request.Callback:
                    task = asyncio.create_task(self._invoke_callback(request.Callback, request))
                    self._callback_tasks.add(task)
                    task.add_done_callback(self._callback_tasks.discard)

    # Properties

    @property
    def ConnectTimeout(self) -> int:
        '''Connection timeout in milliseconds'''
        return self._connect_timeout

    @ConnectTimeout.setter
    def ConnectTimeout(self, value: int):
        self._connect_timeout = value

    @property
    def IOTimeout(self) -> int:
        '''I/O timeout in milliseconds, not applied to streams'''
        return self._io_timeout

    @IOTimeout.setter
    def IOTimeout(self, value: int):
        self._io_timeout = value

    @property
    def KeepConnection(self) -> bool:
        '''When True, reuse one HTTP client session'''
        return self._keep_connection

    @KeepConnection.setter
    def KeepConnection(self, value: bool):
        self._keep_connection = value

    async def Destroy(self):
        '''
        Async cleanup method
        Call this explicitly before program exit for clean shutdown
        '''
        self.CancelAll()
        self._terminated = True

        if self._worker_task:
            await self._queue.put(None)  # Poison pill
            try:
                await asyncio.wait_for(self._worker_task, timeout=2.0)
            except asyncio.TimeoutError:
                self._worker_task.cancel()

        if self._session:
            await self._session.close()
            self._session = None
