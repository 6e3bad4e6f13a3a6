'''
firebase_timers - Cancellable timers on the running asyncio loop

Each scheduled timer is an asyncio task that sleeps and then calls its
handler. The task doubles as the handle passed back to cancel().
'''

import asyncio
import functools
import inspect
import logging
from typing import Callable, Optional, Set


logger = logging.getLogger('firebase_stream.timers')

# Async callbacks started by invoke_callback_sync and still running
_callback_tasks: Set[asyncio.Task] = set()


async def invoke_callback_async(callback: Callable, *args):
    '''Invoke callback asynchronously (for both sync and async functions)'''
    if inspect.iscoroutinefunction(callback):
        await callback(*args)
    else:
        callback(*args)


def invoke_callback_sync(callback: Callable, *args):
    '''
    Invoke callback now; async callbacks are scheduled as tasks

    Scheduled tasks are held until they finish, and their errors are logged
    here since nobody awaits them.
    '''
    if inspect.iscoroutinefunction(callback):
        task = asyncio.create_task(callback(*args))
        _callback_tasks.add(task)
        task.add_done_callback(functools.partial(_callback_task_done, callback))
    else:
        callback(*args)


def _callback_task_done(callback: Callable, task: asyncio.Task):
    _callback_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error('Error in async callback %r', callback, exc_info=error)


class TimerService:
    '''Timer service used by the stream supervisor'''

    def schedule(self, interval_sec: float, handler: Callable, *args) -> asyncio.Task:
        '''Start a timer as asyncio task'''
        return asyncio.create_task(self._timer_loop(interval_sec, handler, args))

    def cancel(self, timer_task: Optional[asyncio.Task]):
        '''Stop a timer task; a fired or missing timer is ignored'''
        if timer_task and not timer_task.done():
            timer_task.cancel()

    def call_soon(self, callback: Callable, *args):
        '''Run callback on a later loop iteration, in FIFO order'''
        asyncio.get_running_loop().call_soon(invoke_callback_sync, callback, *args)

    async def _timer_loop(self, interval_sec: float, handler: Callable, args: tuple):
        '''Timer loop that calls handler after interval'''
        try:
            await asyncio.sleep(interval_sec)
        except asyncio.CancelledError:
            return
        try:
            await invoke_callback_async(handler, *args)
        except Exception:
            logger.exception('Error in timer handler %r', handler)
