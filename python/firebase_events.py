'''
firebase_events - Parser for the realtime database event stream

A frame is two lines:

    event: put
    data: {"path": "/foo", "data": {"bar": 5}}

Frames are separated by blank lines. "keep-alive" frames only signal
liveness. A bare three-line "{" / body / "}" block is an error envelope
from the server and does not touch the tree.
'''

import json
import logging
from typing import Any, List

from firebase_tree import ChangeEvent, EventKind, normalize_path


logger = logging.getLogger('firebase_stream.parser')


EVENT_PREFIX = 'event:'
DATA_PREFIX = 'data:'

KEEP_ALIVE_EVENT = 'keep-alive'

# Server notices that carry no tree data
NOTICE_EVENTS = ('cancel', 'auth_revoked')


class FrameParseError(ValueError):
    '''A data line could not be decoded into a change'''

    def __init__(self, message: str, line: str = ''):
        super().__init__(message)
        self.line = line


def _decode_data(event_type: str, raw: str) -> ChangeEvent:
    try:
        frame = json.loads(raw)
    except ValueError as e:
        raise FrameParseError(f'Invalid JSON in {event_type!r} frame: {e}', raw) from e

    if not isinstance(frame, dict) or 'path' not in frame:
        raise FrameParseError(f'{event_type!r} frame has no path', raw)

    kind = EventKind(event_type)
    payload = frame.get('data')
    if kind == EventKind.PATCH and not isinstance(payload, dict):
        raise FrameParseError('patch frame data must be an object', raw)

    return ChangeEvent(kind, normalize_path(str(frame['path'])), payload)


def _log_error_envelope(lines: List[str]):
    body = '\n'.join(lines)
    try:
        envelope: Any = json.loads(body)
    except ValueError:
        logger.error('Server error: %s', body)
        return
    if isinstance(envelope, dict) and 'error' in envelope:
        logger.error('Server error: %s', envelope['error'])
    else:
        logger.error('Server error: %s', envelope)


def parse_frames(text: str) -> List[ChangeEvent]:
    '''
    Convert a block of stream text into change events, in frame order

    Incomplete trailing frames are skipped. Raises FrameParseError when a
    put/patch data line is not valid JSON.
    '''
    lines = [line.rstrip('\r') for line in (text or '').split('\n')]
    events: List[ChangeEvent] = []

    i = 0
    while i + 1 < len(lines):
        line = lines[i].strip()

        if line.startswith(EVENT_PREFIX) and lines[i + 1].lstrip().startswith(DATA_PREFIX):
            event_type = line[len(EVENT_PREFIX):].strip().lower()
            raw = lines[i + 1].lstrip()[len(DATA_PREFIX):].strip()
            i += 2

            if event_type == KEEP_ALIVE_EVENT:
                continue
            if event_type in (EventKind.PUT.value, EventKind.PATCH.value):
                events.append(_decode_data(event_type, raw))
            elif event_type in NOTICE_EVENTS:
                logger.warning('Stream %s: %s', event_type, raw)
            else:
                logger.info('Skipping unknown stream event %r', event_type)
            continue

        if line == '{' and i + 2 < len(lines) and lines[i + 2].strip() == '}':
            _log_error_envelope(lines[i:i + 3])
            i += 3
            continue

        i += 1

    return events
