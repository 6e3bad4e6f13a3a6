'''
firebase_router - Decides which observers fire for a change event

Must run after the tree has applied the event, so values pulled from the
tree reflect the new state. For each subscription at most one rule fires:

1. The subscription path is the event path or one of its ancestors:
   the observer gets the event's own path and payload.
2. A patch writes a child exactly at the subscription path:
   the observer gets its path and the cached value.
3. The event path is an ancestor of the subscription path:
   the observer gets its path and the cached value.
'''

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from firebase_tree import (
    ChangeEvent, EventKind, JsonTree, is_ancestor, join_path, normalize_path, split_path,
)


logger = logging.getLogger('firebase_stream.router')


@dataclass(frozen=True)
class Delivery:
    '''One pending observer invocation'''
    observer: Callable
    path: str
    value: Any


class SubscriptionRouter:
    '''Registry of observers keyed by normalized path'''

    def __init__(self):
        self._observers: Dict[str, Callable] = {}

    def subscribe(self, path: str, observer: Callable):
        '''Register observer(path, value) for path, replacing any previous one'''
        path = normalize_path(path)
        if path in self._observers:
            logger.debug('Replacing observer for %s', path)
        self._observers[path] = observer

    def unsubscribe(self, path: str) -> bool:
        return self._observers.pop(normalize_path(path), None) is not None

    @property
    def paths(self) -> List[str]:
        return list(self._observers)

    def __len__(self):
        return len(self._observers)

    def dispatch(self, event: ChangeEvent, tree: JsonTree) -> List[Delivery]:
        '''Deliveries for one event, in subscription order'''
        deliveries: List[Delivery] = []
        event_path = event.path

        # Snapshot so observers may (un)subscribe while deliveries are pending
        for sub_path, observer in list(self._observers.items()):
            if is_ancestor(sub_path, event_path):
                deliveries.append(Delivery(observer, event_path, copy.deepcopy(event.payload)))
                continue

            if event.kind == EventKind.PATCH and self._patch_writes(event, sub_path):
                deliveries.append(Delivery(observer, sub_path, tree.extract(sub_path)))
                continue

            if is_ancestor(event_path, sub_path):
                deliveries.append(Delivery(observer, sub_path, tree.extract(sub_path)))

        return deliveries

    @staticmethod
    def _patch_writes(event: ChangeEvent, sub_path: str) -> bool:
        if not isinstance(event.payload, dict):
            return False
        return any(split_path(child) and join_path(event.path, child) == sub_path
                   for child in event.payload)
