'''
firebase_tree - Local mirror of the remote JSON tree

Nodes are plain decoded JSON values: None, scalars, list and dict. Whether a
container is a list or a map is decided by json.loads and kept through every
mutation; index vs key addressing is an isinstance branch.

The mirror is owned by one writer (the stream supervisor). Readers only
ever get deep copies.
'''

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional


logger = logging.getLogger('firebase_stream.tree')

# Writing further than this past the end of a list turns it into a map
MAX_LIST_GAP = 1024


class EventKind(Enum):
    '''Kinds of change pushed by the server'''
    PUT = 'put'          # Replace the subtree at path, None deletes
    PATCH = 'patch'      # Put each child of a map payload under path


@dataclass(frozen=True)
class ChangeEvent:
    '''One change frame, path already normalized'''
    kind: EventKind
    path: str
    payload: Any


# Path helpers

def split_path(path: str) -> List[str]:
    '''"/a/b" -> ["a", "b"], "/" -> []'''
    return [part for part in (path or '').split('/') if part]


def normalize_path(path: str) -> str:
    '''Leading "/", no trailing "/" (except root), no empty segments'''
    return '/' + '/'.join(split_path(path))


def join_path(parent: str, child: str) -> str:
    parent = normalize_path(parent)
    if parent == '/':
        return normalize_path(child)
    return normalize_path(parent + '/' + child)


def is_ancestor(ancestor: str, path: str) -> bool:
    '''True if path equals ancestor or lies below it'''
    return ancestor == '/' or path == ancestor or path.startswith(ancestor + '/')


def _list_index(segment: str) -> Optional[int]:
    if segment.isascii() and segment.isdigit():
        return int(segment)
    return None


def _is_container(node: Any) -> bool:
    return isinstance(node, (dict, list))


class JsonTree:
    '''
    In-memory mirror of the server tree

    apply() mutates in place and then prunes containers left empty, so no
    empty dict or list survives below the root. It never raises on
    tree-shaped input: a scalar found where a container is needed is
    replaced by a fresh map.
    '''

    def __init__(self):
        self._root: Any = {}

    @property
    def root(self) -> Any:
        '''Snapshot of the whole mirror'''
        return copy.deepcopy(self._root)

    def clear(self):
        '''Forget the whole mirror'''
        self._root = {}

    def apply(self, event: ChangeEvent):
        '''Apply one change event to the mirror'''
        if event.kind == EventKind.PATCH:
            if isinstance(event.payload, dict):
                for child, value in event.payload.items():
                    if not split_path(child):
                        logger.debug('Skipping empty child name in patch at %s', event.path)
                        continue
                    self._put(join_path(event.path, child), value)
            else:
                logger.debug('Ignoring patch at %s with non-map payload', event.path)
        else:
            self._put(event.path, event.payload)

        if _is_container(self._root) and self._prune(self._root):
            self._root = {}

    def extract(self, path: str) -> Any:
        '''Copy of the node at path, or None if absent'''
        node = self._root
        for segment in split_path(path):
            if isinstance(node, dict):
                if segment not in node:
                    return None
                node = node[segment]
            elif isinstance(node, list):
                index = _list_index(segment)
                if index is None or index >= len(node):
                    return None
                node = node[index]
            else:
                return None
        return copy.deepcopy(node)

    def _put(self, path: str, value: Any):
        '''Replace the subtree at path; None deletes'''
        parts = split_path(path)
        value = copy.deepcopy(value)

        if not parts:
            self._root = value if value is not None else {}
            return

        if not _is_container(self._root):
            logger.debug('Replacing scalar root to write %s', path)
            self._root = {}

        parent = None
        parent_key = None
        node = self._root

        for part in parts[:-1]:
            node = self._ensure_addressable(node, part, parent, parent_key)

            child = self._get_child(node, part)
            if not _is_container(child):
                # Remove invalid object and add a new one to continue path
                if child is not None:
                    logger.debug('Overwriting scalar at segment %r of %s', part, path)
                child = {}
                self._set_child(node, part, child)

            parent, parent_key = node, part
            node = child

        last = parts[-1]
        node = self._ensure_addressable(node, last, parent, parent_key, growing=value is not None)

        if value is None:
            self._delete_child(node, last)
        else:
            self._set_child(node, last, value)

    def _ensure_addressable(self, node, segment: str, parent, parent_key, growing: bool = True):
        '''
        A list can only be addressed by non-negative integer segments that
        stay within MAX_LIST_GAP of its end when the write grows it.
        Otherwise the list is turned into a map keyed by its indices.
        '''
        if not isinstance(node, list):
            return node
        index = _list_index(segment)
        if index is not None and (not growing or index <= len(node) + MAX_LIST_GAP):
            return node

        logger.debug('Converting list to map for key %r', segment)
        converted = {str(i): item for i, item in enumerate(node) if item is not None}
        if parent is None:
            self._root = converted
        else:
            self._set_child(parent, parent_key, converted)
        return converted

    @staticmethod
    def _get_child(node, segment: str) -> Any:
        if isinstance(node, dict):
            return node.get(segment)
        index = _list_index(segment)
        if index < len(node):
            return node[index]
        return None

    @staticmethod
    def _set_child(node, segment: str, value: Any):
        if isinstance(node, dict):
            node[segment] = value
            return
        index = _list_index(segment)
        if index >= len(node):
            node.extend([None] * (index + 1 - len(node)))
        node[index] = value

    @staticmethod
    def _delete_child(node, segment: str):
        if isinstance(node, dict):
            node.pop(segment, None)
            return
        # Lists keep their holes, indices never shift
        index = _list_index(segment)
        if index < len(node):
            node[index] = None

    def _prune(self, node) -> bool:
        '''Drop empty containers and null map entries below node; True if node ended empty'''
        if isinstance(node, dict):
            for key in list(node):
                child = node[key]
                if child is None or (_is_container(child) and self._prune(child)):
                    del node[key]
            return not node

        for i, child in enumerate(node):
            if _is_container(child) and self._prune(child):
                node[i] = None
        while node and node[-1] is None:
            node.pop()
        return not node
