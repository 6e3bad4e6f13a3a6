'''
firebase_config - Connection settings and URL construction
'''

import json
import logging
import os
from dataclasses import dataclass, fields
from urllib.parse import urlencode, urlsplit

from firebase_tree import split_path


logger = logging.getLogger('firebase_stream.config')


# Redirect targets are cut after this host suffix
FIREBASE_HOST_SUFFIX = '.firebaseio.com'

DEFAULT_KEEP_ALIVE_SEC = 60.0
DEFAULT_RETRY_DELAY_SEC = 1.0


def extract_base_host(location: str) -> str:
    '''
    Base URL from a redirect Location header

    "https://db-2.firebaseio.com/foo.json?ns=db" -> "https://db-2.firebaseio.com"
    '''
    location = location.strip()
    end = location.find(FIREBASE_HOST_SUFFIX)
    if end >= 0:
        return location[:end + len(FIREBASE_HOST_SUFFIX)]
    parts = urlsplit(location)
    if parts.scheme and parts.netloc:
        return f'{parts.scheme}://{parts.netloc}'
    return location.rstrip('/')


@dataclass
class FirebaseConfig:
    '''Settings for one database connection'''
    base_url: str                                   # e.g. https://mydb.firebaseio.com
    namespace: str = ''                             # "ns" query parameter, derived from host when empty
    auth_token: str = ''                            # Sent as "_auth" when set
    keep_alive_interval: float = DEFAULT_KEEP_ALIVE_SEC   # Stream is restarted after this long without data
    retry_delay: float = DEFAULT_RETRY_DELAY_SEC    # Delay before reconnecting after a stream error
    connect_timeout: int = 10000                    # Milliseconds
    io_timeout: int = 30000                         # Milliseconds, REST requests only
    debug: bool = False

    def __post_init__(self):
        self.base_url = self.base_url.rstrip('/')
        if not self.namespace:
            self.namespace = self.default_namespace()

    def default_namespace(self) -> str:
        '''First label of the host: https://mydb.firebaseio.com -> mydb'''
        host = urlsplit(self.base_url).hostname or ''
        return host.split('.')[0] if host else ''

    def build_url(self, path: str, **query) -> str:
        '''<base>/<path>.json?ns=<db>[&_auth=<token>]'''
        params = {'ns': self.namespace}
        if self.auth_token:
            params['_auth'] = self.auth_token
        params.update(query)
        return f"{self.base_url}/{'/'.join(split_path(path))}.json?{urlencode(params)}"

    def stream_url(self, path: str) -> str:
        return self.build_url(path)

    def set_base_host(self, location: str) -> str:
        '''Follow a redirect: keep using the new host for all requests'''
        new_base = extract_base_host(location)
        if new_base != self.base_url:
            logger.info('Base URL moved from %s to %s', self.base_url, new_base)
        self.base_url = new_base
        return new_base

    @classmethod
    def from_env(cls, prefix: str = 'FIREBASE_') -> 'FirebaseConfig':
        '''Read <prefix>URL, NAMESPACE, AUTH, KEEP_ALIVE, RETRY_DELAY, DEBUG'''
        url = os.environ.get(prefix + 'URL')
        if not url:
            raise ValueError(f'{prefix}URL is not set')

        config = cls(
            base_url=url,
            namespace=os.environ.get(prefix + 'NAMESPACE', ''),
            auth_token=os.environ.get(prefix + 'AUTH', ''),
        )
        keep_alive = os.environ.get(prefix + 'KEEP_ALIVE')
        if keep_alive:
            config.keep_alive_interval = float(keep_alive)
        retry_delay = os.environ.get(prefix + 'RETRY_DELAY')
        if retry_delay:
            config.retry_delay = float(retry_delay)
        config.debug = os.environ.get(prefix + 'DEBUG', '').lower() in ('1', 'true', 'yes', 'on')
        return config

    @classmethod
    def from_file(cls, filename: str) -> 'FirebaseConfig':
        '''Load settings from a JSON object file'''
        with open(filename, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f'{filename}: expected a JSON object')

        known = {f.name for f in fields(cls)}
        kwargs = {key: value for key, value in data.items() if key in known}
        if 'base_url' not in kwargs:
            raise ValueError(f'{filename}: base_url is required')
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning('%s: ignoring unknown keys %s', filename, ', '.join(unknown))
        config = cls(**kwargs)
        logger.debug('Loaded config from %s', filename)
        return config
