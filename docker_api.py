"""
Docker Engine API client used by puller.

Talks to the daemon over its Unix socket (or plain HTTP for a tcp:// DOCKER_HOST)
through requests, and exposes only the container and image primitives the
reconciliation loop needs.
"""

import base64
import json
import logging
import os
import socket as _socket
from typing import Any, Dict, List, Optional, Tuple

import requests
from urllib3.connection import HTTPConnection as _HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool as _HTTPConnectionPool
from requests.adapters import HTTPAdapter as _HTTPAdapter

logger = logging.getLogger(__name__)

DOCKER_SOCKET_PATH = os.environ.get('DOCKER_SOCKET', '/var/run/docker.sock')
DOCKER_HUB_AUTH_SERVER = "https://index.docker.io/v1/"
REQUEST_TIMEOUT = 30
PULL_TIMEOUT = 300  # image pulls can take a while

_PLATFORM_MISMATCH_SIGNATURES = (
    "no matching manifest",
    "does not match the specified platform",
)


class DockerAPIError(Exception):
    """A Docker Engine request failed (transport error or HTTP status >= 400)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_platform_mismatch(self) -> bool:
        text = str(self).lower()
        return any(sig in text for sig in _PLATFORM_MISMATCH_SIGNATURES)


# ---------------------------------------------------------------------------
# Unix socket transport for requests
# ---------------------------------------------------------------------------

class _UnixSocketConnection(_HTTPConnection):
    """HTTPConnection that connects via a Unix domain socket."""

    def __init__(self, socket_path: str, timeout: Optional[float] = None):
        super().__init__('localhost')
        self._socket_path = socket_path
        self._sock_timeout = timeout

    def connect(self):
        sock = _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM)
        sock.settimeout(self._sock_timeout)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketPool(_HTTPConnectionPool):
    """Connection pool backed by a Unix domain socket."""

    def __init__(self, socket_path: str, timeout: Optional[float] = None):
        super().__init__('localhost')
        self._socket_path = socket_path
        self._sock_timeout = timeout

    def _new_conn(self):
        return _UnixSocketConnection(self._socket_path, self._sock_timeout)


class _UnixSocketAdapter(_HTTPAdapter):
    """requests adapter that routes all requests through a Unix socket."""

    def __init__(self, socket_path: str):
        self._socket_path = socket_path
        super().__init__()

    def get_connection(self, url: str, proxies=None):
        return _UnixSocketPool(self._socket_path, PULL_TIMEOUT)

    # Needed in requests >= 2.32 / urllib3 >= 2.x
    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return _UnixSocketPool(self._socket_path, PULL_TIMEOUT)


def resolve_base_url(docker_host: Optional[str] = None,
                     socket_path: str = DOCKER_SOCKET_PATH) -> Tuple[str, Optional[str]]:
    """Map a DOCKER_HOST value to (base_url, unix_socket_path).

    ``unix:///path`` and an empty value use the Unix socket; ``tcp://host:port``
    becomes ``http://host:port``.
    """
    if not docker_host:
        return 'http+unix://docker', socket_path
    if docker_host.startswith('unix://'):
        return 'http+unix://docker', docker_host[len('unix://'):]
    if docker_host.startswith('tcp://'):
        return 'http://' + docker_host[len('tcp://'):].rstrip('/'), None
    if docker_host.startswith(('http://', 'https://')):
        return docker_host.rstrip('/'), None
    raise ValueError(f"Unsupported DOCKER_HOST '{docker_host}'")


def encode_auth(username: str, password: str, server_address: str = '') -> Optional[str]:
    """Build the X-Registry-Auth header value, or None for anonymous pulls."""
    if not (username and password):
        return None
    if server_address in ('', 'docker.io', 'https://docker.io'):
        server_address = DOCKER_HUB_AUTH_SERVER
    payload = {
        'username': username,
        'password': password,
        'serveraddress': server_address,
    }
    return base64.urlsafe_b64encode(json.dumps(payload).encode('utf-8')).decode('ascii')


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
        if isinstance(body, dict) and body.get('message'):
            return body['message']
    except ValueError:
        pass
    return f"{response.status_code} {response.reason}".strip()


class DockerClient:
    """Minimal Docker Engine API client covering list/inspect/pull/create/start/stop/remove."""

    def __init__(self, docker_host: Optional[str] = None,
                 socket_path: str = DOCKER_SOCKET_PATH,
                 session: Optional[requests.Session] = None):
        self._base_url, unix_path = resolve_base_url(
            docker_host if docker_host is not None else os.environ.get('DOCKER_HOST'),
            socket_path,
        )
        self._session = session or requests.Session()
        if unix_path and session is None:
            self._session.mount('http+unix://', _UnixSocketAdapter(unix_path))

    def _url(self, path: str) -> str:
        return f'{self._base_url}{path}'

    def _request(self, method: str, path: str, timeout: float = REQUEST_TIMEOUT,
                 **kwargs) -> requests.Response:
        try:
            r = self._session.request(method, self._url(path), timeout=timeout, **kwargs)
        except requests.RequestException as e:
            raise DockerAPIError(f"{method} {path} failed: {e}") from e
        if r.status_code >= 400:
            raise DockerAPIError(_error_message(r), r.status_code)
        return r

    # -- daemon -------------------------------------------------------------

    def ping(self) -> bool:
        self._request('GET', '/_ping')
        return True

    # -- containers ---------------------------------------------------------

    def list_containers(self, all: bool = True) -> List[Dict[str, Any]]:
        params = {'all': '1' if all else '0'}
        return self._request('GET', '/containers/json', params=params).json()

    def inspect_container(self, container_id: str) -> Dict[str, Any]:
        return self._request('GET', f'/containers/{container_id}/json').json()

    def stop_container(self, container_id: str, timeout: int) -> None:
        # 304 means the container was already stopped
        self._request('POST', f'/containers/{container_id}/stop',
                      params={'t': timeout}, timeout=REQUEST_TIMEOUT + timeout)

    def restart_container(self, container_id: str, timeout: int) -> None:
        self._request('POST', f'/containers/{container_id}/restart',
                      params={'t': timeout}, timeout=REQUEST_TIMEOUT + timeout)

    def remove_container(self, container_id: str) -> None:
        self._request('DELETE', f'/containers/{container_id}')

    def create_container(self, name: str, body: Dict[str, Any]) -> str:
        r = self._request('POST', '/containers/create', params={'name': name}, json=body)
        return r.json()['Id']

    def start_container(self, container_id: str) -> None:
        self._request('POST', f'/containers/{container_id}/start')

    def connect_network(self, network: str, container_id: str,
                        endpoint_config: Optional[Dict[str, Any]] = None) -> None:
        self._request('POST', f'/networks/{network}/connect',
                      json={'Container': container_id, 'EndpointConfig': endpoint_config or {}})

    # -- images -------------------------------------------------------------

    def inspect_image(self, ref: str) -> Dict[str, Any]:
        return self._request('GET', f'/images/{ref}/json').json()

    def pull_image(self, repository: str, tag: str, platform: Optional[str] = None,
                   auth: Optional[str] = None) -> None:
        """Pull repository:tag, raising DockerAPIError on any reported failure.

        The Engine answers 200 and streams JSON progress events; failures that
        happen after the stream starts arrive as an ``error`` event.
        """
        params = {'fromImage': repository, 'tag': tag}
        if platform:
            params['platform'] = platform
        headers = {'X-Registry-Auth': auth} if auth else {}

        r = self._request('POST', '/images/create', params=params, headers=headers,
                          stream=True, timeout=PULL_TIMEOUT)
        try:
            for line in r.iter_lines():
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if 'error' in event:
                    raise DockerAPIError(event['error'])
        except requests.RequestException as e:
            raise DockerAPIError(f"Pull of {repository}:{tag} interrupted: {e}") from e
        finally:
            r.close()

    def tag_image(self, source: str, repository: str, tag: str) -> None:
        self._request('POST', f'/images/{source}/tag', params={'repo': repository, 'tag': tag})

    def remove_image(self, ref: str, force: bool = True) -> None:
        self._request('DELETE', f'/images/{ref}', params={'force': '1' if force else '0'})

    def prune_images(self, dangling: bool = True) -> Tuple[int, int]:
        """Prune unused images, returning (images_deleted, bytes_reclaimed)."""
        filters = {'dangling': ['true' if dangling else 'false']}
        data = self._request('POST', '/images/prune',
                             params={'filters': json.dumps(filters)}).json()
        deleted = data.get('ImagesDeleted') or []
        return len(deleted), int(data.get('SpaceReclaimed') or 0)
