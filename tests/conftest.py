"""Shared fixtures: an in-memory stand-in for the Docker Engine client."""

import copy
import itertools

import pytest

from docker_api import DockerAPIError
from notify import Notifier
from puller_config import PullerConfig, RegistryCredential

T1 = "2024-03-01T10:00:00.123456789Z"
T2 = "2024-04-01T10:00:00.987654321Z"
T0 = "2024-01-01T10:00:00Z"


class FakeDockerClient:
    """Keeps containers, local images and a fake registry in dicts.

    Every call is appended to ``calls`` as ``(method, *args)``. Failures are
    injected through ``fail_on`` keyed by method name or ``(method, key)``.
    """

    def __init__(self):
        self.containers = {}      # id -> inspect data
        self.order = []           # listing order
        self.images = {}          # id -> inspect data
        self.registry = {}        # "repo:tag" -> image data a pull will produce
        self.pull_errors = {}     # ("repo:tag", platform) or "repo:tag" -> list of errors
        self.fail_on = {}
        self.calls = []
        self.pruned = 0
        self._ids = itertools.count(1)

    # -- test setup helpers ---------------------------------------------------

    def _new_id(self, prefix):
        return f"{prefix}{next(self._ids):062d}"

    def add_image(self, tags=(), created=T1, image_id=None, os='linux', arch='amd64'):
        image_id = image_id or self._new_id('sha256:')
        self.images[image_id] = {
            'Id': image_id,
            'RepoTags': [],
            'Created': created,
            'Os': os,
            'Architecture': arch,
        }
        for tag in tags:
            self._move_tag(tag, image_id)
        return image_id

    def publish(self, ref, created=T2, image_id=None, os='linux', arch='amd64'):
        """Make ref:tag pullable from the fake registry."""
        image_id = image_id or self._new_id('sha256:')
        self.registry[ref] = {
            'Id': image_id,
            'Created': created,
            'Os': os,
            'Architecture': arch,
        }
        return image_id

    def add_container(self, name, image_ref, image_id, labels=None, state='running',
                      env=None, binds=None, networks=None, network_mode='bridge', cmd=None):
        container_id = self._new_id('c')
        if networks is None:
            networks = {'bridge': {'Aliases': None, 'IPAddress': '172.17.0.2',
                                   'NetworkID': 'n1', 'EndpointID': 'e1'}}
        self.containers[container_id] = {
            'Id': container_id,
            'Name': f'/{name}',
            'Image': image_id,
            'State': {'Status': state},
            'Config': {
                'Hostname': container_id[:12],
                'Image': image_ref,
                'Env': list(env or ['PATH=/usr/bin']),
                'Cmd': cmd or ['serve'],
                'Labels': dict(labels or {}),
            },
            'HostConfig': {
                'Binds': list(binds or []),
                'NetworkMode': network_mode,
                'RestartPolicy': {'Name': 'unless-stopped'},
            },
            'Mounts': [],
            'NetworkSettings': {'Networks': copy.deepcopy(networks)},
        }
        self.order.append(container_id)
        return container_id

    def by_name(self, name):
        for data in self.containers.values():
            if data['Name'] == f'/{name}':
                return data
        return None

    def called(self, method):
        return [c for c in self.calls if c[0] == method]

    # -- internals ------------------------------------------------------------

    def _maybe_fail(self, method, key=None):
        error = self.fail_on.get((method, key)) or self.fail_on.get(method)
        if error is not None:
            raise error

    def _normalize(self, ref):
        last_slash = ref.rfind('/')
        if ref.rfind(':') <= last_slash and not ref.startswith('sha256:'):
            return f"{ref}:latest"
        return ref

    def _find_image(self, ref):
        if ref in self.images:
            return self.images[ref]
        ref = self._normalize(ref)
        for data in self.images.values():
            if ref in data['RepoTags']:
                return data
        return None

    def _move_tag(self, ref, image_id):
        for data in self.images.values():
            if ref in data['RepoTags']:
                data['RepoTags'].remove(ref)
        self.images[image_id]['RepoTags'].append(ref)

    # -- client interface -----------------------------------------------------

    def ping(self):
        self.calls.append(('ping',))
        self._maybe_fail('ping')
        return True

    def list_containers(self, all=True):
        self.calls.append(('list_containers',))
        self._maybe_fail('list_containers')
        result = []
        for container_id in self.order:
            data = self.containers[container_id]
            result.append({
                'Id': container_id,
                'Names': [data['Name']],
                'Image': data['Config']['Image'],
                'ImageID': data['Image'],
                'Labels': dict(data['Config']['Labels']),
                'State': data['State']['Status'],
            })
        return result

    def inspect_container(self, container_id):
        self.calls.append(('inspect_container', container_id))
        self._maybe_fail('inspect_container', container_id)
        if container_id not in self.containers:
            raise DockerAPIError(f"No such container: {container_id}", 404)
        return copy.deepcopy(self.containers[container_id])

    def inspect_image(self, ref):
        self.calls.append(('inspect_image', ref))
        self._maybe_fail('inspect_image', ref)
        data = self._find_image(ref)
        if data is None:
            raise DockerAPIError(f"No such image: {ref}", 404)
        return copy.deepcopy(data)

    def pull_image(self, repository, tag, platform=None, auth=None):
        ref = f"{repository}:{tag}"
        self.calls.append(('pull_image', ref, platform, auth))
        for key in ((ref, platform), ref):
            errors = self.pull_errors.get(key)
            if errors:
                raise errors.pop(0)
        remote = self.registry.get(ref)
        if remote is None:
            raise DockerAPIError(f"manifest for {ref} not found: manifest unknown", 404)
        if remote['Id'] not in self.images:
            self.images[remote['Id']] = dict(remote, RepoTags=[])
        self._move_tag(ref, remote['Id'])

    def tag_image(self, source, repository, tag):
        self.calls.append(('tag_image', source, repository, tag))
        self._maybe_fail('tag_image')
        data = self._find_image(source)
        if data is None:
            raise DockerAPIError(f"No such image: {source}", 404)
        self._move_tag(f"{repository}:{tag}", data['Id'])

    def remove_image(self, ref, force=True):
        self.calls.append(('remove_image', ref, force))
        self._maybe_fail('remove_image')
        data = self._find_image(ref)
        if data is None:
            raise DockerAPIError(f"No such image: {ref}", 404)
        ref = self._normalize(ref)
        if ref in data['RepoTags'] and len(data['RepoTags']) > 1:
            data['RepoTags'].remove(ref)
        else:
            del self.images[data['Id']]

    def stop_container(self, container_id, timeout):
        self.calls.append(('stop_container', container_id, timeout))
        self._maybe_fail('stop_container', container_id)
        self.containers[container_id]['State']['Status'] = 'exited'

    def restart_container(self, container_id, timeout):
        self.calls.append(('restart_container', container_id, timeout))
        self._maybe_fail('restart_container', container_id)
        self.containers[container_id]['State']['Status'] = 'running'

    def remove_container(self, container_id):
        self.calls.append(('remove_container', container_id))
        self._maybe_fail('remove_container', container_id)
        del self.containers[container_id]
        self.order.remove(container_id)

    def create_container(self, name, body):
        self.calls.append(('create_container', name, copy.deepcopy(body)))
        self._maybe_fail('create_container', name)
        if self.by_name(name) is not None:
            raise DockerAPIError(f'Conflict. The container name "/{name}" is already in use', 409)
        image = self._find_image(body['Image'])
        if image is None:
            raise DockerAPIError(f"No such image: {body['Image']}", 404)
        body = copy.deepcopy(body)
        host_config = body.pop('HostConfig', {})
        endpoints = body.pop('NetworkingConfig', {}).get('EndpointsConfig', {})
        container_id = self._new_id('n')
        self.containers[container_id] = {
            'Id': container_id,
            'Name': f'/{name}',
            'Image': image['Id'],
            'State': {'Status': 'created'},
            'Config': body,
            'HostConfig': host_config,
            'Mounts': [],
            'NetworkSettings': {'Networks': endpoints},
        }
        self.order.append(container_id)
        return container_id

    def connect_network(self, network, container_id, endpoint_config=None):
        self.calls.append(('connect_network', network, container_id, endpoint_config))
        self._maybe_fail('connect_network', network)
        self.containers[container_id]['NetworkSettings']['Networks'][network] = endpoint_config or {}

    def start_container(self, container_id):
        self.calls.append(('start_container', container_id))
        self._maybe_fail('start_container', container_id)
        self.containers[container_id]['State']['Status'] = 'running'

    def prune_images(self, dangling=True):
        self.calls.append(('prune_images', dangling))
        self._maybe_fail('prune_images')
        used = {c['Image'] for c in self.containers.values()}
        doomed = [i for i, d in self.images.items() if not d['RepoTags'] and i not in used]
        for image_id in doomed:
            del self.images[image_id]
        self.pruned += len(doomed)
        return len(doomed), 1024 * len(doomed)


class RecordingNotifier(Notifier):
    def __init__(self):
        super().__init__('http://notify.invalid/hook')
        self.messages = []

    def send(self, message):
        self.messages.append(message)
        return True


@pytest.fixture
def fake_client():
    return FakeDockerClient()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_config():
    def _make(**overrides):
        registry = overrides.pop('registry', None) or RegistryCredential(
            url='registry.example.com', username='acme', password='s3cret')
        return PullerConfig(registry=registry, **overrides)
    return _make
