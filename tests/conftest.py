"""Shared pytest fixtures for bootstrap engine tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from k8sutil.client import KubeAPIError  # noqa: E402


CORE_RESOURCES = [
    {'name': 'namespaces', 'kind': 'Namespace', 'namespaced': False},
    {'name': 'configmaps', 'kind': 'ConfigMap', 'namespaced': True},
    {'name': 'services', 'kind': 'Service', 'namespaced': True},
    {'name': 'pods', 'kind': 'Pod', 'namespaced': True},
    {'name': 'pods/status', 'kind': 'Pod', 'namespaced': True},
]

APPS_RESOURCES = [
    {'name': 'daemonsets', 'kind': 'DaemonSet', 'namespaced': True},
    {'name': 'deployments', 'kind': 'Deployment', 'namespaced': True},
]

APIEXTENSIONS_RESOURCES = [
    {'name': 'customresourcedefinitions', 'kind': 'CustomResourceDefinition', 'namespaced': False},
]

RBAC_RESOURCES = [
    {'name': 'clusterroles', 'kind': 'ClusterRole', 'namespaced': False},
]

EXAMPLE_RESOURCES = [
    {'name': 'widgets', 'kind': 'Widget', 'namespaced': True},
]


class FakeClock:
    """Deterministic replacement for time.monotonic/time.sleep."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeKubeClient:
    """In-memory stand-in for KubeClient that records every call.

    Attributes:
        calls: (method, path, name) tuples in call order
        resources: Discovery data per group/version
        discovery_calls: Number of server_resources() calls per group/version
        responses: Path to response; an exception instance is raised and a
            list is consumed one entry per call
        post_errors: Resource name to the error its create should raise
        nodes: Items returned by list_nodes()
        events: (event_type, object) pairs yielded by watch()
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: list[tuple] = []
        self.resources = {
            'v1': list(CORE_RESOURCES),
            'apps/v1': list(APPS_RESOURCES),
            'apiextensions.k8s.io/v1': list(APIEXTENSIONS_RESOURCES),
            'rbac.authorization.k8s.io/v1': list(RBAC_RESOURCES),
            'example.com/v1': list(EXAMPLE_RESOURCES),
        }
        self.discovery_calls: dict[str, int] = {}
        self.responses: dict = {}
        self.post_errors: dict[str, Exception] = {}
        self.nodes: list = []
        self.events: list[tuple[str, dict]] = []
        self.watches: list[tuple] = []

    def _respond(self, path, default):
        if path not in self.responses:
            return default
        value = self.responses[path]
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, Exception):
            raise value
        return value

    def server_resources(self, group_version):
        self.discovery_calls[group_version] = self.discovery_calls.get(group_version, 0) + 1
        self.calls.append(('DISCOVER', group_version, None))
        if group_version not in self.resources:
            raise KubeAPIError(404, 'Not Found')
        return list(self.resources[group_version])

    def get(self, path, query=None):
        self.calls.append(('GET', path, None))
        return self._respond(path, {'items': []})

    def post(self, path, body):
        name = body.get('metadata', {}).get('name', '')
        self.calls.append(('POST', path, name))
        if name in self.post_errors:
            raise self.post_errors[name]
        return body

    def put(self, path, body):
        self.calls.append(('PUT', path, body.get('metadata', {}).get('name', '')))
        return self._respond(('PUT', path), body)

    def healthz(self):
        self.calls.append(('GET', '/healthz', None))
        return self._respond('/healthz', 'ok')

    def list_nodes(self):
        self.calls.append(('GET', '/api/v1/nodes', None))
        value = self._respond('/api/v1/nodes', None)
        return self.nodes if value is None else value

    def watch(self, kind, namespace, name, timeout):
        self.watches.append((kind, namespace, name, timeout))
        yield from self.events
        # Server closes the stream once its timeout elapses
        self.clock.sleep(timeout)

    def posted(self):
        """Names of created resources in call order."""
        return [name for method, _, name in self.calls if method == 'POST']


@pytest.fixture(autouse=True)
def clock(monkeypatch):
    """Replace sleeping and monotonic time with a fake clock."""
    fake = FakeClock()
    monkeypatch.setattr('time.monotonic', fake.monotonic)
    monkeypatch.setattr('time.sleep', fake.sleep)
    return fake


@pytest.fixture
def fake_client(clock):
    return FakeKubeClient(clock)


def node(name, ready='True', reason='KubeletReady', message='kubelet is posting ready status'):
    """Build a node object; ready=None leaves out the Ready condition."""
    conditions = [{'type': 'MemoryPressure', 'status': 'False'}]
    if ready is not None:
        conditions.append({'type': 'Ready', 'status': ready, 'reason': reason, 'message': message})
    return {'metadata': {'name': name}, 'status': {'conditions': conditions}}
