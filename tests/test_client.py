"""Tests for k8sutil.client module."""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import urllib3
from kubernetes.client.exceptions import ApiException

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from k8sutil.client import KubeAPIError, KubeClient, api_path
from manifest import ResourceKind


@pytest.fixture
def api_client():
    return MagicMock()


class TestKubeAPIError:
    """Tests for KubeAPIError."""

    def test_message(self):
        e = KubeAPIError(404, 'Not Found')
        assert str(e) == '404 Not Found'
        assert e.is_not_found is True
        assert e.is_already_exists is False

    def test_connection_error_has_no_status(self):
        e = KubeAPIError(None, 'connection refused')
        assert str(e) == 'connection refused'
        assert e.is_not_found is False

    def test_already_exists(self):
        assert KubeAPIError(409, 'Conflict').is_already_exists is True

    def test_from_api_exception_decodes_body(self):
        exc = ApiException(status=409, reason='Conflict')
        exc.body = b'{"reason":"AlreadyExists"}'

        e = KubeAPIError.from_api_exception(exc)

        assert e.status == 409
        assert 'AlreadyExists' in e.body


class TestApiPath:
    """Tests for api_path."""

    def test_core(self):
        assert api_path('v1') == '/api/v1'

    def test_named_group(self):
        assert api_path('apps/v1') == '/apis/apps/v1'


class TestRequest:
    """Tests for KubeClient.request and helpers."""

    def test_passes_json_headers_and_timeout(self, api_client):
        api_client.call_api.return_value = {'kind': 'NamespaceList'}
        kube = KubeClient(api_client, request_timeout=7)

        assert kube.get('/api/v1/namespaces') == {'kind': 'NamespaceList'}

        args, kwargs = api_client.call_api.call_args
        assert args == ('/api/v1/namespaces', 'GET')
        assert kwargs['header_params']['Content-Type'] == 'application/json'
        assert kwargs['response_type'] == 'object'
        assert kwargs['_request_timeout'] == 7
        assert kwargs['body'] is None

    def test_post_sends_body(self, api_client):
        kube = KubeClient(api_client)
        body = {'apiVersion': 'v1', 'kind': 'Namespace', 'metadata': {'name': 'monitoring'}}

        kube.post('/api/v1/namespaces', body)

        args, kwargs = api_client.call_api.call_args
        assert args[1] == 'POST'
        assert kwargs['body'] == body

    def test_query_params(self, api_client):
        KubeClient(api_client).get('/api/v1/pods', query={'limit': 1})

        assert api_client.call_api.call_args.kwargs['query_params'] == [('limit', 1)]

    def test_api_exception_wrapped(self, api_client):
        api_client.call_api.side_effect = ApiException(status=404, reason='Not Found')

        with pytest.raises(KubeAPIError) as exc_info:
            KubeClient(api_client).get('/api/v1/namespaces/missing')

        assert exc_info.value.is_not_found

    def test_connection_error_wrapped(self, api_client):
        api_client.call_api.side_effect = urllib3.exceptions.MaxRetryError(None, '/healthz')

        with pytest.raises(KubeAPIError) as exc_info:
            KubeClient(api_client).healthz()

        assert exc_info.value.status is None
        assert 'connecting to API server' in str(exc_info.value)

    def test_healthz_strips(self, api_client):
        api_client.call_api.return_value = 'ok\n'
        assert KubeClient(api_client).healthz() == 'ok'

    def test_server_resources(self, api_client):
        api_client.call_api.return_value = {
            'groupVersion': 'apps/v1',
            'resources': [{'name': 'deployments', 'kind': 'Deployment', 'namespaced': True}],
        }

        resources = KubeClient(api_client).server_resources('apps/v1')

        assert resources[0]['kind'] == 'Deployment'
        assert api_client.call_api.call_args.args[0] == '/apis/apps/v1'

    def test_list_nodes(self, api_client):
        api_client.call_api.return_value = {'items': [{'metadata': {'name': 'worker-0'}}]}
        assert KubeClient(api_client).list_nodes() == [{'metadata': {'name': 'worker-0'}}]

    def test_list_nodes_empty(self, api_client):
        api_client.call_api.return_value = {}
        assert KubeClient(api_client).list_nodes() == []


class TestWatch:
    """Tests for KubeClient.watch."""

    def test_streams_named_deployment(self, api_client):
        kube = KubeClient(api_client)
        with patch('k8sutil.client.watch.Watch') as watch_cls:
            w = watch_cls.return_value
            w.stream.return_value = iter([
                {'type': 'ADDED', 'raw_object': {'metadata': {'name': 'coredns'}}},
                {'type': 'MODIFIED', 'raw_object': None},
            ])

            events = list(kube.watch(ResourceKind.DEPLOYMENT, 'kube-system', 'coredns', 42.7))

        assert events == [('ADDED', {'metadata': {'name': 'coredns'}}), ('MODIFIED', {})]
        args, kwargs = w.stream.call_args
        assert args[1] == 'kube-system'
        assert kwargs['field_selector'] == 'metadata.name=coredns'
        assert kwargs['timeout_seconds'] == 42
        w.stop.assert_called_once()

    def test_daemonset_uses_daemonset_list(self, api_client):
        kube = KubeClient(api_client)
        with patch('k8sutil.client.watch.Watch') as watch_cls:
            w = watch_cls.return_value
            w.stream.return_value = iter([])

            list(kube.watch(ResourceKind.DAEMON_SET, 'kube-system', 'calico-node', 0.2))

        args, kwargs = w.stream.call_args
        assert args[0].__name__ == 'list_namespaced_daemon_set'
        assert kwargs['timeout_seconds'] == 1

    def test_stream_error_wrapped(self, api_client):
        kube = KubeClient(api_client)
        with patch('k8sutil.client.watch.Watch') as watch_cls:
            w = watch_cls.return_value
            w.stream.side_effect = ApiException(status=403, reason='Forbidden')

            with pytest.raises(KubeAPIError, match='403'):
                list(kube.watch(ResourceKind.DEPLOYMENT, 'kube-system', 'coredns', 10))

        w.stop.assert_called_once()

    def test_unsupported_kind(self, api_client):
        with pytest.raises(ValueError, match='not supported'):
            list(KubeClient(api_client).watch(ResourceKind.NAMESPACE, '', 'default', 10))
