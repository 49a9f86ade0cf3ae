"""Kubernetes API access used by the bootstrap engine.

KubeClient narrows the kubernetes ApiClient down to the handful of raw REST
calls the applier, waiters and probes need. Responses are plain dicts, and
every failure surfaces as KubeAPIError so callers never deal with urllib3 or
ApiException directly.
"""

import logging
from pathlib import Path
from typing import Any, Iterator, Optional

import urllib3
from kubernetes import client, watch
from kubernetes.client.exceptions import ApiException

from config import REQUEST_TIMEOUT, api_client_from_bytes, load_api_client
from manifest import ResourceKind

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = 'application/json'


class KubeAPIError(Exception):
    """An API request failed.

    Attributes:
        status: HTTP status code, None when the server was not reached
        reason: Short reason phrase
        body: Response body, if any
    """

    def __init__(self, status: Optional[int], reason: str, body: str = ''):
        self.status = status
        self.reason = reason
        self.body = body
        message = f"{status} {reason}" if status is not None else reason
        if body:
            message = f"{message}: {body.strip()[:200]}"
        super().__init__(message)

    @property
    def is_not_found(self) -> bool:
        return self.status == 404

    @property
    def is_already_exists(self) -> bool:
        return self.status == 409

    @classmethod
    def from_api_exception(cls, e: ApiException) -> 'KubeAPIError':
        body = e.body.decode('utf-8', 'replace') if isinstance(e.body, bytes) else (e.body or '')
        return cls(e.status, e.reason or 'error', body)


def api_path(api_version: str) -> str:
    """Root path of a group/version: /api/v1 for core, /apis/<group>/<version> otherwise."""
    if api_version == 'v1':
        return '/api/v1'
    return f'/apis/{api_version}'


class KubeClient:
    """Raw REST access to one API server."""

    def __init__(self, api_client: client.ApiClient, request_timeout: float = REQUEST_TIMEOUT):
        self.api_client = api_client
        self.request_timeout = request_timeout
        self._apps: Optional[client.AppsV1Api] = None

    @classmethod
    def from_kubeconfig(cls, data: bytes, context: Optional[str] = None, **kwargs) -> 'KubeClient':
        """Create a client from the contents of a kubeconfig file."""
        return cls(api_client_from_bytes(data, context=context), **kwargs)

    @classmethod
    def from_path(cls, kubeconfig: Optional[Path] = None, context: Optional[str] = None, **kwargs) -> 'KubeClient':
        """Create a client from a kubeconfig on disk (or the default location)."""
        return cls(load_api_client(kubeconfig, context=context), **kwargs)

    def close(self) -> None:
        self.api_client.close()

    def request(self, method: str, path: str, body: Any = None,
                query: Optional[dict] = None) -> Any:
        """Perform one request and return the decoded response body.

        Raises:
            KubeAPIError: On any non-success response or connection failure
        """
        logger.debug(f"{method} {path}")
        try:
            return self.api_client.call_api(
                path, method,
                query_params=list(query.items()) if query else None,
                header_params={'Accept': JSON_CONTENT_TYPE, 'Content-Type': JSON_CONTENT_TYPE},
                body=body,
                response_type='object',
                auth_settings=['BearerToken'],
                _return_http_data_only=True,
                _preload_content=True,
                _request_timeout=self.request_timeout,
            )
        except ApiException as e:
            raise KubeAPIError.from_api_exception(e) from e
        except urllib3.exceptions.HTTPError as e:
            raise KubeAPIError(None, f"connecting to API server: {e}") from e

    def get(self, path: str, query: Optional[dict] = None) -> Any:
        return self.request('GET', path, query=query)

    def post(self, path: str, body: dict) -> Any:
        return self.request('POST', path, body=body)

    def put(self, path: str, body: dict) -> Any:
        return self.request('PUT', path, body=body)

    def healthz(self) -> str:
        """Return the body of /healthz ('ok' on a healthy server)."""
        return str(self.get('/healthz')).strip()

    def server_resources(self, group_version: str) -> list[dict]:
        """List the resources served under a group/version (discovery)."""
        resource_list = self.get(api_path(group_version)) or {}
        return list(resource_list.get('resources') or [])

    def list_nodes(self) -> list[dict]:
        return list((self.get('/api/v1/nodes') or {}).get('items') or [])

    def watch(self, kind: ResourceKind, namespace: str, name: str,
              timeout: float) -> Iterator[tuple[str, dict]]:
        """Watch a single named workload, yielding (event_type, object) pairs.

        Existing state arrives first as ADDED events. The stream ends when
        the server closes it after timeout seconds.

        Raises:
            ValueError: For kinds that cannot be watched here
            KubeAPIError: If the watch request fails
        """
        if self._apps is None:
            self._apps = client.AppsV1Api(self.api_client)

        if kind is ResourceKind.DAEMON_SET:
            list_func = self._apps.list_namespaced_daemon_set
        elif kind is ResourceKind.DEPLOYMENT:
            list_func = self._apps.list_namespaced_deployment
        else:
            raise ValueError(f"watching {kind.value} is not supported")

        w = watch.Watch()
        try:
            for event in w.stream(
                list_func, namespace,
                field_selector=f'metadata.name={name}',
                timeout_seconds=max(1, int(timeout)),
            ):
                yield event['type'], event.get('raw_object') or {}
        except ApiException as e:
            raise KubeAPIError.from_api_exception(e) from e
        except urllib3.exceptions.HTTPError as e:
            raise KubeAPIError(None, f"watching {kind.value} {namespace}/{name}: {e}") from e
        finally:
            w.stop()
