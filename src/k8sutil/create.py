"""Ordered creation of cluster assets.

Manifests are created in three tiers:
1. Namespaces
2. CustomResourceDefinitions, each waited on until it is served
3. Everything else, sorted by source path

A failure in tier 1 or 2 (or while waiting for a CRD) aborts the run.
Failures in tier 3 are logged and reported, but every remaining resource is
still attempted.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Mapping, Optional

from common import poll_until
from config import API_READY_INTERVAL, BootstrapSettings
from k8sutil.client import KubeAPIError, KubeClient, api_path
from k8sutil.crd import CRDNotReadyError, CRDVersionError, wait_for_crd
from k8sutil.discovery import DiscoveryError, ResourceMapper
from manifest import ManifestRecord, ResourceKind, load_manifests

logger = logging.getLogger(__name__)

# Namespace that must exist before the API server is considered usable
SYSTEM_NAMESPACE = 'kube-system'


class CreateError(Exception):
    """Creating one or more cluster assets failed."""


class ApiNotReadyError(Exception):
    """The API server did not become ready in time."""


@dataclass
class Namespace:
    """Namespace metadata applied by create_or_update_namespace."""
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


def merge_maps(new: Optional[Mapping], existing: Optional[Mapping]) -> dict:
    """Merge two string maps; values from new win."""
    merged = dict(existing or {})
    merged.update(new or {})
    return merged


def resource_path(record: ManifestRecord, plural: str, namespaced: bool) -> str:
    """Collection URL used to create record."""
    path = api_path(record.api_version)
    if namespaced and record.namespace:
        path = f'{path}/namespaces/{record.namespace}'
    return f'{path}/{plural}'


class Creater:
    """Creates manifests against one API server in dependency tiers.

    Attributes:
        client: API client used for all requests
        mapper: Discovery cache, created per Creater when not supplied
        settings: Timeouts for CRD propagation
    """

    def __init__(
        self,
        client: KubeClient,
        mapper: Optional[ResourceMapper] = None,
        settings: Optional[BootstrapSettings] = None,
    ):
        self.client = client
        self.mapper = mapper if mapper is not None else ResourceMapper(client)
        self.settings = settings or BootstrapSettings()

    def create_manifests(self, records: list[ManifestRecord]) -> bool:
        """Create records tier by tier.

        Returns:
            True if every resource was created, False otherwise
        """
        namespaces: list[ManifestRecord] = []
        crds: list[ManifestRecord] = []
        other: list[ManifestRecord] = []

        for record in records:
            if record.resource_kind is ResourceKind.NAMESPACE:
                namespaces.append(record)
            elif record.resource_kind is ResourceKind.CUSTOM_RESOURCE_DEFINITION:
                crds.append(record)
            else:
                other.append(record)

        # Keep the numeric-prefix ordering of rendered files (01-foo before 02-foo)
        other.sort(key=lambda r: r.source_path)

        if not self._create_all_or_abort(namespaces):
            return False

        if not self._create_all_or_abort(crds):
            return False

        for crd in crds:
            try:
                wait_for_crd(
                    self.client, crd,
                    timeout=self.settings.crd_rollout_timeout,
                    interval=self.settings.crd_rollout_interval,
                )
            except (CRDNotReadyError, CRDVersionError) as e:
                logger.error(f"Failed waiting for {crd}: {e}")
                return False

        success = True
        for record in other:
            if not self._create_logged(record):
                success = False
        return success

    def _create_all_or_abort(self, records: list[ManifestRecord]) -> bool:
        for record in records:
            if not self._create_logged(record):
                return False
        return True

    def _create_logged(self, record: ManifestRecord) -> bool:
        try:
            self.create(record)
        except CreateError as e:
            logger.error(f"Failed creating {e}")
            return False
        logger.info(f"Created {record}")
        return True

    def create(self, record: ManifestRecord) -> None:
        """Create a single resource.

        Raises:
            CreateError: If discovery or the create request fails
        """
        try:
            info = self.mapper.resource_info(record.api_version, record.kind)
        except DiscoveryError as e:
            raise CreateError(f"{record}: {e}") from e

        path = resource_path(record, info.plural_name, info.namespaced)
        try:
            self.client.post(path, record.object)
        except KubeAPIError as e:
            raise CreateError(f"{record}: {e}") from e


def api_ready(client: KubeClient) -> bool:
    """Return True when /healthz is ok and the system namespace exists."""
    try:
        health = client.healthz()
        if health != 'ok':
            logger.info(f"API server not healthy yet: {health!r}")
            return False
        client.get(f'/api/v1/namespaces/{SYSTEM_NAMESPACE}')
    except KubeAPIError as e:
        logger.info(f"Unable to determine API server readiness: {e}")
        return False
    return True


def wait_for_api(client: KubeClient, timeout: float, interval: float = API_READY_INTERVAL) -> None:
    """Block until the API server is ready.

    Raises:
        ApiNotReadyError: If it is not ready within timeout seconds
    """
    logger.info("Waiting for API server...")
    if not poll_until(lambda: api_ready(client), timeout=timeout, interval=interval):
        raise ApiNotReadyError(f"API server is not ready after {timeout:g}s")
    logger.info("API server is ready")


def create_assets(
    client: KubeClient,
    files: Mapping[str, str],
    timeout: float,
    settings: Optional[BootstrapSettings] = None,
) -> None:
    """Wait for the API server, then parse and create all manifests.

    Raises:
        ApiNotReadyError: If the API server never became ready
        ManifestParseError: If any source failed to parse
        CreateError: If any resource failed to be created
    """
    settings = settings or BootstrapSettings()
    start = time.monotonic()

    wait_for_api(client, timeout, interval=settings.api_ready_interval)

    records = load_manifests(files)

    logger.info(f"Creating {len(records)} assets...")
    creater = Creater(client, settings=settings)
    if not creater.create_manifests(records):
        raise CreateError("failed to create some cluster assets, see the log for details")

    logger.info(f"Created assets in {time.monotonic() - start:.1f}s")


def create_or_update_namespace(client: KubeClient, ns: Namespace) -> None:
    """Create ns, or merge its labels and annotations into an existing namespace.

    Raises:
        ValueError: If ns has no name
        CreateError: If the API rejects the request
    """
    if not ns.name:
        raise ValueError("namespace name can't be empty")

    path = f'/api/v1/namespaces/{ns.name}'
    try:
        existing = client.get(path)
    except KubeAPIError as e:
        if not e.is_not_found:
            raise CreateError(f"getting namespace {ns.name!r}: {e}") from e
        existing = None

    if existing is None:
        body = {
            'apiVersion': 'v1',
            'kind': 'Namespace',
            'metadata': {
                'name': ns.name,
                'labels': dict(ns.labels),
                'annotations': dict(ns.annotations),
            },
        }
        try:
            client.post('/api/v1/namespaces', body)
        except KubeAPIError as e:
            raise CreateError(f"creating namespace {ns.name!r}: {e}") from e
        logger.info(f"Created namespace {ns.name}")
        return

    metadata = existing.setdefault('metadata', {})
    metadata['labels'] = merge_maps(ns.labels, metadata.get('labels'))
    metadata['annotations'] = merge_maps(ns.annotations, metadata.get('annotations'))
    try:
        client.put(path, existing)
    except KubeAPIError as e:
        raise CreateError(f"updating namespace {ns.name!r}: {e}") from e
    logger.info(f"Updated namespace {ns.name}")


def list_namespaces(client: KubeClient) -> list[str]:
    """Return the names of all namespaces in the cluster."""
    namespaces = client.get('/api/v1/namespaces') or {}
    return [item.get('metadata', {}).get('name', '') for item in namespaces.get('items') or []]
