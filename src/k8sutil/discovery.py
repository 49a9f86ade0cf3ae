"""Resource discovery with a per-run cache.

Maps (group/version, kind) to the plural resource name and scope the API
server uses, caching the whole resource list of each group/version.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

from k8sutil.client import KubeAPIError

logger = logging.getLogger(__name__)


class DiscoveryError(Exception):
    """Discovery of a group/version failed."""


class ResourceNotFoundError(DiscoveryError):
    """The group/version is served but does not contain the kind."""


class DiscoveryClient(Protocol):
    """What the mapper needs from an API client."""

    def server_resources(self, group_version: str) -> list[dict]:
        """Return the APIResource dicts served under group_version."""


@dataclass(frozen=True)
class ResourceInfo:
    """How a kind is addressed on the API server."""
    plural_name: str
    namespaced: bool


class ResourceMapper:
    """Resolves kinds to resources, caching discovery results.

    One mapper is meant to live for one apply run; entries are only ever
    added. The lock guards the cache only, so a discovery call for one
    group/version does not block lookups of another. Concurrent misses for
    the same group/version both call discovery and the last write wins.
    """

    def __init__(self, client: DiscoveryClient):
        self.client = client
        self._cache: dict[str, list[dict]] = {}
        self._lock = threading.Lock()

    def resource_info(self, group_version: str, kind: str) -> ResourceInfo:
        """Return the ResourceInfo for kind in group_version.

        Raises:
            DiscoveryError: If the discovery request fails
            ResourceNotFoundError: If the kind is not served in group_version
        """
        with self._lock:
            resources = self._cache.get(group_version)

        if resources is not None:
            info = _find_kind(resources, kind)
            if info is not None:
                return info

        try:
            resources = self.client.server_resources(group_version)
        except KubeAPIError as e:
            raise DiscoveryError(f"discovering resources for {group_version}: {e}") from e

        with self._lock:
            self._cache[group_version] = resources
        logger.debug(f"Cached {len(resources)} resources for {group_version}")

        info = _find_kind(resources, kind)
        if info is None:
            raise ResourceNotFoundError(f"resource not found: {kind} in {group_version}")
        return info


def _find_kind(resources: list[dict], kind: str) -> Optional[ResourceInfo]:
    for resource in resources:
        name = resource.get('name', '')
        # Skip subresources such as pods/status
        if '/' in name:
            continue
        if resource.get('kind') == kind:
            return ResourceInfo(plural_name=name, namespaced=bool(resource.get('namespaced')))
    return None
