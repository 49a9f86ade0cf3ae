"""Waiting for freshly created CustomResourceDefinitions to be served."""

import json
import logging
from typing import Any, Optional, Protocol

from common import poll_until
from config import CRD_ROLLOUT_INTERVAL, CRD_ROLLOUT_TIMEOUT
from k8sutil.client import KubeAPIError
from manifest import ManifestRecord

logger = logging.getLogger(__name__)


class CRDVersionError(Exception):
    """A CustomResourceDefinition declares no served version."""


class CRDNotReadyError(Exception):
    """A CustomResourceDefinition did not become servable in time."""


class Getter(Protocol):
    def get(self, path: str, query: Optional[dict] = None) -> Any:
        """GET path and return the decoded body."""


def served_version(crd: dict) -> str:
    """Return the version to probe for a CRD.

    The first version marked served in spec.versions wins; CRDs without a
    versions list fall back to the legacy spec.version field.

    Raises:
        CRDVersionError: If no version can be determined
    """
    spec = crd.get('spec') or {}
    versions = spec.get('versions') or []

    version = ''
    if versions:
        for v in versions:
            if v.get('served'):
                version = v.get('name', '')
                break
    else:
        version = spec.get('version') or ''

    if not version:
        raise CRDVersionError(
            f"CustomResourceDefinition {crd.get('metadata', {}).get('name', '')!r}: "
            "expected at least one served version"
        )
    return version


def wait_for_crd(
    client: Getter,
    record: ManifestRecord,
    timeout: float = CRD_ROLLOUT_TIMEOUT,
    interval: float = CRD_ROLLOUT_INTERVAL,
) -> None:
    """Block until the collection of a created CRD answers without 404.

    An empty list counts as served. Any error other than 404 aborts.

    Raises:
        CRDVersionError: If the manifest has no served version
        CRDNotReadyError: On timeout or a non-404 API error
    """
    crd = json.loads(record.raw)
    spec = crd.get('spec') or {}
    version = served_version(crd)
    group = spec.get('group', '')
    plural = (spec.get('names') or {}).get('plural', '')
    uri = f'/apis/{group}/{version}/{plural}'

    def served() -> bool:
        try:
            client.get(uri)
        except KubeAPIError as e:
            if e.is_not_found:
                logger.debug(f"{uri} not served yet")
                return False
            raise CRDNotReadyError(f"waiting for {record}: {e}") from e
        return True

    logger.info(f"Waiting for {record} to be served at {uri}")
    if not poll_until(served, timeout=timeout, interval=interval):
        raise CRDNotReadyError(f"timed out after {timeout:g}s waiting for {record} to be served")
    logger.debug(f"{uri} is served")
