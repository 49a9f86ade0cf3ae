"""Cluster and node readiness checks."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from common import RetryError, retry
from config import BootstrapSettings
from k8sutil.client import KubeAPIError, KubeClient

logger = logging.getLogger(__name__)


class ClusterNotReadyError(Exception):
    """The cluster or its nodes did not become ready in time."""


@dataclass
class NodeCondition:
    """One entry of a node's status.conditions."""
    type: str
    status: str
    reason: str = ''
    message: str = ''

    @classmethod
    def from_dict(cls, data: dict) -> 'NodeCondition':
        return cls(
            type=data.get('type', ''),
            status=data.get('status', ''),
            reason=data.get('reason', ''),
            message=data.get('message', ''),
        )


@dataclass
class NodeStatus:
    """Conditions of every node seen by one probe.

    Attributes:
        node_conditions: Node name to its condition list
        expected_nodes: Number of nodes the cluster should have
    """
    node_conditions: dict[str, list[NodeCondition]] = field(default_factory=dict)
    expected_nodes: int = 0

    @property
    def missing_nodes(self) -> int:
        return max(0, self.expected_nodes - len(self.node_conditions))

    def ready(self) -> bool:
        """True if enough nodes exist and each reports Ready=True."""
        if len(self.node_conditions) < self.expected_nodes:
            return False

        for conditions in self.node_conditions.values():
            ready = [c for c in conditions if c.type == 'Ready']
            if not ready or any(c.status != 'True' for c in ready):
                return False
        return True

    def pretty_print(self) -> None:
        """Print a Node/Ready/Reason/Message table."""
        rows = [('Node', 'Ready', 'Reason', 'Message'), ('', '', '', '')]
        for node, conditions in self.node_conditions.items():
            ready = [c for c in conditions if c.type == 'Ready']
            if not ready:
                rows.append((node, 'Unknown', '', 'no Ready condition reported'))
            for c in ready:
                rows.append((node, c.status, c.reason, c.message))

        widths = [max(len(row[i]) for row in rows) for i in range(4)]
        print("")
        for row in rows:
            print("    ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())

        if self.missing_nodes:
            print(f"{self.missing_nodes} nodes are missing")


class Cluster:
    """Readiness probes for a running cluster."""

    def __init__(self, client: KubeClient, expected_nodes: int,
                 settings: Optional[BootstrapSettings] = None):
        self.client = client
        self.expected_nodes = expected_nodes
        self.settings = settings or BootstrapSettings()

    def ping(self) -> bool:
        """Return True once nodes can be listed.

        Raises:
            KubeAPIError: If the API cannot be reached yet
        """
        self.client.list_nodes()
        return True

    def get_node_status(self) -> NodeStatus:
        """Fetch the current conditions of every node."""
        node_conditions: dict[str, list[NodeCondition]] = {}
        for node in self.client.list_nodes():
            name = node.get('metadata', {}).get('name', '')
            conditions = (node.get('status') or {}).get('conditions') or []
            node_conditions[name] = [NodeCondition.from_dict(c) for c in conditions]
        return NodeStatus(node_conditions=node_conditions, expected_nodes=self.expected_nodes)

    def components_status(self) -> list[dict]:
        """Return the etcd entries of the componentstatuses API."""
        statuses = self.client.get('/api/v1/componentstatuses') or {}
        return [
            item for item in statuses.get('items') or []
            if item.get('metadata', {}).get('name', '').startswith('etcd')
        ]

    def verify(self) -> None:
        """Wait for the API to answer and for every expected node to be Ready.

        Prints the node table on success and on timeout.

        Raises:
            ClusterNotReadyError: If the API or the nodes are not ready in time
        """
        print("\nNow checking health and readiness of the cluster nodes ...")

        try:
            retry(self.settings.cluster_ping_retry_interval,
                  self.settings.cluster_ping_retries,
                  self.ping,
                  retry_on=(KubeAPIError,))
        except RetryError as e:
            raise ClusterNotReadyError(f"failed to ping cluster for readiness: {e}") from e

        status: Optional[NodeStatus] = None

        def nodes_ready() -> bool:
            nonlocal status
            # Fetch errors only mean the API is flapping during bootstrap
            try:
                status = self.get_node_status()
            except KubeAPIError as e:
                logger.debug(f"Fetching node status failed: {e}")
                return False
            return status.ready()

        try:
            retry(self.settings.node_readiness_retry_interval,
                  self.settings.node_readiness_retries,
                  nodes_ready)
        except RetryError as e:
            if status is None:
                raise ClusterNotReadyError(
                    "error determining node status within the allowed time") from e
            status.pretty_print()
            raise ClusterNotReadyError(
                f"not all nodes became ready within the allowed time "
                f"({status.missing_nodes} nodes are missing)") from e

        status.pretty_print()
        print("\nSuccess - cluster is healthy and nodes are ready!")
