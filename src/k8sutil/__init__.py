"""Kubernetes bootstrap helpers: ordered asset creation and readiness checks."""

from k8sutil.client import KubeAPIError, KubeClient
from k8sutil.cluster import Cluster, ClusterNotReadyError, NodeStatus
from k8sutil.create import (
    ApiNotReadyError,
    CreateError,
    Creater,
    Namespace,
    create_assets,
    create_or_update_namespace,
    list_namespaces,
)
from k8sutil.crd import CRDNotReadyError, CRDVersionError
from k8sutil.discovery import DiscoveryError, ResourceInfo, ResourceMapper, ResourceNotFoundError
from k8sutil.rollout import (
    RolloutError,
    RolloutFatalError,
    RolloutTimeoutError,
    RolloutUsageError,
    WaitOptions,
    daemonset_ready,
    rollout_daemonset,
    rollout_deployment,
    wait_for_daemonset,
    wait_for_deployment,
)

__all__ = [
    'KubeAPIError',
    'KubeClient',
    'Cluster',
    'ClusterNotReadyError',
    'NodeStatus',
    'ApiNotReadyError',
    'CreateError',
    'Creater',
    'Namespace',
    'create_assets',
    'create_or_update_namespace',
    'list_namespaces',
    'CRDNotReadyError',
    'CRDVersionError',
    'DiscoveryError',
    'ResourceInfo',
    'ResourceMapper',
    'ResourceNotFoundError',
    'RolloutError',
    'RolloutFatalError',
    'RolloutTimeoutError',
    'RolloutUsageError',
    'WaitOptions',
    'daemonset_ready',
    'rollout_daemonset',
    'rollout_deployment',
    'wait_for_daemonset',
    'wait_for_deployment',
]
