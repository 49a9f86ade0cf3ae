"""Waiting for DaemonSet and Deployment rollouts to converge.

A watch scoped by field selector to one named workload is followed until the
workload converges, is deleted, or the timeout elapses. The generation in
WaitOptions fences out status that was observed before the change being
waited on.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol

from config import ROLLOUT_TIMEOUT, WAIT_DEFAULT_TIMEOUT, WATCH_REOPEN_INTERVAL
from k8sutil.client import KubeAPIError, KubeClient
from manifest import ResourceKind

logger = logging.getLogger(__name__)

RESTARTED_AT_ANNOTATION = 'kubectl.kubernetes.io/restartedAt'
ROLLING_UPDATE = 'RollingUpdate'
PROGRESS_DEADLINE_EXCEEDED = 'ProgressDeadlineExceeded'


class RolloutError(Exception):
    """Waiting for a rollout failed."""


class RolloutTimeoutError(RolloutError):
    """The workload did not converge within the timeout."""


class RolloutFatalError(RolloutError):
    """The rollout can never converge (workload deleted, deadline exceeded)."""


class RolloutUsageError(RolloutError):
    """Rollout status is not available for this workload."""


@dataclass
class WaitOptions:
    """Optional arguments for the wait_for_* functions.

    Attributes:
        generation: Fence; status with a lower observedGeneration is stale
        timeout: Seconds to wait before giving up
    """
    generation: int = 0
    timeout: float = WAIT_DEFAULT_TIMEOUT


class WorkloadStatus(Protocol):
    """Rollout status of a workload as seen in one watch event."""
    observed_generation: int

    def is_converged(self, generation: int) -> bool:
        """True if converged; raises RolloutError if it never will."""


@dataclass
class DaemonSetStatus:
    name: str
    update_strategy: str = ROLLING_UPDATE
    observed_generation: int = 0
    desired_number_scheduled: int = 0
    number_ready: int = 0
    updated_number_scheduled: int = 0

    @classmethod
    def from_object(cls, obj: dict) -> 'DaemonSetStatus':
        spec = obj.get('spec') or {}
        status = obj.get('status') or {}
        return cls(
            name=obj.get('metadata', {}).get('name', ''),
            update_strategy=(spec.get('updateStrategy') or {}).get('type') or ROLLING_UPDATE,
            observed_generation=status.get('observedGeneration', 0),
            desired_number_scheduled=status.get('desiredNumberScheduled', 0),
            number_ready=status.get('numberReady', 0),
            updated_number_scheduled=status.get('updatedNumberScheduled', 0),
        )

    def is_converged(self, generation: int) -> bool:
        if self.update_strategy != ROLLING_UPDATE:
            raise RolloutUsageError(
                f"rollout status is only available for {ROLLING_UPDATE} strategy type, "
                f"DaemonSet {self.name!r} uses {self.update_strategy}")

        if generation > 0 and self.observed_generation < generation:
            return False

        desired = self.desired_number_scheduled
        if desired == 0:
            return False

        return self.number_ready == desired and self.updated_number_scheduled == desired


@dataclass
class DeploymentStatus:
    name: str
    spec_replicas: Optional[int] = None
    observed_generation: int = 0
    replicas: int = 0
    updated_replicas: int = 0
    available_replicas: int = 0
    conditions: list[dict] = field(default_factory=list)

    @classmethod
    def from_object(cls, obj: dict) -> 'DeploymentStatus':
        spec = obj.get('spec') or {}
        status = obj.get('status') or {}
        return cls(
            name=obj.get('metadata', {}).get('name', ''),
            spec_replicas=spec.get('replicas'),
            observed_generation=status.get('observedGeneration', 0),
            replicas=status.get('replicas', 0),
            updated_replicas=status.get('updatedReplicas', 0),
            available_replicas=status.get('availableReplicas', 0),
            conditions=list(status.get('conditions') or []),
        )

    def progressing_condition(self) -> Optional[dict]:
        found = None
        for condition in self.conditions:
            if condition.get('type') == 'Progressing':
                found = condition
        return found

    def is_converged(self, generation: int) -> bool:
        # Update has not been observed yet
        if self.observed_generation < generation:
            return False

        progressing = self.progressing_condition()
        if progressing is not None and progressing.get('reason') == PROGRESS_DEADLINE_EXCEEDED:
            raise RolloutFatalError(f"deployment {self.name!r} exceeded its progress deadline")

        if self.spec_replicas is not None and self.updated_replicas < self.spec_replicas:
            return False

        # Old replicas are still being terminated
        if self.replicas > self.updated_replicas:
            return False

        if self.available_replicas < self.updated_replicas:
            return False

        return True


STATUS_TYPES = {
    ResourceKind.DAEMON_SET: DaemonSetStatus,
    ResourceKind.DEPLOYMENT: DeploymentStatus,
}

COLLECTIONS = {
    ResourceKind.DAEMON_SET: 'daemonsets',
    ResourceKind.DEPLOYMENT: 'deployments',
}


def workload_path(kind: ResourceKind, namespace: str, name: str) -> str:
    return f'/apis/apps/v1/namespaces/{namespace}/{COLLECTIONS[kind]}/{name}'


def converged(event_type: str, obj: dict, kind: ResourceKind, generation: int) -> bool:
    """Evaluate one watch event.

    Raises:
        RolloutFatalError: If the object was deleted or can never converge
        RolloutUsageError: If rollout status is unavailable for the object
        RolloutError: On an unexpected event type
    """
    if event_type in ('ADDED', 'MODIFIED'):
        status: WorkloadStatus = STATUS_TYPES[kind].from_object(obj)
        return status.is_converged(generation)
    if event_type == 'DELETED':
        # Never follow a recreated object with the same name
        raise RolloutFatalError("object has been deleted")
    raise RolloutError(f"internal error: unexpected event {event_type!r}")


def wait_for_convergence(
    client: KubeClient,
    kind: ResourceKind,
    namespace: str,
    name: str,
    options: Optional[WaitOptions] = None,
) -> None:
    """Watch a DaemonSet or Deployment until it converges.

    Raises:
        ValueError: If name is empty or kind is not a supported workload
        RolloutTimeoutError: If it does not converge within options.timeout
        RolloutError: On deletion, fatal status, or a failed watch
    """
    if client is None:
        raise ValueError("client must be set")
    if not name:
        raise ValueError("name must be set")
    if kind not in STATUS_TYPES:
        raise ValueError(f"rollout status is not available for {kind.value}")

    options = options or WaitOptions()
    target = f"{kind.value} {namespace}/{name}"
    deadline = time.monotonic() + options.timeout
    logger.info(f"Waiting for {target} to roll out (generation {options.generation})")

    try:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RolloutTimeoutError(f"timed out after {options.timeout:g}s")

            for event_type, obj in client.watch(kind, namespace, name, remaining):
                if converged(event_type, obj, kind, options.generation):
                    logger.info(f"{target} has rolled out")
                    return
                if time.monotonic() >= deadline:
                    break

            # Stream closed before the deadline
            remaining = deadline - time.monotonic()
            if remaining > 0:
                logger.debug(f"Watch on {target} closed, reopening")
                time.sleep(min(WATCH_REOPEN_INTERVAL, remaining))
    except KubeAPIError as e:
        raise RolloutError(f"waiting for {target} to roll out: {e}") from e
    except RolloutError as e:
        raise type(e)(f"waiting for {target} to roll out: {e}") from e


def wait_for_daemonset(client: KubeClient, namespace: str, name: str,
                       options: Optional[WaitOptions] = None) -> None:
    """Wait until DaemonSet converges."""
    wait_for_convergence(client, ResourceKind.DAEMON_SET, namespace, name, options)


def wait_for_deployment(client: KubeClient, namespace: str, name: str,
                        options: Optional[WaitOptions] = None) -> None:
    """Wait until Deployment converges."""
    wait_for_convergence(client, ResourceKind.DEPLOYMENT, namespace, name, options)


def restart(client: KubeClient, kind: ResourceKind, namespace: str, name: str) -> int:
    """Programmatic equivalent of 'kubectl rollout restart'.

    Sets the restartedAt annotation on the pod template, which makes the
    controller replace every pod.

    Returns:
        Generation of the updated object
    """
    path = workload_path(kind, namespace, name)
    try:
        obj = client.get(path)
    except KubeAPIError as e:
        raise RolloutError(f"getting {kind.value} {namespace}/{name}: {e}") from e

    template_meta = obj.setdefault('spec', {}).setdefault('template', {}).setdefault('metadata', {})
    annotations = template_meta.get('annotations') or {}
    annotations[RESTARTED_AT_ANNOTATION] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
    template_meta['annotations'] = annotations

    try:
        updated = client.put(path, obj)
    except KubeAPIError as e:
        raise RolloutError(f"updating {kind.value} {namespace}/{name}: {e}") from e

    return int((updated or {}).get('metadata', {}).get('generation', 0))


def rollout_daemonset(client: KubeClient, namespace: str, name: str,
                      timeout: float = ROLLOUT_TIMEOUT) -> None:
    """Restart a DaemonSet and wait for it to be fully rolled out."""
    generation = restart(client, ResourceKind.DAEMON_SET, namespace, name)
    wait_for_daemonset(client, namespace, name, WaitOptions(generation=generation, timeout=timeout))


def rollout_deployment(client: KubeClient, namespace: str, name: str,
                       timeout: float = ROLLOUT_TIMEOUT) -> None:
    """Restart a Deployment and wait for it to be fully rolled out."""
    generation = restart(client, ResourceKind.DEPLOYMENT, namespace, name)
    wait_for_deployment(client, namespace, name, WaitOptions(generation=generation, timeout=timeout))


def daemonset_ready(client: KubeClient, namespace: str, name: str) -> bool:
    """Check once whether every pod of a DaemonSet is ready.

    A missing DaemonSet, or one with nothing scheduled, is not ready.
    """
    try:
        obj = client.get(workload_path(ResourceKind.DAEMON_SET, namespace, name))
    except KubeAPIError as e:
        if e.is_not_found:
            return False
        raise

    status = DaemonSetStatus.from_object(obj)
    desired = status.desired_number_scheduled
    return desired != 0 and status.number_ready == desired
