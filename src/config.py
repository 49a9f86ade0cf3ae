"""Client configuration management.

The API client is built from a kubeconfig, resolved in this order:
1. Explicit path (or raw kubeconfig bytes) passed by the caller
2. KUBECONFIG environment variable (first entry of a path list)
3. ~/.kube/config

Polling and timeout tunables live in BootstrapSettings. Every field can be
overridden from a KUBE_BOOTSTRAP_<FIELD> environment variable.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping, Optional

import yaml
from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.config.config_exception import ConfigException

# Max number of retries when waiting for cluster to become available
CLUSTER_PING_RETRIES = 18
# Seconds between retries when waiting for cluster to become available
CLUSTER_PING_RETRY_INTERVAL = 10.0
# Max number of retries when waiting for nodes to become ready
NODE_READINESS_RETRIES = 18
# Seconds between retries when waiting for nodes to become ready
NODE_READINESS_RETRY_INTERVAL = 10.0

# Seconds between API server readiness probes before creating assets
API_READY_INTERVAL = 5.0

# Polling of freshly created CustomResourceDefinitions
CRD_ROLLOUT_INTERVAL = 0.5
CRD_ROLLOUT_TIMEOUT = 120.0

# Default bound for WaitForDaemonSet / WaitForDeployment
WAIT_DEFAULT_TIMEOUT = 5 * 60.0
# Pause before reopening a watch the server closed early
WATCH_REOPEN_INTERVAL = 1.0
# Bound used when waiting after a rollout restart
ROLLOUT_TIMEOUT = 15 * 60.0

# Per-request timeout handed to the API client
REQUEST_TIMEOUT = 30.0

ENV_PREFIX = 'KUBE_BOOTSTRAP_'


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class BootstrapSettings:
    """Retry counts, intervals and timeouts (seconds) used by the probes and waiters."""
    cluster_ping_retries: int = CLUSTER_PING_RETRIES
    cluster_ping_retry_interval: float = CLUSTER_PING_RETRY_INTERVAL
    node_readiness_retries: int = NODE_READINESS_RETRIES
    node_readiness_retry_interval: float = NODE_READINESS_RETRY_INTERVAL
    api_ready_interval: float = API_READY_INTERVAL
    crd_rollout_interval: float = CRD_ROLLOUT_INTERVAL
    crd_rollout_timeout: float = CRD_ROLLOUT_TIMEOUT
    wait_default_timeout: float = WAIT_DEFAULT_TIMEOUT
    rollout_timeout: float = ROLLOUT_TIMEOUT
    request_timeout: float = REQUEST_TIMEOUT

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'BootstrapSettings':
        """Build settings, overriding defaults from KUBE_BOOTSTRAP_* variables.

        Raises:
            ConfigError: If a variable does not parse as the field's type
        """
        if environ is None:
            environ = os.environ

        settings = cls()
        for f in fields(cls):
            env_var = ENV_PREFIX + f.name.upper()
            value = environ.get(env_var)
            if value is None or value == '':
                continue
            caster = int if isinstance(getattr(settings, f.name), int) else float
            try:
                parsed = caster(value)
            except ValueError as e:
                raise ConfigError(f"Invalid value for {env_var}: {value!r}") from e
            if parsed <= 0:
                raise ConfigError(f"{env_var} must be positive, got {value!r}")
            setattr(settings, f.name, parsed)
        return settings


def discover_kubeconfig_path(explicit: Optional[Path] = None) -> Path:
    """Resolve the kubeconfig file to use.

    Raises:
        ConfigError: If the resolved file does not exist
    """
    if explicit is not None:
        path = Path(explicit)
    elif env_path := os.environ.get('KUBECONFIG'):
        # KUBECONFIG may hold a list; the first entry wins
        path = Path(env_path.split(os.pathsep)[0])
    else:
        path = Path.home() / '.kube' / 'config'

    path = path.expanduser()
    if not path.exists():
        raise ConfigError(f"Kubeconfig not found: {path}")
    return path


def api_client_from_bytes(data: bytes, context: Optional[str] = None) -> client.ApiClient:
    """Build an API client from the contents of a kubeconfig file.

    Raises:
        ConfigError: If the kubeconfig is malformed or incomplete
    """
    try:
        kubeconfig = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid kubeconfig: {e}") from e

    if not isinstance(kubeconfig, dict):
        raise ConfigError("Invalid kubeconfig: expected a mapping at the top level")

    try:
        return kube_config.new_client_from_config_dict(kubeconfig, context=context)
    except ConfigException as e:
        raise ConfigError(f"Creating client config failed: {e}") from e


def load_api_client(
    kubeconfig: Optional[Path] = None,
    context: Optional[str] = None,
) -> client.ApiClient:
    """Build an API client from a kubeconfig file on disk."""
    path = discover_kubeconfig_path(kubeconfig)
    return api_client_from_bytes(path.read_bytes(), context=context)
