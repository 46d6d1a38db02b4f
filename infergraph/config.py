"""Controller configuration dataclasses, YAML loader and ConfigMap parsing."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace

import yaml

from infergraph import constants
from infergraph.models import ResourceRequirements

logger = logging.getLogger(__name__)


@dataclass
class RouterConfig:
    image: str = "kserve/router:latest"
    cpu_request: str = "100m"
    cpu_limit: str = "1"
    memory_request: str = "100Mi"
    memory_limit: str = "1Gi"
    propagate_headers: list[str] = field(default_factory=lambda: ["Authorization"])

    def default_resources(self) -> ResourceRequirements:
        return ResourceRequirements(
            requests={"cpu": self.cpu_request, "memory": self.memory_request},
            limits={"cpu": self.cpu_limit, "memory": self.memory_limit},
        )


@dataclass
class ClusterPolicy:
    default_deployment_mode: str = constants.SERVERLESS
    cluster_domain: str = constants.DEFAULT_CLUSTER_DOMAIN
    allow_zero_initial_scale: bool = False
    namespace: str = "kserve"  # where the controller's own ConfigMaps live


@dataclass
class ControllerConfig:
    router: RouterConfig
    cluster: ClusterPolicy


_ROUTER_KEYS = frozenset(f.name for f in RouterConfig.__dataclass_fields__.values())
_CLUSTER_KEYS = frozenset(f.name for f in ClusterPolicy.__dataclass_fields__.values())


def default_controller_config() -> ControllerConfig:
    """Built-in defaults with environment overrides applied."""
    return _apply_env(ControllerConfig(router=RouterConfig(), cluster=ClusterPolicy()))


def _apply_env(config: ControllerConfig) -> ControllerConfig:
    namespace = os.environ.get("POD_NAMESPACE")
    if namespace:
        config.cluster.namespace = namespace
    domain = os.environ.get("CLUSTER_DOMAIN")
    if domain:
        config.cluster.cluster_domain = domain
    return config


def load_controller_config(path: str) -> ControllerConfig:
    """Load controller configuration from a YAML file.

    Unknown keys under ``router`` or ``cluster`` cause a ``ValueError``
    so typos are caught early. Environment variables still win.
    """
    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(f"Controller config YAML must be a mapping, got {type(raw).__name__}")

    allowed_sections = {"router", "cluster"}
    unknown_sections = set(raw) - allowed_sections
    if unknown_sections:
        raise ValueError(
            f"Unknown top-level keys in controller config: {sorted(unknown_sections)}. "
            f"Allowed: {sorted(allowed_sections)}"
        )

    router_raw = raw.get("router", {}) or {}
    cluster_raw = raw.get("cluster", {}) or {}

    _validate_keys("router", router_raw, _ROUTER_KEYS)
    _validate_keys("cluster", cluster_raw, _CLUSTER_KEYS)

    mode = cluster_raw.get("default_deployment_mode")
    if mode is not None and mode not in constants.DEPLOYMENT_MODES:
        raise ValueError(
            f"Unknown default_deployment_mode {mode!r}. "
            f"Allowed: {list(constants.DEPLOYMENT_MODES)}"
        )

    return _apply_env(ControllerConfig(
        router=RouterConfig(**router_raw),
        cluster=ClusterPolicy(**cluster_raw),
    ))


def _validate_keys(section: str, raw: dict, allowed: frozenset[str]) -> None:
    if not isinstance(raw, dict):
        raise ValueError(f"'{section}' must be a mapping, got {type(raw).__name__}")
    unknown = set(raw) - allowed
    if unknown:
        raise ValueError(
            f"Unknown keys in '{section}': {sorted(unknown)}. "
            f"Allowed: {sorted(allowed)}"
        )


def config_from_config_map(data: dict[str, str], base: ControllerConfig | None = None) -> ControllerConfig:
    """Overlay the JSON entries of the ``inferenceservice-config`` ConfigMap.

    Only the ``router`` and ``deploy`` entries are consulted. Malformed JSON
    raises ``ValueError``; absent entries leave ``base`` untouched.
    """
    config = base or default_controller_config()
    router = config.router
    cluster = config.cluster

    raw_router = data.get("router")
    if raw_router:
        parsed = _load_json_entry("router", raw_router)
        headers = (parsed.get("headers") or {}).get("propagate")
        router = replace(
            router,
            image=parsed.get("image", router.image),
            cpu_request=parsed.get("cpuRequest", router.cpu_request),
            cpu_limit=parsed.get("cpuLimit", router.cpu_limit),
            memory_request=parsed.get("memoryRequest", router.memory_request),
            memory_limit=parsed.get("memoryLimit", router.memory_limit),
            propagate_headers=list(headers) if headers is not None else list(router.propagate_headers),
        )
        logger.debug("Router config loaded from ConfigMap: image=%s", router.image)

    raw_deploy = data.get("deploy")
    if raw_deploy:
        parsed = _load_json_entry("deploy", raw_deploy)
        mode = parsed.get("defaultDeploymentMode")
        if mode:
            if mode not in constants.DEPLOYMENT_MODES:
                raise ValueError(f"Unknown defaultDeploymentMode {mode!r} in ConfigMap")
            cluster = replace(cluster, default_deployment_mode=mode)

    return ControllerConfig(router=router, cluster=cluster)


def _load_json_entry(key: str, raw: str) -> dict:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"ConfigMap entry '{key}' is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"ConfigMap entry '{key}' must be a JSON object")
    return parsed


def allow_zero_initial_scale(data: dict[str, str] | None) -> bool:
    """Read the Knative autoscaler flag; anything but "true" means disallowed."""
    if not data:
        return False
    value = data.get(constants.ALLOW_ZERO_INITIAL_SCALE_KEY, "")
    return str(value).strip().lower() == "true"
