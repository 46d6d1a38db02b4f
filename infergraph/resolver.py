"""Annotation resolver: spec fields + annotations + cluster policy -> EffectiveConfig."""

from __future__ import annotations

import logging
import re

from infergraph import constants
from infergraph.config import ClusterPolicy
from infergraph.models import EffectiveConfig, GraphSpec

logger = logging.getLogger(__name__)

# Decimal integer with an optional sign; no whitespace, underscores or other digit forms.
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


def parse_int(value) -> int | None:
    """Parse an annotation value as a plain integer, or return None."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if not isinstance(value, str) or not _INTEGER_RE.fullmatch(value):
        return None
    return int(value)


def deployment_mode(annotations: dict[str, str], policy: ClusterPolicy) -> str:
    """Mode from the deploymentMode annotation, else the cluster default."""
    mode = annotations.get(constants.DEPLOYMENT_MODE_ANNOTATION)
    if mode:
        return mode
    return policy.default_deployment_mode


def resolve_visibility(labels: dict[str, str]) -> str:
    if labels.get(constants.NETWORK_VISIBILITY_LABEL) == constants.CLUSTER_LOCAL_VISIBILITY:
        return constants.CLUSTER_LOCAL_VISIBILITY
    return constants.EXPOSED_VISIBILITY


def resolve_initial_scale(
    annotations: dict[str, str],
    min_replicas: int | None,
    allow_zero: bool,
) -> str | None:
    """Initial-scale value to emit, or None to leave the platform default.

    An explicit override is kept only if it is a non-negative integer, and a
    zero override additionally needs the cluster to allow zero initial scale.
    Without an override, an unset or zero minimum yields "0" only when zero
    is allowed.
    """
    raw = annotations.get(constants.INITIAL_SCALE_ANNOTATION)
    if raw is not None:
        value = parse_int(raw)
        if value is None:
            logger.warning("Dropping non-integer %s=%r", constants.INITIAL_SCALE_ANNOTATION, raw)
            return None
        if value < 0:
            logger.warning("Dropping negative %s=%r", constants.INITIAL_SCALE_ANNOTATION, raw)
            return None
        if value == 0 and not allow_zero:
            logger.info(
                "Dropping %s=0: %s is not enabled on the cluster",
                constants.INITIAL_SCALE_ANNOTATION,
                constants.ALLOW_ZERO_INITIAL_SCALE_KEY,
            )
            return None
        return str(value)

    if (min_replicas or 0) == 0 and allow_zero:
        return "0"
    return None


def resolve(graph: GraphSpec, policy: ClusterPolicy) -> EffectiveConfig:
    annotations = graph.annotations
    mode = deployment_mode(annotations, policy)

    if mode == constants.RAW_DEPLOYMENT:
        default_class = constants.AUTOSCALER_CLASS_HPA
        default_metric = constants.METRIC_CPU
    else:
        default_class = constants.AUTOSCALER_CLASS_KPA
        default_metric = constants.METRIC_CONCURRENCY
    autoscaler_class = annotations.get(constants.AUTOSCALER_CLASS_ANNOTATION) or default_class
    metric = graph.scale_metric or annotations.get(constants.AUTOSCALER_METRICS_ANNOTATION) or default_metric

    min_scale = graph.min_replicas if graph.min_replicas is not None else constants.DEFAULT_MIN_REPLICAS

    effective = EffectiveConfig(
        deployment_mode=mode,
        autoscaler_class=autoscaler_class,
        metric=metric,
        scale_target=graph.scale_target,
        min_scale=min_scale,
        max_scale=graph.max_replicas or 0,
        initial_scale=resolve_initial_scale(
            annotations, graph.min_replicas, policy.allow_zero_initial_scale
        ),
        visibility=resolve_visibility(graph.labels),
        auth_enabled=annotations.get(constants.ENABLE_AUTH_ANNOTATION, "").lower() == "true",
        stopped=annotations.get(constants.STOP_ANNOTATION, "").lower() == "true",
    )
    logger.debug("Resolved %s/%s: %s", graph.namespace, graph.name, effective)
    return effective
