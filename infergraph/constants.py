"""Annotation keys, resource names and defaults shared across the pipeline."""

from __future__ import annotations

KSERVE_GROUP = "serving.kserve.io"
KNATIVE_AUTOSCALING_GROUP = "autoscaling.knative.dev"
KNATIVE_SERVING_GROUP = "serving.knative.dev"

# ---------------------------------------------------------------------------
# Annotations and labels read from specs
# ---------------------------------------------------------------------------

DEPLOYMENT_MODE_ANNOTATION = f"{KSERVE_GROUP}/deploymentMode"
AUTOSCALER_CLASS_ANNOTATION = f"{KSERVE_GROUP}/autoscalerClass"
AUTOSCALER_METRICS_ANNOTATION = f"{KSERVE_GROUP}/metrics"
TARGET_UTILIZATION_ANNOTATION = f"{KSERVE_GROUP}/targetUtilizationPercentage"
GPU_RESOURCE_TYPES_ANNOTATION = f"{KSERVE_GROUP}/gpu-resource-types"
STOP_ANNOTATION = f"{KSERVE_GROUP}/stop"
ENABLE_AUTH_ANNOTATION = "security.opendatahub.io/enable-auth"

INITIAL_SCALE_ANNOTATION = f"{KNATIVE_AUTOSCALING_GROUP}/initial-scale"
MIN_SCALE_ANNOTATION = f"{KNATIVE_AUTOSCALING_GROUP}/min-scale"
MAX_SCALE_ANNOTATION = f"{KNATIVE_AUTOSCALING_GROUP}/max-scale"
KNATIVE_CLASS_ANNOTATION = f"{KNATIVE_AUTOSCALING_GROUP}/class"

NETWORK_VISIBILITY_LABEL = "networking.kserve.io/visibility"
KNATIVE_VISIBILITY_LABEL = "networking.knative.dev/visibility"
CLUSTER_LOCAL_VISIBILITY = "cluster-local"
EXPOSED_VISIBILITY = "exposed"

INFERENCE_GRAPH_LABEL = f"{KSERVE_GROUP}/inferencegraph"
WORKLOAD_KIND_LABEL = f"{KSERVE_GROUP}/kind"
APP_LABEL = "app"

SERVING_CERT_ANNOTATION = "service.beta.openshift.io/serving-cert-secret-name"
SERVING_CERT_SUFFIX = "-serving-cert"

# Annotations never copied from a graph onto generated workloads.
ANNOTATION_DISALLOWED_LIST = (
    INITIAL_SCALE_ANNOTATION,
    MIN_SCALE_ANNOTATION,
    MAX_SCALE_ANNOTATION,
    ENABLE_AUTH_ANNOTATION,
    "kubectl.kubernetes.io/last-applied-configuration",
)

# ---------------------------------------------------------------------------
# Deployment modes and autoscaling
# ---------------------------------------------------------------------------

SERVERLESS = "Serverless"
RAW_DEPLOYMENT = "RawDeployment"
MODEL_MESH = "ModelMesh"
DEPLOYMENT_MODES = (SERVERLESS, RAW_DEPLOYMENT, MODEL_MESH)

AUTOSCALER_CLASS_HPA = "hpa"
AUTOSCALER_CLASS_EXTERNAL = "external"
AUTOSCALER_CLASS_KPA = "kpa.autoscaling.knative.dev"
AUTOSCALER_ALLOWED_CLASSES = (AUTOSCALER_CLASS_HPA, AUTOSCALER_CLASS_EXTERNAL)

METRIC_CPU = "cpu"
METRIC_MEMORY = "memory"
METRIC_CONCURRENCY = "concurrency"
METRIC_RPS = "rps"
HPA_METRICS = (METRIC_CPU, METRIC_MEMORY)
KPA_METRICS = (METRIC_CONCURRENCY, METRIC_RPS)

DEFAULT_MIN_REPLICAS = 1
DEFAULT_CPU_UTILIZATION = 80

KNATIVE_AUTOSCALER_CONFIGMAP = "config-autoscaler"
KNATIVE_SERVING_NAMESPACE = "knative-serving"
ALLOW_ZERO_INITIAL_SCALE_KEY = "allow-zero-initial-scale"

# ---------------------------------------------------------------------------
# Router workload
# ---------------------------------------------------------------------------

GRAPH_ROOT_NODE = "root"
GRAPH_JSON_ARG = "--graph-json"
ENABLE_AUTH_ARG = "--enable-auth"
GRAPH_NAME_ARG = "--inferencegraph-name"
PROPAGATE_HEADERS_ENV = "PROPAGATE_HEADERS"
SSL_CERT_FILE_ENV = "SSL_CERT_FILE"

ROUTER_PORT = 8080
ROUTER_SERVICE_PORT = 443
ROUTER_READY_PATH = "/readyz"

SERVICE_CA_VOLUME = "openshift-service-ca-bundle"
SERVICE_CA_CONFIGMAP = "openshift-service-ca.crt"
SERVICE_CA_MOUNT_PATH = "/etc/odh/openshift-service-ca-bundle"
SERVICE_CA_CERT_FILE = f"{SERVICE_CA_MOUNT_PATH}/service-ca.crt"
SERVING_CERT_VOLUME = "proxy-tls"
SERVING_CERT_MOUNT_PATH = "/etc/tls/private"

ROUTE_SUFFIX = "-route"
AUTH_SERVICE_ACCOUNT_SUFFIX = "-auth-verifier"
AUTH_BINDING_NAME = "kserve-inferencegraph-auth-verifiers"
AUTH_DELEGATOR_ROLE = "system:auth-delegator"
GRAPH_FINALIZER = "inferencegraph.finalizers"

INFERENCE_SERVICE_CONFIGMAP = "inferenceservice-config"
DEFAULT_CLUSTER_DOMAIN = "cluster.local"

# ---------------------------------------------------------------------------
# Inference service components
# ---------------------------------------------------------------------------

PREDICTOR = "predictor"
EXPLAINER = "explainer"
TRANSFORMER = "transformer"

TRANSFORMER_CONTAINER_NAME = "transformer-container"
STORAGE_URI_ENV = "STORAGE_URI"
TENSOR_PARALLEL_SIZE_ENV = "TENSOR_PARALLEL_SIZE"
PIPELINE_PARALLEL_SIZE_ENV = "PIPELINE_PARALLEL_SIZE"

MULTI_NODE_STORAGE_SCHEMES = ("pvc", "oci")
SUPPORTED_STORAGE_URI_PREFIXES = (
    "gs://", "s3://", "pvc://", "file://", "https://", "http://",
    "hdfs://", "webhdfs://", "oci://", "hf://",
)

GPU_RESOURCE_TYPES = (
    "nvidia.com/gpu",
    "amd.com/gpu",
    "intel.com/gpu",
    "habana.ai/gaudi",
)
BASIC_RESOURCE_TYPES = ("cpu", "memory", "storage", "ephemeral-storage")

# ---------------------------------------------------------------------------
# API groups of managed kinds
# ---------------------------------------------------------------------------

GRAPH_API_VERSION = f"{KSERVE_GROUP}/v1alpha1"
SERVICE_API_VERSION = f"{KSERVE_GROUP}/v1beta1"

# managed kind -> (apiVersion, API kind, namespaced)
API_VERSIONS = {
    "KnativeService": (f"{KNATIVE_SERVING_GROUP}/v1", "Service", True),
    "Deployment": ("apps/v1", "Deployment", True),
    "Service": ("v1", "Service", True),
    "Route": ("route.openshift.io/v1", "Route", True),
    "HorizontalPodAutoscaler": ("autoscaling/v2", "HorizontalPodAutoscaler", True),
    "ServiceAccount": ("v1", "ServiceAccount", True),
    "ConfigMap": ("v1", "ConfigMap", True),
    "ClusterRoleBinding": ("rbac.authorization.k8s.io/v1", "ClusterRoleBinding", False),
    "InferenceGraph": (GRAPH_API_VERSION, "InferenceGraph", True),
    "InferenceService": (SERVICE_API_VERSION, "InferenceService", True),
}
