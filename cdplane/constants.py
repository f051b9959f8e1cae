"""
Shared module to hold constant values for the library
"""

# API group/version of the managed instance kinds
API_GROUP = "cdplane.io"
API_VERSION = f"{API_GROUP}/v1beta1"
NAMESPACED_KIND = "Platform"
CLUSTER_KIND = "ClusterPlatform"

# Finalizer placed on every managed instance
FINALIZER_NAME = "cdplane.io/finalizer"

# Labels stamped on every child resource
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
PART_OF_LABEL = "app.kubernetes.io/part-of"
NAME_LABEL = "app.kubernetes.io/name"
COMPONENT_LABEL = "app.kubernetes.io/component"
INSTANCE_LABEL = "cdplane.io/instance"
OPERATOR_NAME = "cdplane"

# Namespace labels recording source namespace claims, one per claim kind
APPS_CLAIM_LABEL = "cdplane.io/managed-by"
APPSETS_CLAIM_LABEL = "cdplane.io/applicationset-managed-by"
NOTIFICATIONS_CLAIM_LABEL = "cdplane.io/notifications-managed-by"

# Label used to mark source namespace RBAC with its claim kind
CLAIM_KIND_LABEL = "cdplane.io/claim-kind"

# Pod template annotations / labels
TLS_CHECKSUM_ANNOTATION = "cdplane.io/tls-checksum"
IMAGE_UPGRADED_LABEL = "image.upgraded"

# Annotations on local user token secrets
TOKEN_EXPIRY_ANNOTATION = "cdplane.io/token-expires-at"
TOKEN_USER_ANNOTATION = "cdplane.io/local-user"

# Service annotation requesting a serving certificate on OpenShift
AUTO_TLS_ANNOTATION = "service.beta.openshift.io/serving-cert-secret-name"

# Label and annotation key fragments owned by the platform. Keys containing any
# of these are never removed from live objects.
RESERVED_PLATFORM_PREFIXES = ["kubernetes.io", "k8s.io", "openshift.io"]

# Kubernetes name limits
MAX_NAME_LEN = 63
MAX_LABEL_VALUE_LEN = 63

# Delimiter used for nested dict keys
NESTED_DICT_DELIM = "."

# Proxy environment variables propagated to workloads
PROXY_ENV_VARS = ["HTTP_PROXY", "HTTPS_PROXY", "NO_PROXY"]

# API group of the application resources served by the managed platform
APPLICATION_API_GROUP = "apps.cdplane.io"
