import enum
from pathlib import Path
from typing import Any, Dict, NamedTuple, Tuple

import httpx
from pydantic import BaseModel, Field

from deka.errors import InvalidManifest

# Manifests may carry this annotation to request a specific action, eg
# `deka.ndrpnt.dev/action: delete`. Manifests without it will be applied.
ANNOTATION_ACTION = "deka.ndrpnt.dev/action"


# -----------------------------------------------------------------------------
#                                  Kubernetes
# -----------------------------------------------------------------------------
class Action(enum.Enum):
    """What to do with a manifest."""
    APPLY = "apply"
    DELETE = "delete"


class Scope(enum.Enum):
    """Whether a resource lives inside a namespace or not."""
    CLUSTER = "Cluster"
    NAMESPACED = "Namespaced"


class GroupVersionKind(NamedTuple):
    """Uniquely identify a K8s resource kind, eg ("apps", "v1", "Deployment")."""
    group: str        # "" for the core group, eg "apps" for Deployments.
    version: str      # "v1"
    kind: str         # "Deployment"

    @property
    def apiVersion(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @classmethod
    def parse(cls, api_version: str, kind: str) -> "GroupVersionKind":
        """Return the GVK for `api_version` (eg "apps/v1") and `kind`.

        Raise `InvalidManifest` if either is malformed.

        """
        if not kind:
            raise InvalidManifest(f"Manifest has no kind (apiVersion <{api_version}>)")

        parts = api_version.split("/")
        if len(parts) == 1:
            group, version = "", parts[0]
        elif len(parts) == 2:
            group, version = parts
            if not group:
                raise InvalidManifest(f"Invalid apiVersion <{api_version}>")
        else:
            raise InvalidManifest(f"Invalid apiVersion <{api_version}>")

        if not version or version.strip() != version:
            raise InvalidManifest(f"Invalid apiVersion <{api_version}>")
        return cls(group, version, kind)


class Manifest(NamedTuple):
    """One manifest document and the fields we need to address it.

    The `payload` is the verbatim document and will be sent to K8s as is.

    """
    apiVersion: str                 # "apps/v1"
    kind: str                       # "Deployment"
    name: str                       # "appname"
    namespace: str | None           # `None` if the manifest did not specify one.
    annotations: Dict[str, str]
    payload: Dict[str, Any]

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind.upper()} {self.namespace}/{self.name}"
        return f"{self.kind.upper()} {self.name}"


class ResourceMapping(NamedTuple):
    """Describe how to address a specific K8s resource kind."""
    apiVersion: str   # "batch/v1" or "v1".
    kind: str         # "Deployment" (as specified in manifest)
    plural: str       # "deployments" (the REST name of the resource)
    scope: Scope      # Whether or not the resource is namespaced.
    url: str          # API group endpoint, eg "k8s-host.com/api/v1".


class K8sConfig(NamedTuple):
    """Everything we need to know to connect and authenticate with Kubernetes."""
    # Kubernetes URL and name.
    url: str = ""
    name: str = ""

    # Use this namespace if neither the manifest nor the user specified one.
    namespace: str = "default"

    # Bearer token (eg service accounts or authenticator apps).
    token: str = ""

    # Certificate authority for self signed certificates.
    cadata: str | None = None
    cert: Tuple[Path, Path] | None = None
    headers: Dict[str, str] = {}

    # HttpX client to access the cluster. Will be replaced with a properly
    # configured client in `k8s.create_httpx_client`.
    client: httpx.AsyncClient = httpx.AsyncClient()


# -----------------------------------------------------------------------------
#                               Deka Configuration
# -----------------------------------------------------------------------------
class BackoffConfig(BaseModel):
    """Parameters of the exponential backoff between two attempts."""
    initial_interval: float = Field(default=0.4, gt=0)
    multiplier: float = Field(default=5.0, ge=1)
    randomization_factor: float = Field(default=0.5, ge=0, le=1)
    max_interval: float = Field(default=30.0, gt=0)


class Config(BaseModel):
    """Uniform interface into top level Deka API."""
    model_config = {"str_strip_whitespace": True}

    # File with the manifests to apply. Use "-" to read from stdin.
    filename: Path | None = None

    # Path to Kubernetes credentials (`None` to auto-detect them).
    kubeconfig: Path | None = None

    # Kubernetes context (use `None` to use the default).
    kubecontext: str | None = None

    # Namespace for all manifests that do not specify their own.
    namespace: str | None = None

    # Name of the manager used to track field ownership.
    field_manager: str = Field(default="deka", min_length=1)

    # Seconds before we give up on a manifest. Zero means never.
    timeout: int = Field(default=300, ge=0)

    # Maximum number of concurrent requests to K8s. Zero means no limit.
    parallelism: int = Field(default=10, ge=0)

    backoff: BackoffConfig = BackoffConfig()
