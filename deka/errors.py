"""Exceptions raised while applying manifests.

The reconciler treats them in three different ways:

  * `InvalidAction` and `InvalidManifest` are terminal. They occur before we
    ever contact K8s and are never retried.
  * Every `K8sError` is transient and will be retried until the backoff
    gives up, unless it means the desired state already holds (eg the
    resource we want to delete does not exist).
  * `ApplyError` and `ApplyErrors` report the final outcome of one manifest
    and of an entire batch, respectively.

"""
from typing import TYPE_CHECKING, List

if TYPE_CHECKING:
    from deka.dtypes import Manifest


class DekaError(Exception):
    """Base class for all Deka errors."""


class InvalidAction(DekaError):
    """The action annotation has an unsupported value."""
    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Invalid action <{value}>")


class InvalidManifest(DekaError):
    """The manifest cannot be addressed or serialised."""


class K8sError(DekaError):
    """Base class for all errors reported by the K8s API client."""


class ApiError(K8sError):
    """K8s did not accept the request."""
    def __init__(self, code: int, reason: str = "", message: str = ""):
        self.code = code
        self.reason = reason
        self.message = message
        super().__init__(f"{code} - {reason} - {message}")

    @property
    def not_found(self) -> bool:
        return self.code == 404


class DiscoveryError(K8sError):
    """Could not determine the API endpoint for a resource kind."""


class KindNotFound(DiscoveryError):
    """K8s does not (or not yet) serve the resource kind."""


class ApplyError(DekaError):
    """Could not apply or delete `manifest`."""
    def __init__(self, manifest: "Manifest", cause: DekaError):
        self.manifest = manifest
        self.cause = cause
        super().__init__(f"{manifest}: {cause}")


class ApplyErrors(DekaError):
    """Some manifests of a batch could not be applied or deleted."""
    def __init__(self, errors: List[ApplyError]):
        self.errors = errors
        super().__init__(f"Error(s) while applying {len(errors)} object(s)")
