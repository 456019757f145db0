from typing import Any, Dict

import deka.backoff
from deka.dtypes import Manifest

# Reduced response of `GET /api/v1` on a real cluster.
API_RESOURCES_V1: Dict[str, Any] = {
    "kind": "APIResourceList",
    "groupVersion": "v1",
    "resources": [
        {
            "name": "namespaces",
            "singularName": "namespace",
            "namespaced": False,
            "kind": "Namespace",
            "verbs": ["create", "delete", "get", "list", "patch", "update", "watch"],
            "shortNames": ["ns"],
        },
        {
            "name": "pods",
            "singularName": "pod",
            "namespaced": True,
            "kind": "Pod",
            "verbs": [
                "create", "delete", "deletecollection", "get", "list",
                "patch", "update", "watch",
            ],
            "shortNames": ["po"],
            "categories": ["all"],
        },
        {
            "name": "pods/status",
            "singularName": "",
            "namespaced": True,
            "kind": "Pod",
            "verbs": ["get", "patch", "update"],
        },
        {
            "name": "services",
            "singularName": "service",
            "namespaced": True,
            "kind": "Service",
            "verbs": [
                "create", "delete", "deletecollection", "get", "list",
                "patch", "update", "watch",
            ],
            "shortNames": ["svc"],
            "categories": ["all"],
        },
    ]
}

# Reduced response of `GET /apis/rbac.authorization.k8s.io/v1`.
API_RESOURCES_RBAC: Dict[str, Any] = {
    "kind": "APIResourceList",
    "groupVersion": "rbac.authorization.k8s.io/v1",
    "resources": [
        {
            "name": "clusterroles",
            "singularName": "clusterrole",
            "namespaced": False,
            "kind": "ClusterRole",
            "verbs": ["create", "delete", "get", "list", "patch", "update", "watch"],
        },
    ]
}

# K8s response when the requested resource does not exist.
NOT_FOUND_STATUS: Dict[str, Any] = {
    "kind": "Status",
    "apiVersion": "v1",
    "metadata": {},
    "status": "Failure",
    "message": "pods \"example\" not found",
    "reason": "NotFound",
    "details": {"name": "example", "kind": "pods"},
    "code": 404,
}

# K8s response when etcd is down.
INTERNAL_ERROR_STATUS: Dict[str, Any] = {
    "kind": "Status",
    "apiVersion": "v1",
    "metadata": {},
    "status": "Failure",
    "message": "Internal error occurred: unexpected response: 500",
    "reason": "InternalError",
    "code": 500,
}


def make_manifest(kind: str = "Pod",
                  name: str = "example",
                  namespace: str | None = None,
                  api_version: str = "v1",
                  action: str | None = None) -> Manifest:
    """Return a `Manifest` with optional `deka.ndrpnt.dev/action` annotation."""
    meta: Dict[str, Any] = {"name": name}
    if namespace is not None:
        meta["namespace"] = namespace
    annotations = {} if action is None else {"deka.ndrpnt.dev/action": action}
    if annotations:
        meta["annotations"] = annotations

    payload: Dict[str, Any] = {
        "apiVersion": api_version,
        "kind": kind,
        "metadata": meta,
    }
    if kind == "Pod":
        payload["spec"] = {
            "containers": [{"name": "example", "image": "example-image"}],
        }

    return Manifest(
        apiVersion=api_version,
        kind=kind,
        name=name,
        namespace=namespace,
        annotations=annotations,
        payload=payload,
    )


class CountingBackoff(deka.backoff.Backoff):
    """Count the calls to `reset` and `next_delay` of `inner`.

    All clones share the same counters to let the tests inspect the calls
    made for the clones that `apply_objects` creates internally.

    """
    def __init__(self, inner: deka.backoff.Backoff, counters: Dict[str, int] | None = None):
        self.inner = inner
        self.counters = {"reset": 0, "next_delay": 0} if counters is None else counters

    @property
    def reset_calls(self) -> int:
        return self.counters["reset"]

    @property
    def next_delay_calls(self) -> int:
        return self.counters["next_delay"]

    def reset(self) -> None:
        self.counters["reset"] += 1
        self.inner.reset()

    def next_delay(self) -> float | None:
        self.counters["next_delay"] += 1
        return self.inner.next_delay()

    def clone(self) -> "CountingBackoff":
        return CountingBackoff(self.inner.clone(), self.counters)
