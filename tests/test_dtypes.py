from pathlib import Path

import pydantic
import pytest

from deka.dtypes import (
    Action, BackoffConfig, Config, GroupVersionKind, K8sConfig, Manifest,
)
from deka.errors import (
    ApiError, ApplyError, ApplyErrors, DekaError, DiscoveryError,
    InvalidAction, InvalidManifest, K8sError, KindNotFound,
)

from .test_helpers import make_manifest


class TestGroupVersionKind:
    def test_parse(self):
        """Split the `apiVersion` into group and version."""
        fun = GroupVersionKind.parse
        assert fun("v1", "Pod") == GroupVersionKind("", "v1", "Pod")
        assert fun("apps/v1", "Deployment") == GroupVersionKind("apps", "v1", "Deployment")
        assert fun("example.com/v1beta1", "Foo") == ("example.com", "v1beta1", "Foo")

    def test_parse_err(self):
        """Reject malformed API versions and empty kinds."""
        invalid = [
            ("", "Pod"), ("/v1", "Pod"), ("apps/", "Pod"),
            ("a/b/c", "Pod"), ("v1 ", "Pod"), ("v1", ""),
        ]
        for api_version, kind in invalid:
            with pytest.raises(InvalidManifest):
                GroupVersionKind.parse(api_version, kind)

    def test_api_version(self):
        assert GroupVersionKind("", "v1", "Pod").apiVersion == "v1"
        assert GroupVersionKind("apps", "v1", "Deployment").apiVersion == "apps/v1"


class TestManifest:
    def test_str(self):
        """Manifests must have a concise string representation for log messages."""
        assert str(make_manifest(namespace="ns")) == "POD ns/example"
        assert str(make_manifest(kind="Namespace", name="foo")) == "NAMESPACE foo"

    def test_hashable_fields(self):
        man = make_manifest(action="delete")
        assert isinstance(man, Manifest)
        assert man.annotations == {"deka.ndrpnt.dev/action": "delete"}


class TestConfig:
    def test_defaults(self):
        """The defaults must match the `deka` command line tool."""
        cfg = Config()
        assert cfg.filename is None
        assert cfg.kubeconfig is None
        assert cfg.field_manager == "deka"
        assert cfg.timeout == 300
        assert cfg.parallelism == 10
        assert cfg.backoff == BackoffConfig()
        assert K8sConfig().namespace == "default"
        assert Action("apply") == Action.APPLY

    def test_validation(self):
        """Reject invalid values."""
        invalid = [
            {"field_manager": ""},
            {"timeout": -1},
            {"parallelism": -1},
            {"backoff": {"initial_interval": 0}},
            {"backoff": {"multiplier": 0.5}},
            {"backoff": {"randomization_factor": 2}},
        ]
        for raw in invalid:
            with pytest.raises(pydantic.ValidationError):
                Config.model_validate(raw)

        cfg = Config.model_validate({"filename": "-", "kubeconfig": "/tmp/kubeconf"})
        assert cfg.filename == Path("-")
        assert cfg.kubeconfig == Path("/tmp/kubeconf")


class TestErrors:
    def test_taxonomy(self):
        """All transient errors derive from `K8sError`, terminal ones do not."""
        assert issubclass(KindNotFound, DiscoveryError)
        assert issubclass(DiscoveryError, K8sError)
        assert issubclass(ApiError, K8sError)
        assert not issubclass(InvalidAction, K8sError)
        assert not issubclass(InvalidManifest, K8sError)
        for cls in (K8sError, InvalidAction, InvalidManifest, ApplyError, ApplyErrors):
            assert issubclass(cls, DekaError)

    def test_api_error(self):
        err = ApiError(404, "NotFound", "pods \"foo\" not found")
        assert err.not_found
        assert not ApiError(500).not_found
        assert "NotFound" in str(err)

    def test_apply_errors(self):
        """The aggregate error must contain the manifest and the original cause."""
        man = make_manifest(namespace="ns")
        cause = InvalidAction("foo")
        err = ApplyError(man, cause)
        assert err.manifest == man and err.cause is cause
        assert str(err) == "POD ns/example: Invalid action <foo>"

        errors = ApplyErrors([err, err])
        assert errors.errors == [err, err]
        assert "2" in str(errors)
