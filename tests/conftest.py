import unittest.mock as mock
from typing import Generator

import httpx
import pytest

import deka.deka
from deka.dtypes import K8sConfig


def pytest_configure(*args, **kwargs):
    """Pytest calls this hook on startup."""
    # Set log level to DEBUG for all unit tests.
    deka.deka.setup_logging(9)


@pytest.fixture
def k8sconfig() -> Generator[K8sConfig, None, None]:
    """Return a `K8sConfig` for a dummy cluster.

    The tests must mock all requests with `respx` or by patching the
    functions in `deka.k8s`.

    """
    cfg = K8sConfig(
        url="https://k8s.example.com",
        name="test-cluster",
        namespace="default",
        client=httpx.AsyncClient(),
    )

    # Short-circuit the `sleep` function between two attempts.
    with mock.patch.object(deka.deka, "_mysleep"):
        yield cfg
