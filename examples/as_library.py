"""Use Deka as a library.

This example loads the manifests from a file, applies them with a custom
backoff policy and prints the objects that failed.

Point `KUBECONFIG` to a cluster and run this script from the parent directory:

  $ PYTHONPATH=`pwd` python examples/as_library.py manifests.yaml

"""
import asyncio
import os
import sys
from pathlib import Path

import deka
import deka.backoff
from deka.errors import ApplyErrors


async def main(fname: Path) -> int:
    # Optional: Set log level (0 = ERROR, 1 = WARNING, 2 = INFO, 3 = DEBUG).
    deka.deka.setup_logging(2)

    # Load the manifests.
    manifests, err = deka.load_manifests(fname)
    assert not err

    # Kubernetes credentials. Allow at most 5 concurrent requests.
    k8sconfig, err = deka.cluster_config(Path(os.environ["KUBECONFIG"]), None, 5)
    assert not err

    # Try every manifest up to 5 times and wait 2s in between.
    backoff = deka.backoff.ConstantBackoff(interval=2, max_retries=4)

    try:
        await deka.apply_objects(manifests, k8sconfig, "deka-example", None, backoff)
    except ApplyErrors as errors:
        for error in errors.errors:
            print(f"{error.manifest}: {error.cause}")
        return 1
    finally:
        await k8sconfig.client.aclose()
    return 0


if __name__ == '__main__':
    sys.exit(asyncio.run(main(Path(sys.argv[1]))))
