from . import deka, k8s, manio

__version__ = '0.1.0'

# ---------------------------------------------------------------------------
# Expose the primary API of Deka for convenience.
# ---------------------------------------------------------------------------
apply_objects = deka.apply_objects
apply_object = deka.apply_object
load_manifests = manio.load_manifests
cluster_config = k8s.cluster_config
