"""Load the optional Deka configuration file.

The file specifies default values for the command line options, eg

    kubeconfig: ~/.kube/config
    namespace: my-app
    field_manager: my-pipeline
    timeout: 600
    backoff:
      initial_interval: 1
      max_interval: 60

"""
import logging
from pathlib import Path
from types import SimpleNamespace
from typing import Tuple

import pydantic
import yaml

from deka.dtypes import Config

# Convenience.
logit = logging.getLogger("deka")


def load(fname: Path) -> Tuple[Config, bool]:
    """Parse the Deka configuration file `fname` and return it as a `Config`."""
    err_resp = Config(), True

    # Load the configuration file.
    try:
        raw = yaml.safe_load(fname.read_text())
    except FileNotFoundError as e:
        logit.error(f"Cannot load config file <{fname}>: {e.args[1]}")
        return err_resp
    except yaml.YAMLError as exc:
        # Special case: parser supplied location information.
        mark = getattr(exc, "problem_mark", SimpleNamespace(line=-1, column=-1))
        line, col = (mark.line + 1, mark.column + 1)
        msg = f"YAML format error in {fname}: Line {line} Column {col}"
        logit.error(msg)
        return err_resp

    # An empty file is a valid configuration file.
    raw = {} if raw is None else raw

    # Parse the configuration into `Config` structure.
    try:
        cfg = Config.model_validate(raw)
    except (pydantic.ValidationError, TypeError) as e:
        logit.error(f"Schema is invalid: {e}")
        return err_resp

    # Paths in the configuration file are relative to the file itself.
    if cfg.kubeconfig is not None:
        cfg.kubeconfig = fname.parent.absolute() / cfg.kubeconfig.expanduser()
    if cfg.filename is not None and str(cfg.filename) != "-":
        cfg.filename = fname.parent.absolute() / cfg.filename.expanduser()

    return cfg, False
