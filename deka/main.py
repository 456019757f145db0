import argparse
import asyncio
import logging
from pathlib import Path
from typing import Tuple

import colorama

import deka.cfgfile
import deka.deka
from deka import __version__
from deka.dtypes import Config

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("deka")


def parse_commandline_args(args=None):
    """Return parsed command line."""
    # A dummy top level parser that will become the parent for all sub-parsers
    # to share all its arguments.
    parent = argparse.ArgumentParser(
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        prog="deka",
    )
    parent.add_argument(
        "-v", "--verbosity", action="count", default=0,
        help="Log level (-v: WARNING -vv: INFO -vvv: DEBUG)"
    )
    parent.add_argument(
        "-D", "--debug", action="store_true",
        help="Also show the log messages of all libraries"
    )
    parent.add_argument(
        "-o", "--output", type=str, default="plain",
        choices=("json", "logfmt", "plain", "pretty"),
        help="Format of the log messages (default plain)"
    )
    parent.add_argument(
        "-c", "--config", type=str, default="", dest="configfile",
        help="Read configuration from this file"
    )
    parent.add_argument(
        "-n", "--namespace", type=str, metavar="ns", default=None,
        help="Namespace for all manifests that do not specify one",
    )
    parent.add_argument(
        "-p", "--parallelism", type=int, metavar="N", default=None,
        help="Limit the number of parallel requests (0 to disable, default 10)",
    )
    parent.add_argument(
        "--kubeconfig", type=str, metavar="path",
        default=None, help="Location of kubeconfig file",
    )
    parent.add_argument(
        "--kubecontext", type=str, metavar="kubecontext", default=None,
        help="Kubernetes context (defaults to default context)",
    )

    # The primary parser for the top level options.
    parser = argparse.ArgumentParser(
        add_help=True, prog="deka",
        description="Apply Kubernetes manifests the dumb way.",
    )
    subparsers = parser.add_subparsers(
        help='Mode', dest='parser', metavar="ACTION",
        title="Operation", required=True,
    )

    # Sub-command APPLY.
    parser_apply = subparsers.add_parser(
        'apply', help="Server-side apply manifests", parents=[parent]
    )
    parser_apply.add_argument(
        "-f", "--filename", type=str, metavar="path", default=None,
        help="File with the manifests to apply ('-' for stdin)",
    )
    parser_apply.add_argument(
        "--field-manager", type=str, metavar="name", default=None,
        dest="field_manager",
        help="Name of the manager used to track field ownership (default deka)",
    )
    parser_apply.add_argument(
        "--timeout", type=int, metavar="seconds", default=None,
        help="Give up on a manifest after this many seconds (0 to wait indefinitely)",
    )

    # Sub-command VERSION.
    subparsers.add_parser(
        'version', help="Show Deka version and exit", parents=[parent]
    )

    return parser.parse_args(args)


def compile_config(cmdline_param) -> Tuple[Config, bool]:
    """Return `Config` from `cmdline_param`.

    Command line arguments take precedence over the values in the
    configuration file (if the user specified one).

    Inputs:
        cmdline_param: SimpleNamespace

    Returns:
        Config, err

    """
    err_resp = Config(), True

    # Convenience.
    p = cmdline_param

    if p.configfile:
        logit.info(f"Loading configuration file <{p.configfile}>")
        cfg, err = deka.cfgfile.load(Path(p.configfile))
        if err:
            return err_resp
    else:
        cfg = Config()

    # Override the configuration with all explicit command line arguments.
    overrides = {
        "filename": getattr(p, "filename", None),
        "kubeconfig": p.kubeconfig,
        "kubecontext": p.kubecontext,
        "namespace": p.namespace,
        "parallelism": p.parallelism,
        "field_manager": getattr(p, "field_manager", None),
        "timeout": getattr(p, "timeout", None),
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}

    # Re-validate the configuration to sanity check the command line values.
    try:
        cfg = Config.model_validate(cfg.model_dump() | overrides)
    except ValueError as e:
        logit.error(f"Invalid arguments: {e}")
        return err_resp

    if cfg.filename is None:
        logit.error("Must specify a file with manifests (eg `--filename foo.yaml`)")
        return err_resp

    # Abort without credentials.
    if cfg.kubeconfig is not None and not cfg.kubeconfig.expanduser().exists():
        logit.error(f"Cannot find Kubernetes config file <{cfg.kubeconfig}>")
        return err_resp

    return cfg, False


def main() -> int:
    param = parse_commandline_args()

    # Print version information and quit.
    if param.parser == "version":
        print(__version__)
        return 0

    # Initialise logging.
    colorama.just_fix_windows_console()
    deka.deka.setup_logging(param.verbosity, param.debug, param.output)

    # Create Deka configuration from command line arguments.
    cfg, err = compile_config(param)
    if err:
        return 1

    # Do what the user asked us to do.
    if param.parser == "apply":
        err = asyncio.run(deka.deka.apply_manifests(cfg))
    else:
        logit.error(f"Unknown command <{param.parser}>")
        return 1

    # Return error code.
    return 1 if err else 0
