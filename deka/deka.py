import asyncio
import json
import logging
from typing import Dict, List, Sequence

import colorama
import structlog
import tenacity as tc
from colorlog import ColoredFormatter

import deka.backoff
import deka.k8s as k8s
import deka.manio as manio
from deka.dtypes import (
    ANNOTATION_ACTION, Action, Config, GroupVersionKind, K8sConfig, Manifest,
)
from deka.errors import (
    ApiError, ApplyError, ApplyErrors, DekaError, InvalidAction,
    InvalidManifest, K8sError, KindNotFound,
)

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("deka")


async def _mysleep(delay: float):
    """This trivial function exists to mock out the `sleep` call during tests."""
    await asyncio.sleep(delay)


def resolve_action(annotations: Dict[str, str]) -> Action:
    """Return the action requested by the `deka.ndrpnt.dev/action` annotation.

    Raise `InvalidAction` if the annotation has an unsupported value.

    """
    value = annotations.get(ANNOTATION_ACTION)
    if value is None:
        return Action.APPLY

    try:
        return Action(value)
    except ValueError:
        raise InvalidAction(value)


def resolve_namespace(manifest: Manifest,
                      namespace: str | None,
                      k8sconfig: K8sConfig) -> str:
    """Return the namespace of the manifest, the user's or the cluster's default."""
    return manifest.namespace or namespace or k8sconfig.namespace


class retry_with_backoff(tc.retry_base):
    """Retry on `K8sError` until the `backoff` policy gives up.

    Tenacity consults this strategy exactly once after every failed attempt.
    The delay it obtained from `backoff` is also what `wait` will return.

    """
    def __init__(self, backoff: deka.backoff.Backoff):
        self.backoff = backoff
        self.delay = 0.0

    def __call__(self, retry_state: tc.RetryCallState) -> bool:
        outcome = retry_state.outcome
        if outcome is None or not outcome.failed:
            return False
        if not isinstance(outcome.exception(), K8sError):
            return False

        delay = self.backoff.next_delay()
        if delay is None:
            return False

        self.delay = delay
        return True

    def wait(self, retry_state: tc.RetryCallState) -> float:
        return self.delay


async def _attempt(manifest: Manifest,
                   k8sconfig: K8sConfig,
                   action: Action,
                   gvk: GroupVersionKind,
                   namespace: str,
                   manager: str,
                   payload: str) -> None:
    """Discover the resource and apply or delete it once.

    Return without error if the desired state already holds. Otherwise raise
    the `K8sError` that prevented us from reaching it.

    """
    # Discover the API endpoint in every attempt since a failed discovery
    # may well be the reason why we are trying again, eg because the CRD
    # was only just installed.
    try:
        mapping = await k8s.discover(k8sconfig, gvk)
    except KindNotFound as err:
        if action == Action.DELETE:
            logit.info(f"{manifest} already deleted (kind not found)")
            return
        logit.warning(f"Failed to discover API for {manifest}: {err}")
        raise
    except K8sError as err:
        logit.warning(f"Failed to discover API for {manifest}: {err}")
        raise

    if action == Action.APPLY:
        try:
            await k8s.apply(k8sconfig, mapping, namespace, manifest.name, manager, payload)
        except K8sError as err:
            logit.warning(f"Failed to apply {manifest}: {err}")
            raise
        logit.info(f"Applied {manifest}")
    elif action == Action.DELETE:
        try:
            await k8s.delete(k8sconfig, mapping, namespace, manifest.name)
        except ApiError as err:
            if err.not_found:
                logit.info(f"{manifest} already deleted (not found)")
                return
            logit.warning(f"Failed to delete {manifest}: {err}")
            raise
        except K8sError as err:
            logit.warning(f"Failed to delete {manifest}: {err}")
            raise
        logit.info(f"Deleted {manifest}")


async def apply_object(manifest: Manifest,
                       k8sconfig: K8sConfig,
                       manager: str,
                       namespace: str | None,
                       backoff: deka.backoff.Backoff) -> None:
    """Apply or delete `manifest` and retry until it works or `backoff` gives up.

    Inputs:
        manifest: Manifest
        k8sconfig: K8sConfig
        manager: str
            Field manager to use for server side apply.
        namespace: str | None
            Default namespace for manifests that do not specify one.
        backoff: Backoff
            Will be used as is, ie the caller must supply an instance that
            is not shared with other manifests.

    Raises:
        ApplyError

    """
    # Resolve everything that cannot change between attempts. Errors here are
    # terminal and we must not retry them.
    try:
        namespace = resolve_namespace(manifest, namespace, k8sconfig)
        action = resolve_action(manifest.annotations)
        gvk = GroupVersionKind.parse(manifest.apiVersion, manifest.kind)
        if not manifest.name:
            raise InvalidManifest(f"Manifest of kind <{manifest.kind}> has no name")

        try:
            payload = json.dumps(manifest.payload)
        except (TypeError, ValueError) as err:
            raise InvalidManifest(f"Cannot serialise {manifest}: {err}")
    except DekaError as err:
        logit.error(f"Invalid manifest {manifest}: {err}")
        raise ApplyError(manifest, err)

    strategy = retry_with_backoff(backoff)

    def _on_backoff(retry_state: tc.RetryCallState):
        """Log a warning on each retry."""
        attempt = retry_state.attempt_number
        logit.warning(
            f"Back off {attempt} - {action.value} {manifest} - "
            f"retry in {strategy.delay:.1f}s"
        )

    retrying = tc.AsyncRetrying(
        retry=strategy,
        wait=strategy.wait,
        stop=tc.stop_never,
        before_sleep=_on_backoff,
        sleep=_mysleep,
        reraise=True,
    )

    try:
        await retrying(
            _attempt, manifest, k8sconfig, action, gvk, namespace, manager, payload
        )
    except K8sError as err:
        logit.error(f"Giving up on {manifest}: {err}")
        raise ApplyError(manifest, err)

    # Start with a clean slate for whoever uses this backoff instance next.
    backoff.reset()


async def apply_objects(manifests: Sequence[Manifest],
                        k8sconfig: K8sConfig,
                        manager: str,
                        namespace: str | None,
                        backoff: deka.backoff.Backoff) -> None:
    """Concurrently apply or delete all `manifests`.

    Every manifest gets its own clone of `backoff` and will be retried
    independently of the others. A failed manifest will neither abort nor
    delay any of the others.

    Inputs:
        manifests: Sequence[Manifest]
        k8sconfig: K8sConfig
        manager: str
            Field manager to use for server side apply.
        namespace: str | None
            Default namespace for manifests that do not specify one. Falls
            back to the namespace of the K8s context if `None`.
        backoff: Backoff
            Template for the backoff policy of each manifest.

    Raises:
        ApplyErrors: contains one `ApplyError` for every failed manifest.

    """
    default_namespace = namespace or k8sconfig.namespace
    logit.info(
        f"Applying {len(manifests)} objects - field manager {manager} - "
        f"default namespace {default_namespace}"
    )

    coros = [
        apply_object(_, k8sconfig, manager, namespace, backoff.clone())
        for _ in manifests
    ]
    results = await asyncio.gather(*coros, return_exceptions=True)

    # Unexpected exceptions are bugs and must propagate. We only raise them
    # once all manifests have run their course.
    errors: List[ApplyError] = []
    for ret in results:
        if isinstance(ret, ApplyError):
            errors.append(ret)
        elif isinstance(ret, BaseException):
            raise ret

    logit.info(f"Applied {len(manifests)} objects - {len(errors)} errors")
    if len(errors) > 0:
        raise ApplyErrors(errors)


def make_backoff(cfg: Config) -> deka.backoff.ExponentialBackoff:
    """Return the backoff template specified in `cfg`."""
    return deka.backoff.ExponentialBackoff(
        initial_interval=cfg.backoff.initial_interval,
        multiplier=cfg.backoff.multiplier,
        randomization_factor=cfg.backoff.randomization_factor,
        max_interval=max(cfg.backoff.max_interval, cfg.backoff.initial_interval),
        max_elapsed_time=cfg.timeout if cfg.timeout > 0 else None,
    )


def show_errors(errors: ApplyErrors) -> None:
    """Print the failed manifests and the reasons."""
    cRed = colorama.Fore.RED
    cReset = colorama.Fore.RESET

    print(f"{cRed}{len(errors.errors)} object(s) failed{cReset}")
    for err in sorted(errors.errors, key=lambda _: str(_.manifest)):
        print(f"  {cRed}{err.manifest}{cReset}: {err.cause}")


async def apply_manifests(cfg: Config) -> bool:
    """Apply all manifests in `cfg.filename` to the cluster.

    Returns:
        err

    """
    if cfg.filename is None:
        logit.error("Must specify a file with manifests")
        return True

    try:
        manifests, err = manio.load_manifests(cfg.filename)
        assert not err

        k8sconfig, err = k8s.cluster_config(
            cfg.kubeconfig, cfg.kubecontext, cfg.parallelism
        )
        assert not err
    except AssertionError:
        return True

    try:
        await apply_objects(
            manifests, k8sconfig, cfg.field_manager, cfg.namespace, make_backoff(cfg)
        )
    except ApplyErrors as errors:
        show_errors(errors)
        return True
    finally:
        await k8sconfig.client.aclose()

    # All good.
    return False


def make_formatter(output: str) -> logging.Formatter:
    """Return the log formatter for the `output` format.

    "plain" and "pretty" are coloured formats for humans, "json" and
    "logfmt" produce one structured line per message for log collectors.

    """
    if output == "plain":
        return ColoredFormatter(
            "%(log_color)s%(levelname)s%(reset)s - "
            "%(name)s:%(funcName)s:%(lineno)d - %(message)s"
        )

    if output == "pretty":
        return ColoredFormatter(
            "%(asctime)s %(log_color)s%(levelname)-8s%(reset)s %(message)s\n"
            "    at %(name)s:%(funcName)s in %(pathname)s:%(lineno)d"
        )

    if output == "json":
        renderer = structlog.processors.JSONRenderer()
    elif output == "logfmt":
        renderer = structlog.processors.LogfmtRenderer(
            key_order=["timestamp", "level", "logger", "event"]
        )
    else:
        raise ValueError(f"Unknown output format <{output}>")

    # Render the records of the standard library loggers with structlog.
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.stdlib.add_logger_name,
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )


def setup_logging(log_level: int, debug: bool = False, output: str = "plain") -> None:
    """Configure logging at `log_level`.

    Level 0: ERROR
    Level 1: WARNING
    Level 2: INFO
    Level >=3: DEBUG

    Inputs:
        log_level: int
        debug: bool
            Also show the log messages of all libraries, most notably HttpX.
        output: str
            One of "plain", "pretty", "json" or "logfmt".

    Returns:
        None

    """
    # Pick the correct log level.
    if log_level == 0:
        level = "ERROR"
    elif log_level == 1:
        level = "WARNING"
    elif log_level == 2:
        level = "INFO"
    else:
        level = "DEBUG"

    # Create logger.
    logger = logging.getLogger("deka")
    logger.setLevel(level)

    # Configure stdout handler.
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(make_formatter(output))

    # Attach the handler to the `deka` logger, or to the root logger if the
    # user wants to see the messages of all the libraries as well.
    if debug:
        root = logging.getLogger()
        root.setLevel(level)
        root.addHandler(handler)
    else:
        logger.addHandler(handler)
