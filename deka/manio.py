import logging
import sys
from pathlib import Path
from typing import Any, List, Tuple

import yaml

from deka.dtypes import Manifest

# Use the fast LibYAML parser if it is available on the host.
try:                                 # codecov-skip
    from yaml import CSafeLoader as BaseLoader  # type: ignore
except ImportError:                  # codecov-skip
    from yaml import SafeLoader as BaseLoader  # type: ignore

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("deka")


class Loader(BaseLoader):
    """Safe YAML loader that keeps timestamps as strings.

    The payload must survive the round trip to JSON unchanged, eg
    `since: 2024-01-01` must reach K8s as the string "2024-01-01" and not
    as a `datetime.date`.

    """
    yaml_implicit_resolvers = {
        key: [_ for _ in resolvers if _[0] != "tag:yaml.org,2002:timestamp"]
        for key, resolvers in BaseLoader.yaml_implicit_resolvers.items()
    }


def make_manifest(doc: dict) -> Manifest:
    """Extract the fields Deka needs from the K8s manifest `doc`.

    Missing fields will be empty. It is up to the reconciler to reject
    manifests that lack essential fields like `kind` or `metadata.name`.

    """
    meta = doc.get("metadata") or {}
    annotations = meta.get("annotations") or {}

    return Manifest(
        apiVersion=str(doc.get("apiVersion") or ""),
        kind=str(doc.get("kind") or ""),
        name=str(meta.get("name") or ""),
        namespace=meta.get("namespace") or None,
        annotations={str(k): str(v) for k, v in annotations.items()},
        payload=doc,
    )


def unpack_list(doc: dict) -> List[dict]:
    """Return the items of a `List` manifest or `[doc]` for all other manifests.

    This expands the `v1/List` documents that eg `kubectl get -o yaml`
    produces into their individual manifests.

    """
    if doc.get("kind") != "List" or "items" not in doc:
        return [doc]
    return [_ for _ in (doc["items"] or []) if _ is not None]


def parse(yaml_str: str, source: str) -> Tuple[List[Manifest], bool]:
    """Parse the multi-document YAML (or JSON) string `yaml_str`.

    Empty documents, eg due to a trailing "---", will be skipped. It is an
    error if any of the documents is not a dictionary.

    Inputs:
        yaml_str: str
        source: str
            File name for the log messages.

    Returns:
        List[Manifest], err

    """
    try:
        docs: List[Any] = list(yaml.load_all(yaml_str, Loader=Loader))
    except yaml.YAMLError as err:
        mark = getattr(err, "problem_mark", None)
        line = mark.line + 1 if mark else ""
        logit.error(f"Cannot YAML parse <{source}> - {err} - Line {line}")
        return ([], True)

    manifests: List[Manifest] = []
    for idx, doc in enumerate(docs):
        if doc is None:
            continue

        if not isinstance(doc, dict):
            logit.error(f"Document {idx} in <{source}> is not a K8s manifest")
            return ([], True)

        for item in unpack_list(doc):
            if not isinstance(item, dict):
                logit.error(f"List in document {idx} of <{source}> is corrupt")
                return ([], True)

            # `make_manifest` relies on these being dictionaries (if present).
            meta = item.get("metadata") or {}
            if isinstance(meta, dict):
                annotations = meta.get("annotations") or {}
            else:
                annotations = None
            if not isinstance(meta, dict) or not isinstance(annotations, dict):
                logit.error(f"Document {idx} in <{source}> has invalid metadata")
                return ([], True)

            manifests.append(make_manifest(item))

    logit.debug(f"Parsed {len(manifests)} manifests from <{source}>")
    return (manifests, False)


def load_manifests(fname: Path) -> Tuple[List[Manifest], bool]:
    """Return all K8s manifests in `fname`.

    Read the manifests from stdin if `fname` is "-".

    Input:
        fname: Path

    Returns:
        List[Manifest], err

    """
    if str(fname) == "-":
        source = "<stdin>"
        yaml_str = sys.stdin.read()
    else:
        source = str(fname)
        try:
            yaml_str = Path(fname).expanduser().read_text()
        except (FileNotFoundError, IsADirectoryError, PermissionError) as err:
            logit.error(f"Cannot load manifests from <{fname}>: {err}")
            return ([], True)
        except UnicodeDecodeError:
            logit.error(f"<{fname}> is not a text file")
            return ([], True)

    return parse(yaml_str, source)
