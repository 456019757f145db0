import base64
import json
import logging
import os
import ssl
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Tuple

import httpx
import yaml

from deka.dtypes import GroupVersionKind, K8sConfig, ResourceMapping, Scope
from deka.errors import ApiError, DiscoveryError, KindNotFound

# Convenience: location of K8s credentials inside a Pod.
TOKENFILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")
CAFILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/ca.crt")
NAMESPACEFILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")

# Use this kubeconfig file if neither the user nor `KUBECONFIG` specify one.
DEFAULT_KUBECONFIG = Path("~/.kube/config")

# Define the exceptions that indicate a failed connection.
WEB_EXCEPTIONS = (httpx.RequestError, ssl.SSLError, TimeoutError)


# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("deka")


async def request(
        k8sconfig: K8sConfig,
        method: str,
        url: str,
        payload: dict | list | str | None,
        headers: dict | None,
        params: dict | None = None) -> Tuple[dict, int, bool]:
    """Return response of web request made with `client`.

    Inputs:
        k8sconfig: K8sConfig
            Contains the HttpX client with correct K8s certificates.
        url: str
            Eg `https://1.2.3.4/api/v1/namespaces`)
        payload: dict | list | str
            Strings are sent verbatim, everything else will be JSON encoded.
        headers: dict
            Request headers. These will *not* replace the existing request
            headers dictionary (eg the access tokens), but augment them.
        params: dict
            URL query parameters.

    Returns:
        (dict, int, bool): the JSON response, the HTTP status code and error.

    """
    if isinstance(payload, str):
        kwargs = dict(content=payload)
    else:
        kwargs = dict(json=payload)

    # Make the HTTP request. Deliberately without any retries because the
    # caller decides whether or not to try again.
    try:
        ret = await k8sconfig.client.request(
            method, url, headers=headers, params=params, **kwargs
        )
    except WEB_EXCEPTIONS as err:
        logit.warning(f"Connection error - {k8sconfig.name} - {err} - {method} {url}")
        return ({}, -1, True)

    try:
        response = json.loads(ret.text)
    except json.decoder.JSONDecodeError as err:
        msg = (
            f"JSON error - {k8sconfig.name} - "
            f"{err.msg} in line {err.lineno} column {err.colno}",
            "-" * 80 + "\n" + err.doc + "\n" + "-" * 80,
        )
        logit.error(str.join("\n", msg))
        return ({}, ret.status_code, True)

    # Log the entire request in debug mode.
    logit.debug(
        f"{method} {ret.status_code} {ret.url}\n"
        f"Headers: {headers}\n"
        f"Payload: {payload}\n"
        f"Response: {response}\n"
    )
    return (response, ret.status_code, False)


def api_error(resp: dict, code: int) -> ApiError:
    """Return `ApiError` based on the K8s `Status` response `resp`."""
    if not isinstance(resp, dict):
        resp = {}
    code = resp.get("code", code) if resp.get("kind") == "Status" else code
    message = resp.get("message", "") or ("Connection error" if code == -1 else "")
    return ApiError(code, resp.get("reason", ""), message)


def resource_url(mapping: ResourceMapping, namespace: str | None, name: str) -> str:
    """Return the full URL to the resource `name`.

    The `namespace` is ignored for cluster wide resources. Examples:
      - https://1.2.3.4/api/v1/namespaces/my-namespace/services/my-service
      - https://1.2.3.4/apis/rbac.authorization.k8s.io/v1/clusterroles/my-role

    """
    if mapping.scope == Scope.NAMESPACED and namespace:
        return f"{mapping.url}/namespaces/{namespace}/{mapping.plural}/{name}"
    return f"{mapping.url}/{mapping.plural}/{name}"


async def discover(k8sconfig: K8sConfig, gvk: GroupVersionKind) -> ResourceMapping:
    """Return the `ResourceMapping` for `gvk`.

    Raise `KindNotFound` if K8s does not serve the resource kind and
    `DiscoveryError` if we could not find out.

    """
    # The "v1" group comprises the traditional core components like Service and
    # Pod. This group is a special case and exposed under "api/v1" instead
    # of the usual `apis/...` path.
    if gvk.group:
        url = f"{k8sconfig.url}/apis/{gvk.group}/{gvk.version}"
    else:
        url = f"{k8sconfig.url}/api/{gvk.version}"

    resp, code, err = await request(k8sconfig, "GET", url, None, None)

    # K8s does not know the API group at all, which means it cannot know
    # the resource kind either.
    if code == 404:
        raise KindNotFound(f"Unsupported API <{gvk.apiVersion}> on {k8sconfig.name}")

    if err or code != 200:
        raise DiscoveryError(
            f"Could not interrogate {k8sconfig.name} ({url}): {api_error(resp, code)}"
        )

    # Ignore sub-resources like "deployments/status". We only care about
    # "deployments".
    for res in resp.get("resources", []):
        if res.get("kind") == gvk.kind and "/" not in res.get("name", "/"):
            scope = Scope.NAMESPACED if res.get("namespaced") else Scope.CLUSTER
            return ResourceMapping(gvk.apiVersion, gvk.kind, res["name"], scope, url)

    raise KindNotFound(
        f"Unsupported resource <{gvk.kind}> in <{gvk.apiVersion}> on {k8sconfig.name}"
    )


async def apply(k8sconfig: K8sConfig,
                mapping: ResourceMapping,
                namespace: str | None,
                name: str,
                field_manager: str,
                payload: str) -> dict:
    """Server side apply `payload` and force the ownership of all its fields.

    Raise `ApiError` if K8s rejects the request.

    """
    url = resource_url(mapping, namespace, name)
    params = {"fieldManager": field_manager, "force": "true"}
    headers = {
        "Accept": "application/json",
        "Content-Type": "application/apply-patch+yaml",
    }

    resp, code, err = await request(k8sconfig, "PATCH", url, payload, headers, params)
    if err or code not in (200, 201):
        logit.debug(f"{code} - PATCH - {url} - {resp}")
        raise api_error(resp, code)
    return resp


async def delete(k8sconfig: K8sConfig,
                 mapping: ResourceMapping,
                 namespace: str | None,
                 name: str) -> dict:
    """Delete the resource `name`.

    Raise `ApiError` if K8s rejects the request. The error will be
    `not_found` if the resource does not exist.

    """
    url = resource_url(mapping, namespace, name)
    resp, code, err = await request(k8sconfig, "DELETE", url, None, None)
    if err or code not in (200, 202):
        logit.debug(f"{code} - DELETE - {url} - {resp}")
        raise api_error(resp, code)
    return resp


def load_kubeconfig(kubeconf_path: Path,
                    context: str | None) -> Tuple[str, dict, dict, bool]:
    """Return context namespace as well as user- and cluster information.

    Inputs:
        kubeconf_path: Path
            Path to kubeconfig file, eg "~/.kube/config.yaml"
        context: str | None
            Kubeconf context. Use `None` to select the default context.

    Returns:
        namespace, user info, cluster info, err

    """
    # Load `kubeconfig`.
    try:
        kubeconf = yaml.safe_load(kubeconf_path.read_text())
    except (IOError, PermissionError) as err:
        logit.error(f"{err}")
        return ("", {}, {}, True)
    except yaml.YAMLError:
        logit.error(f"Kubeconfig YAML file <{kubeconf_path}> is corrupt")
        return ("", {}, {}, True)

    # Find the user and cluster information based on the specified `context`.
    try:
        # Use default context unless specified.
        ctx_name = context if context else kubeconf["current-context"]

        try:
            # Find the correct context.
            ctx = [_ for _ in kubeconf["contexts"] if _["name"] == ctx_name]
            assert len(ctx) == 1
            ctx = ctx[0]["context"]

            # Unpack the cluster- and user name from the current context.
            clustername, username = ctx["cluster"], ctx["user"]

            # Find the information for the current cluster and user.
            user_info = [_ for _ in kubeconf["users"] if _["name"] == username]
            cluster_info = [_ for _ in kubeconf["clusters"] if _["name"] == clustername]
            assert len(user_info) == len(cluster_info) == 1
        except AssertionError:
            logit.error(f"Could not find context <{ctx_name}>")
            return ("", {}, {}, True)

        # Unpack the cluster- and user information.
        cluster_info_out = dict(cluster_info[0]["cluster"])
        cluster_info_out["name"] = cluster_info[0]["name"]
        user_info_out = dict(user_info[0]["user"] or {})
        namespace = ctx.get("namespace") or "default"
    except (KeyError, TypeError, AttributeError):
        logit.error(f"Kubeconfig YAML file <{kubeconf_path}> is invalid")
        return ("", {}, {}, True)

    logit.info(f"Loaded {ctx_name} from Kubeconfig file <{kubeconf_path}>")
    return (namespace, user_info_out, cluster_info_out, False)


def load_incluster_config(
        tokenfile: Path = TOKENFILE,
        cafile: Path = CAFILE,
        nsfile: Path = NAMESPACEFILE) -> Tuple[K8sConfig, bool]:
    """Return K8s access config from Pod service account.

    Returns an error if we are not running in a Pod.

    """
    # These exist inside every Kubernetes pod.
    server_ip = os.getenv('KUBERNETES_SERVICE_HOST', None)
    server_port = os.getenv('KUBERNETES_SERVICE_PORT', "443")
    cafile, tokenfile, nsfile = Path(cafile), Path(tokenfile), Path(nsfile)

    # Sanity checks: URL and service account must exist, or we are not running
    # inside a Pod.
    try:
        assert server_ip is not None
        assert cafile.exists()
        assert tokenfile.exists()
    except AssertionError:
        logit.debug("Could not find incluster (service account) credentials.")
        return K8sConfig(), True

    namespace = nsfile.read_text().strip() if nsfile.exists() else "default"

    # Return the compiled K8s access configuration.
    logit.info("Use incluster (service account) credentials.")
    return K8sConfig(
        url=f'https://{server_ip}:{server_port}',
        name="incluster",
        namespace=namespace,
        token=tokenfile.read_text().strip(),
        cadata=cafile.read_text(),
        cert=None,
    ), False


def run_external_command(cmd: List[str], env: Dict[str, str]) -> Tuple[str, str, bool]:
    """Call `cmd` and return the `stdout` response as a string."""
    # Upsert the new environment variables to the default ones.
    tmp_env = dict(os.environ) | env

    # Execute the program.
    try:
        out = subprocess.run(cmd, env=tmp_env, capture_output=True)
    except FileNotFoundError:
        return "", "", True

    # Return with an error unless the return code was zero.
    if out.returncode != 0:
        return "", out.stderr.decode("utf8"), True

    try:
        stdout = out.stdout.decode("utf8")
    except UnicodeDecodeError:
        return "", "", True

    return stdout, "", False


def _cadata(cluster: dict) -> str | None:
    """Return the certificate authority of `cluster` (`None` if it has none)."""
    if "certificate-authority-data" in cluster:
        return base64.b64decode(cluster["certificate-authority-data"]).decode()
    if "certificate-authority" in cluster:
        return Path(cluster["certificate-authority"]).expanduser().read_text()
    return None


def load_authenticator_config(kubeconf_path: Path,
                              context: str | None) -> Tuple[K8sConfig, bool]:
    """Return K8s config based on authenticator app specified in `kubeconfig`.

    Inputs:
        kubeconf_path: Path
            Path to kubeconfig file, eg "~/.kube/config.yaml"
        context: str | None
            Kubeconf context. Use `None` to select the default context.

    Returns:
        K8sConfig

    """
    # Parse the kubeconfig file.
    namespace, user, cluster, err = load_kubeconfig(kubeconf_path, context)
    if err:
        return (K8sConfig(), True)

    # Unpack the command and its arguments (`exec` is the only mandatory key).
    try:
        cmd = user["exec"]["command"]
        args = user["exec"].get("args") or []
        env_kubeconf = user["exec"].get("env") or []
        cadata = _cadata(cluster)
    except (KeyError, TypeError):
        logit.debug(
            f"Context {context} in <{kubeconf_path}> does not use authenticator app"
        )
        return (K8sConfig(), True)

    # Compile the name, arguments and env vars for the command specified in kubeconf.
    cmd_args = [cmd] + args
    env = {_["name"]: _["value"] for _ in env_kubeconf}
    logit.debug(f"Authenticator app: {cmd_args} with envs: {env}")

    # Pre-format the command for the log message.
    log_cmd = (
        f"kubeconf={kubeconf_path} kubectx={context} "
        f"cmd={cmd_args}  env={env}"
    )

    # Run the external tool to produce the access token. That program must
    # produce a YAML document on stdout that specifies the bearer token.
    stdout, stderr, err = run_external_command(cmd_args, env)
    if err:
        logit.error(f"Authenticator app error: {stderr} ({log_cmd})")
        return (K8sConfig(), True)

    try:
        token = yaml.safe_load(stdout)["status"]["token"]
    except (KeyError, yaml.YAMLError):
        logit.error(f"Token manifest produced by {cmd_args} is corrupt ({log_cmd})")
        return (K8sConfig(), True)
    except TypeError:
        logit.error(f"The YAML token produced by {cmd_args} is corrupt ({log_cmd})")
        return (K8sConfig(), True)

    # Return the Kubernetes access configuration.
    return K8sConfig(
        url=cluster["server"],
        name=cluster["name"],
        namespace=namespace,
        cert=None,
        token=token,
        cadata=cadata,
    ), False


def load_token_config(kubeconf_path: Path,
                      context: str | None) -> Tuple[K8sConfig, bool]:
    """Return K8s config for a user with a static bearer token."""
    namespace, user, cluster, err = load_kubeconfig(kubeconf_path, context)
    if err:
        return (K8sConfig(), True)

    try:
        token = user["token"]
        cadata = _cadata(cluster)
    except KeyError:
        logit.debug(f"Context {context} in <{kubeconf_path}> does not use a token")
        return (K8sConfig(), True)

    return K8sConfig(
        url=cluster["server"],
        name=cluster["name"],
        namespace=namespace,
        token=token,
        cadata=cadata,
        cert=None,
    ), False


def load_client_cert_config(kubeconf_path: Path,
                            context: str | None) -> Tuple[K8sConfig, bool]:
    """Return K8s config for users with client certificates (eg Minikube, KinD).

    Minikube stores the certificates in files whereas KinD stores them
    directly in the Kubeconfig file. The latter must be copied into
    temporary files because HttpX can only load them from disk.

    """
    namespace, user, cluster, err = load_kubeconfig(kubeconf_path, context)
    if err:
        return (K8sConfig(), True)

    try:
        cadata = _cadata(cluster)
        if "client-certificate-data" in user:
            path = Path(tempfile.mkdtemp())
            client_crt = base64.b64decode(user["client-certificate-data"]).decode()
            client_key = base64.b64decode(user["client-key-data"]).decode()
            p_client_crt = path / "client.crt"
            p_client_key = path / "client.key"
            p_client_crt.write_text(client_crt)
            p_client_key.write_text(client_key)
        else:
            p_client_crt = Path(user["client-certificate"]).expanduser()
            p_client_key = Path(user["client-key"]).expanduser()
    except KeyError:
        logit.debug(
            f"Context {context} in <{kubeconf_path}> does not use client certificates"
        )
        return (K8sConfig(), True)

    return K8sConfig(
        url=cluster["server"],
        name=cluster["name"],
        namespace=namespace,
        token="",
        cadata=cadata,
        cert=(p_client_crt, p_client_key),
    ), False


def load_auto_config(kubeconf_path: Path | None,
                     context: str | None) -> Tuple[K8sConfig, bool]:
    """Automagically find and load the correct K8s configuration.

    Use the first Kubeconfig file that exists out of `kubeconf_path`,
    the `KUBECONFIG` environment variable and `~/.kube/config` and try all
    supported authentication schemes on it until one fits. Fall back to the
    service account credentials if there is no Kubeconfig file.

    Inputs:
        kubeconf_path: Path | None
            Path to kubeconfig file, eg "~/.kube/config.yaml"
        context: str | None
            Kubeconf context. Use `None` to select the default context.

    Returns:
        K8sConfig

    """
    if kubeconf_path is None:
        kubeconf_path = Path(os.getenv("KUBECONFIG", "") or DEFAULT_KUBECONFIG)
        kubeconf_path = kubeconf_path.expanduser()

        if not kubeconf_path.exists():
            conf, err = load_incluster_config()
            if not err:
                return conf, False
            logit.error("Could not find any Kubernetes credentials")
            return (K8sConfig(), True)
    else:
        kubeconf_path = kubeconf_path.expanduser()

    loaders = (
        load_authenticator_config,
        load_token_config,
        load_client_cert_config,
    )
    for loader in loaders:
        conf, err = loader(kubeconf_path, context)
        if not err:
            return conf, False
        logit.debug(f"{loader.__name__} failed")

    logit.error(f"Could not find a valid configuration in <{kubeconf_path}>")
    return (K8sConfig(), True)


def create_httpx_client(k8sconfig: K8sConfig,
                        parallelism: int = 0) -> Tuple[K8sConfig, bool]:
    """Return configured HttpX client.

    The client will make at most `parallelism` concurrent requests. All
    other requests queue up until a connection becomes available. Zero means
    there is no limit.

    """
    # Configure Httpx client with the K8s service account token.
    try:
        sslcontext = ssl.create_default_context(cadata=k8sconfig.cadata)
    except ssl.SSLError:
        logit.error(f"Invalid certificates for {k8sconfig.name}")
        return k8sconfig, True

    # Construct the HttpX client.
    try:
        if k8sconfig.cert:
            sslcontext.load_cert_chain(*k8sconfig.cert)

        timeout = httpx.Timeout(
            timeout=20, connect=20, read=20, write=20, pool=None
        )
        limits = httpx.Limits(
            max_connections=parallelism if parallelism > 0 else None,
            max_keepalive_connections=None,
        )
        transport = httpx.AsyncHTTPTransport(
            verify=sslcontext,
            limits=limits,
            retries=0,
            http1=True,
            http2=False,
        )
        client = httpx.AsyncClient(timeout=timeout, transport=transport)
    except ssl.SSLError:
        logit.error(f"Invalid certificates for {k8sconfig.name}")
        return k8sconfig, True
    except FileNotFoundError:
        logit.error(f"Certificate files do not exist for {k8sconfig.name}")
        return k8sconfig, True

    # Add the bearer token if we have one.
    headers = {'authorization': f'Bearer {k8sconfig.token}'} if k8sconfig.token else {}
    client.headers.update(headers)

    # Add the web client to the `k8sconfig` object.
    k8sconfig = k8sconfig._replace(client=client, headers=headers)
    return k8sconfig, False


def cluster_config(kubeconfig: Path | None,
                   context: str | None,
                   parallelism: int = 0) -> Tuple[K8sConfig, bool]:
    """Return the `K8sConfig` to connect to the API.

    This will read the Kubernetes credentials and create a client.

    Inputs:
        kubeconfig: Path
            Path to kubeconfig file (`None` to auto-detect).
        context: str
            Kubernetes context to use (can be `None` to use default).
        parallelism: int
            Maximum number of concurrent requests (0 for no limit).

    Returns:
        K8sConfig

    """
    try:
        # Parse Kubeconfig file.
        k8sconfig, err = load_auto_config(kubeconfig, context)
        assert not err

        # Configure a HttpX client for this cluster.
        k8sconfig, err = create_httpx_client(k8sconfig, parallelism)
        assert not err
    except AssertionError:
        return (K8sConfig(), True)

    # Log the K8s API address.
    logit.info(
        f"name: {k8sconfig.name}  "
        f"url {k8sconfig.url}  "
        f"namespace {k8sconfig.namespace}"
    )
    return (k8sconfig, False)
