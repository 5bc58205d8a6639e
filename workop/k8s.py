"""Run Workload replicas as Kubernetes Deployments.

The HTTP helpers never raise. They return the decoded JSON response together
with an error flag and log the details themselves. Network errors are retried
a few times before the helpers give up. The `K8sDeploymentDriver` converts any
remaining failure into a `TransientError` for the reconciler.
"""

import asyncio
import json
import logging
import ssl
from pathlib import Path
from typing import List, Tuple
from urllib.parse import urlparse

import httpx
import square.k8s
import tenacity as tc
from square.dtypes import ConnectionParameters, K8sConfig

from workop.defaults import deployment_labels, pod_security_context
from workop.errors import TransientError
from workop.models import K8sDeployment, ResourceIdentity

# Network errors worth another attempt.
WEB_EXCEPTIONS = (httpx.RequestError, ssl.SSLError, KeyError, asyncio.TimeoutError)

# Convenience.
logit = logging.getLogger("app")


def _on_backoff(retry_state: tc.RetryCallState):
    """Log a warning on each retry."""
    k8sconfig, method, url = retry_state.args[:3]
    meta_log = {
        "component": "k8s",
        "cluster": k8sconfig.name,
        "method": method,
        "path": urlparse(url).path,
        "attempt": retry_state.attempt_number,
    }
    logit.warning("k8s request back off", meta_log)


async def _mysleep(delay: float):
    """Sleep between retries (tests replace the wait strategy instead)."""
    await asyncio.sleep(delay)


# Retries end after a few attempts. The controller retries the entire pass
# with its own backoff afterwards.
@tc.retry(
    stop=(tc.stop_after_delay(60) | tc.stop_after_attempt(4)),
    wait=tc.wait_exponential(multiplier=0.5, min=0, max=8) + tc.wait_random(0, 1),
    retry=tc.retry_if_exception_type(WEB_EXCEPTIONS),
    before_sleep=_on_backoff,
    reraise=True,
    sleep=_mysleep,
)
async def _call(
    k8sconfig: K8sConfig,
    method: str,
    url: str,
    payload: dict | list | None,
    headers: dict | None,
) -> httpx.Response:
    return await k8sconfig.client.request(method, url, json=payload, headers=headers)


async def request(
    k8sconfig: K8sConfig,
    method: str,
    url: str,
    payload: dict | list | None = None,
    headers: dict | None = None,
) -> Tuple[dict, int, bool]:
    """Send `payload` to the K8s API and return the decoded response.

    The `headers` augment those of the client (eg its bearer token).

    Returns `(response, status_code, err)`. The status code is -1 if the
    request never produced a response.

    """
    meta_log = {
        "component": "k8s",
        "cluster": k8sconfig.name,
        "method": method.upper(),
        "url": url,
    }

    try:
        ret = await _call(k8sconfig, method, url, payload=payload, headers=headers)
    except WEB_EXCEPTIONS as err:
        meta_log["reason"] = repr(err)
        logit.error("k8s request failed", meta_log)
        return ({}, -1, True)

    meta_log["code"] = ret.status_code
    try:
        response = json.loads(ret.text)
    except json.decoder.JSONDecodeError as err:
        meta_log["reason"] = f"{err.msg} in line {err.lineno} column {err.colno}"
        meta_log["body"] = err.doc
        logit.error("k8s response is not JSON", meta_log)
        return ({}, ret.status_code, True)

    logit.debug("k8s request", meta_log)
    return (response, ret.status_code, False)


def _check(
    method: str, url: str, ret: Tuple[dict, int, bool], codes: Tuple[int, ...]
) -> Tuple[dict, bool]:
    """Flag `ret` as an error unless its status code is one of `codes`."""
    resp, code, err = ret
    if err or code not in codes:
        meta_log = {"component": "k8s", "method": method, "url": url, "code": code}
        meta_log["response"] = resp
        logit.error("unexpected k8s response", meta_log)
        return (resp, True)
    return (resp, False)


async def get(k8sconfig: K8sConfig, url: str) -> Tuple[dict, bool]:
    """Make GET requests to K8s (see `request`)."""
    ret = await request(k8sconfig, "GET", url, payload=None, headers=None)
    return _check("GET", url, ret, (200,))


async def post(k8sconfig: K8sConfig, url: str, payload: dict) -> Tuple[dict, bool]:
    """Make POST requests to K8s (see `request`)."""
    ret = await request(k8sconfig, "POST", url, payload, headers=None)
    return _check("POST", url, ret, (201,))


async def patch(k8sconfig: K8sConfig, url: str, payload: List[dict]) -> Tuple[dict, bool]:
    """Apply the JSON patch `payload` (see `request`)."""
    headers = {"Content-Type": "application/json-patch+json"}
    ret = await request(k8sconfig, "PATCH", url, payload, headers)
    return _check("PATCH", url, ret, (200,))


async def delete(k8sconfig: K8sConfig, url: str, payload: dict) -> Tuple[dict, bool]:
    """Make DELETE requests to K8s (see `request`).

    A 404 is not an error since the resource is gone either way.
    """
    ret = await request(k8sconfig, "DELETE", url, payload, headers=None)
    return _check("DELETE", url, ret, (200, 202, 404))


def create_cluster_config(kubeconf: Path, context: str) -> Tuple[K8sConfig, bool]:
    """Return the K8s config with a ready-to-use HTTP client."""
    cfg, err = square.k8s.load_auto_config(kubeconf, context)
    if err:
        return K8sConfig(), True

    params = ConnectionParameters(read=60, write=60, pool=60)
    cfg, err = square.k8s.create_httpx_client(cfg, params)
    if err:
        return K8sConfig(), True

    # All helpers use paths relative to the API server.
    cfg.client.base_url = cfg.url

    return cfg, False


def deployment_manifest(ident: ResourceIdentity, image: str, count: int) -> dict:
    """Return the Deployment manifest that runs `count` replicas of `image`."""
    labels = deployment_labels(ident.namespace, ident.name)
    selector = {"app.kubernetes.io/name": ident.name}
    return dict(
        apiVersion="apps/v1",
        kind="Deployment",
        metadata=dict(name=ident.name, namespace=ident.namespace, labels=labels),
        spec=dict(
            replicas=count,
            selector=dict(matchLabels=selector),
            template=dict(
                metadata=dict(labels=labels),
                spec=dict(
                    containers=[
                        dict(
                            name="main",
                            image=image,
                            securityContext=pod_security_context(),
                        )
                    ]
                ),
            ),
        ),
    )


def deployment_patch(dply: K8sDeployment, image: str, count: int) -> List[dict]:
    """Return the JSON patch operations to update `dply` (may be empty)."""
    ops: List[dict] = []
    if dply.spec.replicas != count:
        ops.append(dict(op="replace", path="/spec/replicas", value=count))

    containers = dply.spec.template.spec.containers
    if len(containers) == 0 or containers[0].image != image:
        path = "/spec/template/spec/containers/0/image"
        ops.append(dict(op="replace", path=path, value=image))
    return ops


class K8sDeploymentDriver:
    """Run the replicas of a Workload as a K8s Deployment of the same name."""

    def __init__(self, k8scfg: K8sConfig, ident: ResourceIdentity):
        self.k8scfg = k8scfg
        self.ident = ident
        self.collection_url = f"/apis/apps/v1/namespaces/{ident.namespace}/deployments"
        self.url = f"{self.collection_url}/{ident.name}"

    async def fetch(self) -> K8sDeployment | None:
        """Return the current Deployment or `None` if it does not exist."""
        resp, code, err = await request(self.k8scfg, "GET", self.url)
        if code == 404:
            return None
        if err or code != 200:
            raise TransientError(f"cannot read deployment {self.ident.key} ({code})")
        return K8sDeployment.model_validate(resp)

    async def ensure_replicas(self, image: str, count: int) -> None:
        dply = await self.fetch()

        # Create the Deployment if it does not exist yet.
        if dply is None:
            manifest = deployment_manifest(self.ident, image, count)
            _, err = await post(self.k8scfg, self.collection_url, manifest)
            if err:
                raise TransientError(f"cannot create deployment {self.ident.key}")
            return

        # Patch the existing Deployment if necessary.
        ops = deployment_patch(dply, image, count)
        if len(ops) == 0:
            return
        _, err = await patch(self.k8scfg, self.url, ops)
        if err:
            raise TransientError(f"cannot patch deployment {self.ident.key}")

    async def current_available(self) -> int:
        dply = await self.fetch()
        return 0 if dply is None else dply.status.availableReplicas

    async def remove(self) -> None:
        _, err = await delete(self.k8scfg, self.url, payload={})
        if err:
            raise TransientError(f"cannot delete deployment {self.ident.key}")
