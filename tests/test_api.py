import time
from pathlib import Path
from unittest import mock

import pytest
from fastapi.testclient import TestClient

import workop.api
import workop.k8s
from conftest import get_server_config
from workop.driver import SimulatedCluster
from workop.models import ServerConfig, Workload, WorkloadList

URL = "/apis/workop.example.com/v1"


@pytest.fixture
def client():
    with TestClient(workop.api.make_app(get_server_config())) as client:
        yield client


def wait_until_converged(client: TestClient, path: str, timeout: float = 5) -> Workload:
    """Poll the Workload at `path` until its status matches the spec."""
    t0 = time.time()
    while True:
        response = client.get(path)
        assert response.status_code == 200
        obj = Workload.model_validate(response.json())

        status, meta = obj.status, obj.metadata
        if (
            status.observedGeneration == meta.generation
            and status.availableReplicas == obj.spec.replicas
        ):
            return obj

        assert time.time() - t0 < timeout
        time.sleep(0.02)


class TestBasic:
    def test_compile_server_config(self):
        # No environment variables are mandatory.
        with mock.patch.dict("os.environ", values={}, clear=True):
            cfg, err = workop.api.compile_server_config()
            assert not err
            assert cfg == ServerConfig(
                kubeconfig=Path(""),
                kubecontext="",
                host="0.0.0.0",
                port=5001,
                loglevel="info",
            )

        # Explicit values for everything.
        new_env = {
            "KUBECONFIG": "/tmp/kind-kubeconf.yaml",
            "KUBECONTEXT": "kind-kind",
            "WORKOP_LOGLEVEL": "error",
            "WORKOP_HOST": "1.2.3.4",
            "WORKOP_PORT": "1234",
            "WORKOP_WORKERS": "8",
            "WORKOP_RESYNC_SECONDS": "60",
            "WORKOP_POLL_SECONDS": "0.5",
            "WORKOP_MAX_SURGE": "2",
            "WORKOP_DRIVER": "kubernetes",
        }
        with mock.patch.dict("os.environ", values=new_env, clear=True):
            cfg, err = workop.api.compile_server_config()
            assert not err
            assert cfg == ServerConfig(
                kubeconfig=Path("/tmp/kind-kubeconf.yaml"),
                kubecontext="kind-kind",
                host="1.2.3.4",
                port=1234,
                loglevel="error",
                workers=8,
                resync_seconds=60,
                poll_seconds=0.5,
                max_surge=2,
                driver="kubernetes",
            )

        # Invalid values.
        invalid = [
            {"WORKOP_PORT": "foo"},
            {"WORKOP_WORKERS": "0"},
            {"WORKOP_POLL_SECONDS": "-1"},
            {"WORKOP_DRIVER": "docker"},
        ]
        for new_env in invalid:
            with mock.patch.dict("os.environ", values=new_env, clear=True):
                _, err = workop.api.compile_server_config()
                assert err

    def test_make_drivers(self):
        factory, k8scfg, err = workop.api.make_drivers(get_server_config())
        assert not err and k8scfg is None
        assert isinstance(factory.__self__, SimulatedCluster)  # type: ignore

        # Must report an error if the cluster config is unusable.
        cfg = get_server_config(driver="kubernetes")
        with mock.patch.object(workop.k8s, "create_cluster_config") as m_cfg:
            m_cfg.return_value = (None, True)
            _, _, err = workop.api.make_drivers(cfg)
            assert err
        m_cfg.assert_called_once_with(cfg.kubeconfig, cfg.kubecontext)

    def test_get_healthz(self, client: TestClient):
        response = client.get("/healthz")
        assert response.status_code == 200

    def test_get_readyz(self, client: TestClient):
        response = client.get("/readyz")
        assert response.status_code == 200
        assert response.json() == {"ready": True, "queued": 0, "processing": 0}


class TestWorkloads:
    def test_lifecycle(self, client: TestClient):
        """Create, converge, update and delete a Workload."""
        path = f"{URL}/namespaces/default/workloads/web"

        # Workload does not exist yet.
        assert client.get(path).status_code == 404

        # Create it.
        body = {"spec": {"replicas": 3, "image": "app:v1"}}
        response = client.post(path, json=body)
        assert response.status_code == 201
        obj = Workload.model_validate(response.json())
        assert obj.metadata.resourceVersion == 0
        assert obj.metadata.generation == 1
        assert obj.status.availableReplicas == 0

        # Must not create it twice.
        assert client.post(path, json=body).status_code == 409

        # The controller must converge it in the background.
        obj = wait_until_converged(client, path)
        assert obj.status.availableReplicas == 3
        assert obj.status.image == "app:v1"
        ready = obj.status.get_condition("Ready")
        assert ready is not None and ready.status == "True"

        # Update the spec with a stale version.
        body = {"spec": {"replicas": 5, "image": "app:v2"}, "resourceVersion": 0}
        assert client.patch(path, json=body).status_code == 409

        # Update the spec with the current version.
        body["resourceVersion"] = obj.metadata.resourceVersion
        response = client.patch(path, json=body)
        assert response.status_code == 200
        assert Workload.model_validate(response.json()).metadata.generation == 2

        obj = wait_until_converged(client, path)
        assert obj.status.availableReplicas == 5
        assert obj.status.image == "app:v2"

        # Delete the Workload.
        assert client.delete(path).status_code == 200
        assert client.get(path).status_code == 404
        assert client.delete(path).status_code == 404
        body = {"spec": {"replicas": 1, "image": "app:v1"}}
        assert client.patch(path, json=body).status_code == 404

    def test_invalid_spec_is_reported(self, client: TestClient):
        path = f"{URL}/namespaces/default/workloads/web"
        body = {"spec": {"replicas": -1, "image": "app:v1"}}
        assert client.post(path, json=body).status_code == 201

        t0 = time.time()
        while True:
            obj = Workload.model_validate(client.get(path).json())
            degraded = obj.status.get_condition("Degraded")
            if degraded is not None:
                break
            assert time.time() - t0 < 5
            time.sleep(0.02)

        assert (degraded.status, degraded.reason) == ("True", "InvalidSpec")
        assert obj.status.availableReplicas == 0

    def test_list(self, client: TestClient):
        body = {"spec": {"replicas": 1, "image": "app:v1"}}
        for ns, name in [("b", "one"), ("a", "two"), ("a", "one")]:
            path = f"{URL}/namespaces/{ns}/workloads/{name}"
            assert client.post(path, json=body).status_code == 201

        response = client.get(f"{URL}/workloads")
        assert response.status_code == 200
        ret = WorkloadList.model_validate(response.json())
        assert [_.identity().key for _ in ret.items] == ["a/one", "a/two", "b/one"]

        response = client.get(f"{URL}/namespaces/a/workloads")
        assert response.status_code == 200
        ret = WorkloadList.model_validate(response.json())
        assert [_.identity().key for _ in ret.items] == ["a/one", "a/two"]

    def test_invalid_requests(self, client: TestClient):
        body = {"spec": {"replicas": 1, "image": "app:v1"}}

        # Names with whitespace.
        path = f"{URL}/namespaces/default/workloads/%20web"
        assert client.post(path, json=body).status_code == 422
        assert client.get(path).status_code == 422

        # Unknown fields.
        path = f"{URL}/namespaces/default/workloads/web"
        bad = {"spec": {"replicas": 1, "image": "app:v1"}, "foo": "bar"}
        assert client.post(path, json=bad).status_code == 422

        # Wrong types.
        bad = {"spec": {"replicas": "many", "image": "app:v1"}}
        assert client.post(path, json=bad).status_code == 422
