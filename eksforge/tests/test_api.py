import pytest
from fastapi.testclient import TestClient

from eksforge.api.main import app
from eksforge.api.routes.plan import provider_factory
from eksforge.config import Config
from eksforge.tests.fakes import FakeProvider

HEADERS = {"X-API-Key": Config.API_KEY}

CONFIG = {
    "metadata": {"name": "api-cluster", "region": "us-west-2"},
    "nodegroups": [{"name": "ng-1"}],
    "managed_nodegroups": [{"name": "mng-1"}],
}


@pytest.fixture
def client():
    app.dependency_overrides[provider_factory] = lambda: (lambda region: FakeProvider(region=region))
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_requires_api_key(client):
    response = client.post("/validate", json={"config": CONFIG})
    assert response.status_code == 403


def test_validate(client):
    response = client.post("/validate", json={"config": CONFIG}, headers=HEADERS)

    assert response.status_code == 200
    assert response.json() == {"status": "success", "cluster": "api-cluster", "version": "1.21"}


def test_validate_rejects_schema_errors(client):
    response = client.post("/validate", json={"config": {"metadata": {"region": "us-west-2"}}}, headers=HEADERS)

    assert response.status_code == 422
    assert response.json()["error"] == "InvalidSpecification"


def test_validate_rejects_unsupported_features(client):
    config = dict(CONFIG, metadata={"name": "api-cluster", "region": "us-west-2", "version": "1.13"})
    response = client.post("/validate", json={"config": config}, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["error"] == "CapabilityUnsupported"


def test_plan(client):
    response = client.post("/plan", json={"config": CONFIG}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["network"]["mode"] == "derive"
    assert body["network"]["zones"] == ["us-west-2a", "us-west-2b", "us-west-2c"]
    assert body["tasks"] == 4
    assert body["plan"].startswith('create cluster "api-cluster" [3 sequential tasks]')
    assert body["deferred_addons"] is None


def test_plan_conflicting_network_inputs(client):
    response = client.post(
        "/plan",
        json={"config": CONFIG, "vpc_from_cluster": "other", "vpc_cidr": "10.0.0.0/16"},
        headers=HEADERS,
    )

    assert response.status_code == 409
    assert "cannot be used at the same time" in response.json()["detail"]
