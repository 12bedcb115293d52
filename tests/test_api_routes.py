from __future__ import annotations

import dataclasses
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from simchain.app import SimApp
from simchain.runtime.app_config import default_app_config
from simchain.testing.genesis import build_app_state, init_app


def _simapp() -> SimApp:
    cfg = dataclasses.replace(default_app_config(), chain_id="sim-api", mode="dev", db_path="")
    app = SimApp(cfg)
    init_app(app, build_app_state(app, balances={"alice": 1000}, validators=[("val1", 100)]))
    app.commit()
    return app


@pytest.fixture()
def client() -> TestClient:
    from simchain.api.app import create_app

    api = create_app(boot_runtime=False)
    api.state.simapp = _simapp()
    return TestClient(api)


def test_status_reports_chain_and_orderings(client: TestClient) -> None:
    r = client.get("/v1/status")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["chain_id"] == "sim-api"
    assert body["phase"] == "genesis_initialized"
    assert body["order_end"][:2] == ["consensus", "crisis"]
    assert r.headers.get("x-request-id")


def test_query_dispatches_to_module_handlers(client: TestClient) -> None:
    r = client.get("/v1/query/bank/balance", params={"address": "alice", "denom": "stake"})
    assert r.status_code == 200
    assert r.json()["result"]["balance"] == {"denom": "stake", "amount": 1000}

    r = client.get("/v1/query/staking/validators")
    assert [v["operator"] for v in r.json()["result"]["validators"]] == ["val1"]


def test_unknown_query_route_is_404(client: TestClient) -> None:
    r = client.get("/v1/query/bank/does_not_exist")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "unknown_route"


def test_module_not_found_maps_to_404(client: TestClient) -> None:
    r = client.get("/v1/query/auth/account", params={"address": "nobody"})
    assert r.status_code == 404
    assert r.json()["error"]["message"] == "account_not_found"


def test_invariants_endpoint_runs_all_checks(client: TestClient) -> None:
    r = client.get("/v1/invariants")
    assert r.status_code == 200
    body = r.json()
    assert body["broken"] == 0
    assert [x["route"] for x in body["results"]] == [
        "bank/nonnegative-outstanding",
        "bank/total-supply",
        "staking/bonded-pool-balance",
    ]


def test_metrics_disabled_by_default_and_enabled_by_env(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SIMCHAIN_METRICS_ENABLED", raising=False)
    assert client.get("/metrics").status_code == 404

    monkeypatch.setenv("SIMCHAIN_METRICS_ENABLED", "1")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "simchain_commits_total 1" in r.text
    assert "simchain_halted 0" in r.text
    assert "# TYPE simchain_commits_total counter" in r.text


def test_missing_simapp_is_not_ready() -> None:
    from simchain.api.app import create_app

    with TestClient(create_app(boot_runtime=False)) as c:
        r = c.get("/v1/status")
    assert r.status_code == 503
    assert r.json()["error"]["code"] == "not_ready"


def test_boot_runtime_attaches_simapp(monkeypatch: pytest.MonkeyPatch) -> None:
    from simchain.api import app as api_app

    monkeypatch.delenv("SIMCHAIN_CONFIG_PATH", raising=False)
    # create_app exports config into the environment; let monkeypatch restore it.
    for k in ("SIMCHAIN_CHAIN_ID", "SIMCHAIN_MODE", "SIMCHAIN_DB_PATH", "SIMCHAIN_LOG_LEVEL"):
        monkeypatch.setenv(k, "placeholder")
    monkeypatch.setattr(api_app, "build_simapp", lambda: SimpleNamespace(chain_id="sim-fake"))

    app = api_app.create_app(boot_runtime=True)
    assert app.state.simapp.chain_id == "sim-fake"


def test_request_id_is_echoed(client: TestClient) -> None:
    r = client.get("/v1/status", headers={"x-request-id": "req-42"})
    assert r.headers["x-request-id"] == "req-42"
