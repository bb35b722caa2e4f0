from fastapi.testclient import TestClient

from oneagent_operator.api import create_app
from oneagent_operator.runtime import RuntimeState, TickRecord


def _client():
    runtime = RuntimeState()
    runtime.record(TickRecord("dynatrace", "oneagent", "ok", "next tick in 1800s", requeue_after=1800))
    runtime.record(TickRecord("apps", "edge", "error", "RolloutTimeoutError: timed out", requeue_after=2.0, failures=2))
    return TestClient(create_app(runtime))


def test_healthz():
    r = _client().get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}


def test_instances_lists_last_ticks_sorted():
    body = _client().get("/instances").json()
    assert [(i["namespace"], i["name"]) for i in body] == [("apps", "edge"), ("dynatrace", "oneagent")]
    assert body[0]["failures"] == 2


def test_single_instance_and_unknown_instance():
    client = _client()
    r = client.get("/instances/dynatrace/oneagent")
    assert r.status_code == 200
    assert r.json()["requeue_after"] == 1800

    r = client.get("/instances/dynatrace/missing")
    assert r.status_code == 404
