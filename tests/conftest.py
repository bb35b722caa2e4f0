import base64
import copy
import itertools

import pytest

from oneagent_operator.daemonset import build_labels
from oneagent_operator.dtclient import DynatraceError
from oneagent_operator.reconciler import INSTALLER_TOKEN_ENV, Reconciler
from oneagent_operator.store import Conflict, NotFound, StoreError

NAMESPACE = "dynatrace"
NAME = "oneagent"


class FakeStore:
    """In-memory cluster store.

    Writes are checked against resourceVersion like the API server does, the
    spec update path leaves .status alone and every mutation is logged in
    `calls` as (op, kind, name).
    """

    def __init__(self):
        self.objects = {}
        self.calls = []
        self.list_calls = 0
        self.on_delete = None
        self.on_list = None
        self.fail = {}
        self._rv = itertools.count(1)
        self._uid = itertools.count(1)

    @staticmethod
    def _key(obj):
        md = obj["metadata"]
        return obj["kind"], md.get("namespace", ""), md["name"]

    def _stamp(self, obj):
        md = obj.setdefault("metadata", {})
        md["resourceVersion"] = str(next(self._rv))
        md.setdefault("uid", f"uid-{next(self._uid)}")
        return obj

    def _check(self, op):
        if op in self.fail:
            raise self.fail[op]

    def put(self, obj):
        """Seed an object without logging a mutation."""
        obj = self._stamp(copy.deepcopy(obj))
        self.objects[self._key(obj)] = obj
        return copy.deepcopy(obj)

    def mutations(self):
        return list(self.calls)

    def get(self, kind, namespace, name):
        self._check("get")
        try:
            return copy.deepcopy(self.objects[(kind, namespace, name)])
        except KeyError:
            raise NotFound(f"get {kind} {namespace}/{name}: not found", status=404) from None

    def _existing(self, obj):
        key = self._key(obj)
        if key not in self.objects:
            raise NotFound(f"{key}: not found", status=404)
        existing = self.objects[key]
        rv = obj["metadata"].get("resourceVersion")
        if rv and rv != existing["metadata"]["resourceVersion"]:
            raise Conflict(f"{key}: stale resourceVersion {rv}", status=409)
        return key, existing

    def create(self, obj):
        self.calls.append(("create", obj["kind"], obj["metadata"]["name"]))
        self._check("create")
        if self._key(obj) in self.objects:
            raise Conflict("already exists", status=409)
        return self.put(obj)

    def update(self, obj):
        self.calls.append(("update", obj["kind"], obj["metadata"]["name"]))
        self._check("update")
        key, existing = self._existing(obj)
        new = copy.deepcopy(obj)
        new["metadata"]["uid"] = existing["metadata"]["uid"]
        if "status" in existing:
            new["status"] = copy.deepcopy(existing["status"])
        else:
            new.pop("status", None)
        self.objects[key] = self._stamp(new)
        return copy.deepcopy(new)

    def update_status(self, obj):
        self.calls.append(("update_status", obj["kind"], obj["metadata"]["name"]))
        self._check("update_status")
        key, existing = self._existing(obj)
        new = copy.deepcopy(existing)
        new["status"] = copy.deepcopy(obj.get("status") or {})
        self.objects[key] = self._stamp(new)
        return copy.deepcopy(new)

    def delete(self, obj):
        self.calls.append(("delete", obj["kind"], obj["metadata"]["name"]))
        self._check("delete")
        key = self._key(obj)
        if key not in self.objects:
            raise NotFound(f"{key}: not found", status=404)
        del self.objects[key]
        if self.on_delete:
            self.on_delete(self, obj)

    def list(self, kind, namespace, labels=None):
        self.list_calls += 1
        self._check("list")
        if self.on_list:
            self.on_list(self, kind)
        out = []
        for (k, ns, _), obj in self.objects.items():
            if k != kind or (namespace and ns != namespace):
                continue
            obj_labels = obj["metadata"].get("labels") or {}
            if all(obj_labels.get(lk) == lv for lk, lv in (labels or {}).items()):
                out.append(copy.deepcopy(obj))
        return out

    def pods(self):
        return [o for (k, _, _), o in self.objects.items() if k == "Pod"]


class FakeDynatrace:
    def __init__(self, latest="1.2.3", hosts=None):
        self.latest = latest
        self.hosts = dict(hosts or {})
        self.fail_latest = False
        self.closed = False

    def latest_agent_version(self, os="unix", installer_type="default"):
        if self.fail_latest:
            raise DynatraceError("HTTP 503: service unavailable")
        return self.latest

    def agent_version_for_ip(self, ip):
        if ip not in self.hosts:
            raise DynatraceError(f"host {ip} not found")
        return self.hosts[ip]

    def close(self):
        self.closed = True


class DaemonSetSimulator:
    """Recreates deleted agent pods the way the DaemonSet controller would.

    A replacement shows up `delay_polls` pod listings after the delete and
    reports `dtc.latest` as its agent version. `delay_polls=None` never
    recreates anything.
    """

    def __init__(self, dtc, delay_polls=1, name=NAME, namespace=NAMESPACE):
        self.dtc = dtc
        self.delay_polls = delay_polls
        self.name = name
        self.namespace = namespace
        self.pending = []  # [node, ip, polls_left]
        self.nodes = set()
        self.max_nodes_down = 0
        self._gen = itertools.count(1)

    def attach(self, store):
        store.on_delete = self.on_delete
        store.on_list = self.on_list
        for pod in store.pods():
            self.nodes.add(pod["spec"]["nodeName"])

    def on_delete(self, store, obj):
        if obj["kind"] != "Pod" or self.delay_polls is None:
            return
        self.pending.append([obj["spec"]["nodeName"], obj["status"]["hostIP"], self.delay_polls])

    def on_list(self, store, kind):
        if kind != "Pod":
            return
        still = []
        for node, ip, left in self.pending:
            left -= 1
            if left <= 0:
                store.put(pod_obj(f"{self.name}-{node}-{next(self._gen)}", node, ip, name=self.name, namespace=self.namespace))
                self.dtc.hosts[ip] = self.dtc.latest
            else:
                still.append([node, ip, left])
        self.pending = still

        running = {p["spec"]["nodeName"] for p in store.pods() if p["status"]["phase"] == "Running"}
        self.max_nodes_down = max(self.max_nodes_down, len(self.nodes - running))


def oneagent_obj(name=NAME, namespace=NAMESPACE, status=None, **spec):
    body = {
        "apiVersion": "dynatrace.com/v1alpha1",
        "kind": "OneAgent",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"apiUrl": "https://tenant.live.dynatrace.com/api", **spec},
    }
    if status is not None:
        body["status"] = status
    return body


def token_env(secret=NAME):
    return {"name": INSTALLER_TOKEN_ENV, "valueFrom": {"secretKeyRef": {"name": secret, "key": "paasToken"}}}


def secret_obj(name=NAME, namespace=NAMESPACE, api_token="api-123", paas_token="paas-456"):
    def b64(s):
        return base64.b64encode(s.encode()).decode()

    data = {}
    if api_token is not None:
        data["apiToken"] = b64(api_token)
    if paas_token is not None:
        data["paasToken"] = b64(paas_token)
    return {"apiVersion": "v1", "kind": "Secret", "metadata": {"name": name, "namespace": namespace}, "data": data}


def pod_obj(pod_name, node, ip, name=NAME, namespace=NAMESPACE, phase="Running", ready=True):
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": pod_name, "namespace": namespace, "labels": build_labels(name)},
        "spec": {"nodeName": node},
        "status": {
            "phase": phase,
            "hostIP": ip,
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
        },
    }


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def dtc():
    return FakeDynatrace()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def reconciler(store, dtc, sleeps):
    return Reconciler(
        store,
        client_factory=lambda instance, tokens: dtc,
        splay_s=10,
        sleep=sleeps.append,
        mid_requeue_s=300,
        long_requeue_s=1800,
        clock=lambda: "2026-10-19T12:00:00Z",
    )
