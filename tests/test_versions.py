import logging

from oneagent_operator.models import OneAgent, OneAgentInstance, PodInfo
from oneagent_operator.versions import VersionResolver

from conftest import FakeDynatrace, oneagent_obj, pod_obj

log = logging.getLogger("test")


def _pods(*specs):
    return [PodInfo.from_dict(pod_obj(name, node, ip)) for name, node, ip in specs]


def test_only_pods_with_a_different_version_are_stale():
    dtc = FakeDynatrace(latest="2.0", hosts={"10.0.0.1": "1.0", "10.0.0.2": "2.0", "10.0.0.3": "3.0"})
    inst = OneAgent.from_dict(oneagent_obj(status={"version": "2.0"}))
    pods = _pods(("a", "node-a", "10.0.0.1"), ("b", "node-b", "10.0.0.2"), ("c", "node-c", "10.0.0.3"))

    stale, items = VersionResolver(dtc, log).pods_to_restart(pods, inst)

    # exact match only: "3.0" is not treated as newer than the desired version
    assert [p.name for p in stale] == ["a", "c"]
    assert items["b"] == OneAgentInstance(node_name="node-b", version="2.0", ready=True)


def test_unknown_host_keeps_recorded_version_and_is_not_stale():
    dtc = FakeDynatrace(latest="2.0", hosts={})
    inst = OneAgent.from_dict(
        oneagent_obj(status={"version": "2.0", "instances": {"a": {"nodeName": "node-a", "version": "1.0"}}})
    )
    stale, items = VersionResolver(dtc, log).pods_to_restart(_pods(("a", "node-a", "10.0.0.1"), ("b", "node-b", "10.0.0.2")), inst)

    assert stale == []
    assert items["a"].version == "1.0"
    assert items["b"].version == ""


def test_nothing_is_stale_without_a_recorded_desired_version():
    dtc = FakeDynatrace(hosts={"10.0.0.1": "1.0"})
    inst = OneAgent.from_dict(oneagent_obj())
    stale, items = VersionResolver(dtc, log).pods_to_restart(_pods(("a", "node-a", "10.0.0.1")), inst)
    assert stale == []
    assert items["a"].version == "1.0"


def test_resolve_desired_version_asks_for_unix_default():
    seen = []

    class Recording(FakeDynatrace):
        def latest_agent_version(self, os="unix", installer_type="default"):
            seen.append((os, installer_type))
            return "9.9"

    assert VersionResolver(Recording(), log).resolve_desired_version() == "9.9"
    assert seen == [("unix", "default")]
