from __future__ import annotations

import copy
from typing import Any

from .models import OneAgent

CONTAINER_NAME = "dynatrace-oneagent"
SERVICE_ACCOUNT = "dynatrace-oneagent"
HOST_ROOT_VOLUME = "host-root"
HOST_ROOT_MOUNT = "/mnt/root"
WATCHDOG_PROBE = ["/bin/sh", "-c", "grep -q oneagentwatchdo /proc/[0-9]*/stat"]


def build_labels(name: str) -> dict[str, str]:
    """Labels shared by the DaemonSet, its selector and its pods."""
    return {"dynatrace": "oneagent", "oneagent": name}


def owner_reference(instance: OneAgent) -> dict[str, Any]:
    return {
        "apiVersion": instance.api_version,
        "kind": instance.kind,
        "name": instance.name,
        "uid": instance.metadata.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def build_pod_spec(instance: OneAgent) -> dict[str, Any]:
    spec = instance.spec
    container: dict[str, Any] = {
        "name": CONTAINER_NAME,
        "image": spec.image,
        "imagePullPolicy": "Always",
        "args": list(spec.args),
        "env": copy.deepcopy(spec.env),
        "resources": copy.deepcopy(spec.resources),
        "readinessProbe": {
            "exec": {"command": list(WATCHDOG_PROBE)},
            "initialDelaySeconds": 30,
            "periodSeconds": 30,
            "timeoutSeconds": 1,
        },
        "securityContext": {"privileged": True},
        "volumeMounts": [{"name": HOST_ROOT_VOLUME, "mountPath": HOST_ROOT_MOUNT}],
    }
    pod_spec: dict[str, Any] = {
        "containers": [container],
        "hostNetwork": True,
        "hostPID": True,
        "hostIPC": True,
        "nodeSelector": dict(spec.node_selector),
        "serviceAccountName": SERVICE_ACCOUNT,
        "tolerations": copy.deepcopy(spec.tolerations),
        "volumes": [{"name": HOST_ROOT_VOLUME, "hostPath": {"path": "/"}}],
    }
    if spec.priority_class_name:
        pod_spec["priorityClassName"] = spec.priority_class_name
    return pod_spec


def build_daemonset(instance: OneAgent) -> dict[str, Any]:
    """Desired DaemonSet for a OneAgent instance, owned by it."""
    labels = build_labels(instance.name)
    return {
        "apiVersion": "apps/v1",
        "kind": "DaemonSet",
        "metadata": {
            "name": instance.name,
            "namespace": instance.namespace,
            "labels": dict(labels),
            "ownerReferences": [owner_reference(instance)],
        },
        "spec": {
            "selector": {"matchLabels": dict(labels)},
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": build_pod_spec(instance),
            },
        },
    }


def _prune(value: Any) -> Any:
    """Drop None and empty values so defaulted and omitted fields compare equal."""
    if isinstance(value, dict):
        out = {k: _prune(v) for k, v in value.items()}
        return {k: v for k, v in out.items() if v not in (None, {}, [], "")}
    if isinstance(value, list):
        return [_prune(v) for v in value]
    return value


def relevant_fields(pod_spec: dict[str, Any]) -> dict[str, Any]:
    """The subset of a pod spec that decides whether the DaemonSet needs an update."""
    containers = pod_spec.get("containers") or [{}]
    container = containers[0]
    return _prune(
        {
            "image": container.get("image"),
            "args": container.get("args"),
            "env": container.get("env"),
            "resources": container.get("resources"),
            "nodeSelector": pod_spec.get("nodeSelector"),
            "tolerations": pod_spec.get("tolerations"),
            "priorityClassName": pod_spec.get("priorityClassName"),
        }
    )


def has_spec_changed(actual: dict[str, Any], instance: OneAgent) -> bool:
    actual_pod_spec = ((actual.get("spec") or {}).get("template") or {}).get("spec") or {}
    return relevant_fields(actual_pod_spec) != relevant_fields(build_pod_spec(instance))
