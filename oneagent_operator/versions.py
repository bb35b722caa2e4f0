from __future__ import annotations

import logging
from typing import Protocol

from .dtclient import INSTALLER_TYPE_DEFAULT, OS_UNIX, DynatraceError
from .models import OneAgent, OneAgentInstance, PodInfo


class VersionSource(Protocol):
    def latest_agent_version(self, os: str = ..., installer_type: str = ...) -> str: ...

    def agent_version_for_ip(self, ip: str | None) -> str: ...

    def close(self) -> None: ...


class VersionResolver:
    """Compares what Dynatrace reports against what the status has recorded."""

    def __init__(self, dtc: VersionSource, log: logging.LoggerAdapter | logging.Logger):
        self.dtc = dtc
        self.log = log

    def resolve_desired_version(self) -> str:
        """Latest unix agent version; raises DynatraceError when unknown."""
        return self.dtc.latest_agent_version(OS_UNIX, INSTALLER_TYPE_DEFAULT)

    def pods_to_restart(
        self, pods: list[PodInfo], instance: OneAgent
    ) -> tuple[list[PodInfo], dict[str, OneAgentInstance]]:
        """Split pods into the stale ones and the per-pod status map.

        A pod is stale iff its agent version differs from .status.version.
        Pods whose version cannot be queried keep the last recorded version
        and are left alone.
        """
        desired = instance.status.version
        recorded = instance.status.instances
        stale: list[PodInfo] = []
        items: dict[str, OneAgentInstance] = {}

        for pod in pods:
            item = OneAgentInstance(node_name=pod.node_name, ready=pod.ready)
            try:
                item.version = self.dtc.agent_version_for_ip(pod.host_ip)
            except DynatraceError as e:
                self.log.debug(f"agent version unknown for pod {pod.name}: {e}")
                if pod.name in recorded:
                    item.version = recorded[pod.name].version
            else:
                if desired and item.version != desired:
                    stale.append(pod)
            items[pod.name] = item

        return stale, items
