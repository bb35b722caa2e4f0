from __future__ import annotations

import logging
import math
import time
from typing import Callable

from .daemonset import build_labels
from .models import OneAgent, PodInfo
from .settings import settings
from .store import NotFound, Store, StoreError


class RolloutError(Exception):
    """A node did not get back to exactly one ready agent pod."""

    def __init__(self, message: str, node: str):
        super().__init__(message)
        self.node = node


class RolloutTimeoutError(RolloutError):
    pass


class TooManyPodsError(RolloutError):
    pass


class RolloutManager:
    """Replaces stale agent pods one node at a time.

    Each pod is deleted and the DaemonSet controller recreates it; the next
    pod is not touched until the replacement on the previous node is running
    and ready.
    """

    def __init__(
        self,
        store: Store,
        log: logging.LoggerAdapter | logging.Logger,
        splay_s: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.log = log
        self.splay_s = max(1, int(settings.splay_s if splay_s is None else splay_s))
        self.sleep = sleep

    def max_polls(self, instance: OneAgent) -> int:
        wait_s = instance.spec.wait_ready_seconds or 0
        return math.ceil(wait_s / self.splay_s)

    def delete_pods(self, instance: OneAgent, pods: list[PodInfo]) -> None:
        """Delete pods in order, waiting for each node to recover before the next."""
        for pod in pods:
            self.log.info(f"deleting pod {pod.name} on node {pod.node_name}")
            try:
                self.store.delete(pod.raw or _pod_ref(instance, pod))
            except NotFound:
                self.log.info(f"pod {pod.name} already gone")

            self.log.info(f"waiting until pod is ready on node {pod.node_name}")
            self.wait_pod_ready(instance, pod)
            self.log.info(f"pod recreated successfully on node {pod.node_name}")

    def wait_pod_ready(self, instance: OneAgent, pod: PodInfo) -> None:
        """Poll until exactly one other running, ready pod exists on pod's node.

        Raises RolloutTimeoutError when the poll budget runs out and
        TooManyPodsError as soon as more than one candidate shows up.
        """
        labels = build_labels(instance.name)
        reason = f"waiting for pod to be recreated on node: {pod.node_name}"

        for _ in range(self.max_polls(instance)):
            self.sleep(self.splay_s)

            try:
                listed = self.store.list("Pod", instance.namespace, labels)
            except StoreError as e:
                reason = f"failed to list pods: {e}"
                self.log.warning(reason)
                continue

            found = [
                p
                for p in (PodInfo.from_dict(o) for o in listed)
                if p.node_name == pod.node_name and p.phase == "Running" and p.name != pod.name
            ]

            n = len(found)
            if n == 0:
                reason = f"waiting for pod to be recreated on node: {pod.node_name}"
            elif n == 1:
                if found[0].ready:
                    return
                reason = f"pod {found[0].name} on node {pod.node_name} is not ready yet"
            else:
                raise TooManyPodsError(f"too many pods found: expected=1 actual={n}", node=pod.node_name)

        raise RolloutTimeoutError(
            f"timed out after {instance.spec.wait_ready_seconds}s on node {pod.node_name}: {reason}",
            node=pod.node_name,
        )


def _pod_ref(instance: OneAgent, pod: PodInfo) -> dict:
    return {"apiVersion": "v1", "kind": "Pod", "metadata": {"name": pod.name, "namespace": instance.namespace}}
