from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .daemonset import build_daemonset, build_labels, has_spec_changed
from .dtclient import PAAS_TOKEN_KEY, DynatraceClient, DynatraceError, SecretError, Tokens, tokens_from_secret
from .log import instance_logger
from .mesh import MeshHook, NullMeshHook
from .models import KIND, OneAgent, PodInfo, apply_defaults, validate
from .rollouts import RolloutError, RolloutManager
from .settings import settings
from .store import NotFound, Store
from .versions import VersionResolver, VersionSource

INSTALLER_TOKEN_ENV = "ONEAGENT_INSTALLER_TOKEN"

Log = logging.LoggerAdapter | logging.Logger


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Result:
    """Outcome of one tick. Failures are raised instead of returned."""

    requeue: bool = False
    requeue_after: float | None = None


class Reconciler:
    """Converges one OneAgent resource per call.

    Stateless between calls, so distinct instances may be reconciled from
    different threads at the same time.
    """

    def __init__(
        self,
        store: Store,
        client_factory: Callable[[OneAgent, Tokens], VersionSource] = DynatraceClient.for_instance,
        mesh_hook: MeshHook | None = None,
        splay_s: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
        mid_requeue_s: float | None = None,
        long_requeue_s: float | None = None,
        clock: Callable[[], str] = utc_now,
    ):
        self.store = store
        self.client_factory = client_factory
        self.mesh_hook = mesh_hook or NullMeshHook()
        self.splay_s = splay_s
        self.sleep = sleep
        self.mid_requeue_s = settings.mid_requeue_s if mid_requeue_s is None else mid_requeue_s
        self.long_requeue_s = settings.long_requeue_s if long_requeue_s is None else long_requeue_s
        self.clock = clock

    def reconcile(self, namespace: str, name: str) -> Result:
        log = instance_logger(namespace, name)
        log.info("reconciling oneagent")

        try:
            raw = self.store.get(KIND, namespace, name)
        except NotFound:
            # Deleted after the request was queued; owned objects are garbage collected.
            log.info("oneagent not found")
            return Result()

        instance = OneAgent.from_dict(raw)
        apply_defaults(instance)
        validate(instance)

        if not instance.spec.tokens:
            instance.spec.tokens = instance.name
            log.info("updating custom resource (cause: defaults applied)")
            self.persist(instance)
            return Result(requeue=True)

        dtc = self.build_dynatrace_client(instance)
        try:
            return self._converge(log, instance, dtc)
        finally:
            dtc.close()

    def _converge(self, log: Log, instance: OneAgent, dtc: VersionSource) -> Result:
        if instance.spec.enable_istio:
            updated, ok = self.mesh_hook.reconcile(log, instance, dtc)
            if ok and updated:
                log.info("updating custom resource (cause: service mesh integration)")
                self.persist(instance)
                return Result(requeue=True)

        if self.reconcile_daemonset(log, instance):
            log.info("updating custom resource (cause: initial rollout)")
            self.persist(instance)
            return Result(requeue_after=self.mid_requeue_s)

        if instance.spec.disable_agent_update:
            log.info("automatic oneagent update is disabled")
            return Result(requeue_after=self.long_requeue_s)

        if self.reconcile_version(log, instance, dtc):
            log.info(f"updating custom resource (cause: version upgrade, version={instance.status.version!r})")
            self.persist(instance)
            return Result(requeue_after=self.mid_requeue_s)

        return Result(requeue_after=self.long_requeue_s)

    def build_dynatrace_client(self, instance: OneAgent) -> VersionSource:
        try:
            secret = self.store.get("Secret", instance.namespace, instance.spec.tokens)
        except NotFound as e:
            raise SecretError(f"secret '{instance.spec.tokens}' not found in namespace '{instance.namespace}'") from e
        return self.client_factory(instance, tokens_from_secret(secret))

    def reconcile_daemonset(self, log: Log, instance: OneAgent) -> bool:
        """Create or update the DaemonSet; True when .spec was changed in memory."""
        update_cr = False

        # The installer token has to come first, later entries may reference it.
        env = instance.spec.env
        if not env or env[0].get("name") != INSTALLER_TOKEN_ENV:
            env.insert(
                0,
                {
                    "name": INSTALLER_TOKEN_ENV,
                    "valueFrom": {"secretKeyRef": {"name": instance.spec.tokens, "key": PAAS_TOKEN_KEY}},
                },
            )
            update_cr = True

        desired = build_daemonset(instance)
        try:
            actual = self.store.get("DaemonSet", instance.namespace, instance.name)
        except NotFound:
            log.info("creating new daemonset")
            self.store.create(desired)
            return update_cr

        if has_spec_changed(actual, instance):
            log.info("updating existing daemonset")
            desired["metadata"]["resourceVersion"] = (actual.get("metadata") or {}).get("resourceVersion")
            self.store.update(desired)

        return update_cr

    def reconcile_version(self, log: Log, instance: OneAgent, dtc: VersionSource) -> bool:
        """Record the desired version and roll it out; True when .status changed.

        A failed rollout raises before anything is persisted, so the next
        tick starts again from the recorded status.
        """
        update_cr = False
        resolver = VersionResolver(dtc, log)

        try:
            desired = resolver.resolve_desired_version()
        except DynatraceError as e:
            log.info(f"failed to get desired version: {e}")
            return False

        if desired and instance.status.version != desired:
            log.info(f"new version available (actual={instance.status.version!r}, desired={desired!r})")
            instance.status.version = desired
            update_cr = True

        listed = self.store.list("Pod", instance.namespace, build_labels(instance.name))
        pods = [PodInfo.from_dict(o) for o in listed]

        stale, items = resolver.pods_to_restart(pods, instance)
        if items != instance.status.instances:
            log.info("oneagent pod instances changed")
            instance.status.instances = items
            update_cr = True

        log.info(f"pods to delete: {len(stale)}")
        try:
            RolloutManager(self.store, log, splay_s=self.splay_s, sleep=self.sleep).delete_pods(instance, stale)
        except RolloutError as e:
            log.error(f"failed to update version: {e}")
            raise

        return update_cr

    def persist(self, instance: OneAgent) -> None:
        """Write .spec and .status back to the cluster.

        The spec update path would replace .status with whatever is sent, so
        it gets an empty placeholder and the real status follows through the
        status subresource.
        """
        saved = instance.status.model_copy(deep=True)
        saved.updated_timestamp = self.clock()

        try:
            body = instance.to_dict()
            body["status"] = {}
            updated = self.store.update(body)
            instance.metadata.resource_version = (updated.get("metadata") or {}).get("resourceVersion")

            instance.status = saved.model_copy(deep=True)
            updated = self.store.update_status(instance.to_dict())
            instance.metadata.resource_version = (updated.get("metadata") or {}).get("resourceVersion")
        finally:
            instance.status = saved
