from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Protocol

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from .models import API_GROUP, API_VERSION, KIND, PLURAL

logger = logging.getLogger(__name__)

# kind -> apiVersion written on objects returned from typed APIs
API_VERSIONS: dict[str, str] = {
    "Pod": "v1",
    "Secret": "v1",
    "DaemonSet": "apps/v1",
    KIND: f"{API_GROUP}/{API_VERSION}",
}


class StoreError(Exception):
    """A cluster store call failed for a reason other than absence."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class NotFound(StoreError):
    pass


class Conflict(StoreError):
    """The write was based on a stale resourceVersion."""


class Store(Protocol):
    """Cluster state operations used by the reconciler.

    Objects are plain dicts using the Kubernetes wire (camelCase) layout.
    """

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]: ...

    def create(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    def update_status(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    def delete(self, obj: dict[str, Any]) -> None: ...

    def list(self, kind: str, namespace: str | None, labels: dict[str, str] | None = None) -> list[dict[str, Any]]: ...

    def watch(
        self, kind: str, namespace: str | None, labels: dict[str, str] | None = None, timeout_s: int = 300
    ) -> Iterator[tuple[str, dict[str, Any]]]: ...


def label_selector(labels: dict[str, str] | None) -> str | None:
    if not labels:
        return None
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


@contextmanager
def _api_call(action: str, kind: str, name: str = "") -> Iterator[None]:
    try:
        yield
    except ApiException as e:
        what = f"{action} {kind} {name}".strip()
        if e.status == 404:
            raise NotFound(f"{what}: not found", status=404) from e
        if e.status == 409:
            raise Conflict(f"{what}: conflict: {e.reason}", status=409) from e
        logger.error(f"Failed to {what}: {e.status} {e.reason}")
        raise StoreError(f"{what}: {e.status} {e.reason}", status=e.status) from e


def _meta(obj: dict[str, Any]) -> tuple[str, str, str]:
    metadata = obj.get("metadata") or {}
    return obj.get("kind", ""), metadata.get("namespace", ""), metadata.get("name", "")


class KubeStore:
    """Store implementation on top of the official kubernetes client."""

    def __init__(self, in_cluster: bool = True, context: str | None = None, api_client: client.ApiClient | None = None):
        if api_client is None:
            if in_cluster:
                config.load_incluster_config()
            elif context:
                config.load_kube_config(context=context)
            else:
                config.load_kube_config()
            api_client = client.ApiClient()

        self.api_client = api_client
        self.core = client.CoreV1Api(api_client)
        self.apps = client.AppsV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)

    def _to_dict(self, obj: Any, kind: str) -> dict[str, Any]:
        if not isinstance(obj, dict):
            obj = self.api_client.sanitize_for_serialization(obj)
        obj.setdefault("kind", kind)
        obj.setdefault("apiVersion", API_VERSIONS.get(kind))
        return obj

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        with _api_call("get", kind, f"{namespace}/{name}"):
            if kind == KIND:
                obj = self.custom.get_namespaced_custom_object(API_GROUP, API_VERSION, namespace, PLURAL, name)
            elif kind == "DaemonSet":
                obj = self.apps.read_namespaced_daemon_set(name, namespace)
            elif kind == "Pod":
                obj = self.core.read_namespaced_pod(name, namespace)
            elif kind == "Secret":
                obj = self.core.read_namespaced_secret(name, namespace)
            else:
                raise StoreError(f"unsupported kind {kind}")
        return self._to_dict(obj, kind)

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind, namespace, name = _meta(obj)
        with _api_call("create", kind, f"{namespace}/{name}"):
            if kind == KIND:
                out = self.custom.create_namespaced_custom_object(API_GROUP, API_VERSION, namespace, PLURAL, obj)
            elif kind == "DaemonSet":
                out = self.apps.create_namespaced_daemon_set(namespace, obj)
            elif kind == "Pod":
                out = self.core.create_namespaced_pod(namespace, obj)
            elif kind == "Secret":
                out = self.core.create_namespaced_secret(namespace, obj)
            else:
                raise StoreError(f"unsupported kind {kind}")
        return self._to_dict(out, kind)

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind, namespace, name = _meta(obj)
        with _api_call("update", kind, f"{namespace}/{name}"):
            if kind == KIND:
                out = self.custom.replace_namespaced_custom_object(API_GROUP, API_VERSION, namespace, PLURAL, name, obj)
            elif kind == "DaemonSet":
                out = self.apps.replace_namespaced_daemon_set(name, namespace, obj)
            elif kind == "Pod":
                out = self.core.replace_namespaced_pod(name, namespace, obj)
            elif kind == "Secret":
                out = self.core.replace_namespaced_secret(name, namespace, obj)
            else:
                raise StoreError(f"unsupported kind {kind}")
        return self._to_dict(out, kind)

    def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind, namespace, name = _meta(obj)
        with _api_call("update status of", kind, f"{namespace}/{name}"):
            if kind == KIND:
                out = self.custom.replace_namespaced_custom_object_status(
                    API_GROUP, API_VERSION, namespace, PLURAL, name, obj
                )
            elif kind == "DaemonSet":
                out = self.apps.replace_namespaced_daemon_set_status(name, namespace, obj)
            else:
                raise StoreError(f"kind {kind} has no status subresource")
        return self._to_dict(out, kind)

    def delete(self, obj: dict[str, Any]) -> None:
        kind, namespace, name = _meta(obj)
        with _api_call("delete", kind, f"{namespace}/{name}"):
            if kind == KIND:
                self.custom.delete_namespaced_custom_object(API_GROUP, API_VERSION, namespace, PLURAL, name)
            elif kind == "DaemonSet":
                self.apps.delete_namespaced_daemon_set(name, namespace)
            elif kind == "Pod":
                self.core.delete_namespaced_pod(name, namespace)
            elif kind == "Secret":
                self.core.delete_namespaced_secret(name, namespace)
            else:
                raise StoreError(f"unsupported kind {kind}")

    def list(self, kind: str, namespace: str | None, labels: dict[str, str] | None = None) -> list[dict[str, Any]]:
        selector = label_selector(labels)
        with _api_call("list", kind, namespace or ""):
            if kind == KIND:
                if namespace:
                    resp = self.custom.list_namespaced_custom_object(
                        API_GROUP, API_VERSION, namespace, PLURAL, label_selector=selector
                    )
                else:
                    resp = self.custom.list_cluster_custom_object(API_GROUP, API_VERSION, PLURAL, label_selector=selector)
                items = resp.get("items", [])
            elif kind == "DaemonSet":
                if namespace:
                    items = self.apps.list_namespaced_daemon_set(namespace, label_selector=selector).items
                else:
                    items = self.apps.list_daemon_set_for_all_namespaces(label_selector=selector).items
            elif kind == "Pod":
                items = self.core.list_namespaced_pod(namespace, label_selector=selector).items
            elif kind == "Secret":
                items = self.core.list_namespaced_secret(namespace, label_selector=selector).items
            else:
                raise StoreError(f"unsupported kind {kind}")
        return [self._to_dict(item, kind) for item in items]

    def watch(
        self, kind: str, namespace: str | None, labels: dict[str, str] | None = None, timeout_s: int = 300
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        """Stream (event type, object) pairs until the server closes the watch.

        Only OneAgent and DaemonSet are watched. A watch opened without a
        resourceVersion replays every existing object as ADDED first.
        """
        if kind == KIND:
            if namespace:
                func, args = self.custom.list_namespaced_custom_object, (API_GROUP, API_VERSION, namespace, PLURAL)
            else:
                func, args = self.custom.list_cluster_custom_object, (API_GROUP, API_VERSION, PLURAL)
        elif kind == "DaemonSet":
            if namespace:
                func, args = self.apps.list_namespaced_daemon_set, (namespace,)
            else:
                func, args = self.apps.list_daemon_set_for_all_namespaces, ()
        else:
            raise StoreError(f"watching {kind} is not supported")

        watcher = watch.Watch()
        with _api_call("watch", kind, namespace or ""):
            stream = watcher.stream(func, *args, label_selector=label_selector(labels), timeout_seconds=int(timeout_s))
            for event in stream:
                obj = event.get("object")
                event_type = str(event.get("type", ""))
                if event_type == "ERROR":
                    status = obj if isinstance(obj, dict) else {}
                    raise StoreError(f"watch {kind}: {status.get('message', 'error event')}", status=status.get("code"))
                if obj is None:
                    continue
                yield event_type, self._to_dict(obj, kind)
