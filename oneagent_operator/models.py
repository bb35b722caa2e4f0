from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError

API_GROUP = "dynatrace.com"
API_VERSION = "v1alpha1"
KIND = "OneAgent"
PLURAL = "oneagents"

DEFAULT_IMAGE = "docker.io/dynatrace/oneagent:latest"
DEFAULT_WAIT_READY_SECONDS = 300


class InvalidSpecError(ValueError):
    """The OneAgent resource cannot be reconciled as written."""


class ObjectMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    namespace: str = "default"
    uid: str | None = None
    resource_version: str | None = Field(None, alias="resourceVersion")


class OneAgentSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    api_url: str = Field("", alias="apiUrl", description="Dynatrace environment API URL, ending in /api")
    skip_cert_check: bool = Field(False, alias="skipCertCheck")
    tokens: str = Field("", description="Name of the secret holding apiToken and paasToken")
    image: str = ""
    args: list[str] = Field(default_factory=list)
    env: list[dict[str, Any]] = Field(default_factory=list)
    node_selector: dict[str, str] = Field(default_factory=dict, alias="nodeSelector")
    tolerations: list[dict[str, Any]] = Field(default_factory=list)
    priority_class_name: str = Field("", alias="priorityClassName")
    resources: dict[str, Any] = Field(default_factory=dict)
    disable_agent_update: bool = Field(False, alias="disableAgentUpdate")
    enable_istio: bool = Field(False, alias="enableIstio")
    wait_ready_seconds: int | None = Field(None, ge=0, alias="waitReadySeconds")


class OneAgentInstance(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    node_name: str = Field("", alias="nodeName")
    version: str = ""
    ready: bool = False


class OneAgentStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: str = ""
    updated_timestamp: str | None = Field(None, alias="updatedTimestamp")
    instances: dict[str, OneAgentInstance] = Field(default_factory=dict)


class OneAgent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    api_version: str = Field(f"{API_GROUP}/{API_VERSION}", alias="apiVersion")
    kind: str = KIND
    metadata: ObjectMeta
    spec: OneAgentSpec = Field(default_factory=OneAgentSpec)
    status: OneAgentStatus = Field(default_factory=OneAgentStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "OneAgent":
        try:
            return cls.model_validate(obj)
        except ValidationError as e:
            raise InvalidSpecError(f"malformed OneAgent resource: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def apply_defaults(instance: OneAgent) -> None:
    spec = instance.spec
    if not spec.image:
        spec.image = DEFAULT_IMAGE
    if spec.wait_ready_seconds is None:
        spec.wait_ready_seconds = DEFAULT_WAIT_READY_SECONDS


def validate(instance: OneAgent) -> None:
    """Raise InvalidSpecError listing every problem found in .spec."""
    problems: list[str] = []
    spec = instance.spec

    if not spec.api_url:
        problems.append(".spec.apiUrl is missing")
    else:
        url = urlparse(spec.api_url)
        if url.scheme not in {"http", "https"} or not url.netloc:
            problems.append(".spec.apiUrl must be an absolute http(s) URL")

    for i, env in enumerate(spec.env):
        if not env.get("name"):
            problems.append(f".spec.env[{i}].name is missing")

    if problems:
        raise InvalidSpecError(", ".join(problems))


@dataclass(frozen=True)
class PodInfo:
    """The parts of an agent pod the reconciler reads."""

    name: str
    node_name: str
    phase: str
    host_ip: str | None
    ready: bool
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "PodInfo":
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}
        return cls(
            name=metadata.get("name", ""),
            node_name=spec.get("nodeName") or "",
            phase=status.get("phase") or "",
            host_ip=status.get("hostIP"),
            ready=pod_ready(status),
            raw=obj,
        )


def pod_ready(pod_status: dict[str, Any]) -> bool:
    for cond in pod_status.get("conditions") or []:
        if cond.get("type") == "Ready":
            return cond.get("status") == "True"
    return False
