from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any

import httpx

from .models import OneAgent
from .settings import settings

OS_UNIX = "unix"
INSTALLER_TYPE_DEFAULT = "default"

API_TOKEN_KEY = "apiToken"
PAAS_TOKEN_KEY = "paasToken"


class DynatraceError(Exception):
    """The Dynatrace API could not answer a query."""


class SecretError(Exception):
    """The tokens secret is missing or incomplete."""


@dataclass(frozen=True)
class Tokens:
    api_token: str
    paas_token: str


def tokens_from_secret(secret: dict[str, Any]) -> Tokens:
    """Extract API and PaaS tokens from a Secret object.

    Values under .data are base64 encoded; .stringData is accepted as is.
    """
    values: dict[str, str] = dict(secret.get("stringData") or {})
    for key, raw in (secret.get("data") or {}).items():
        try:
            values[key] = base64.b64decode(raw).decode().strip()
        except (binascii.Error, UnicodeDecodeError) as e:
            raise SecretError(f"secret key '{key}' is not valid base64 text") from e

    missing = [k for k in (API_TOKEN_KEY, PAAS_TOKEN_KEY) if not values.get(k)]
    if missing:
        name = (secret.get("metadata") or {}).get("name", "")
        raise SecretError(f"secret '{name}' is missing token(s): {', '.join(missing)}")
    return Tokens(api_token=values[API_TOKEN_KEY], paas_token=values[PAAS_TOKEN_KEY])


def format_agent_version(v: dict[str, Any]) -> str:
    return f"{v.get('major', 0)}.{v.get('minor', 0)}.{v.get('revision', 0)}.{v.get('timestamp', '')}"


class DynatraceClient:
    """Minimal Dynatrace API client for agent version queries."""

    def __init__(
        self,
        api_url: str,
        api_token: str,
        paas_token: str,
        skip_cert_check: bool = False,
        timeout_s: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.paas_token = paas_token
        self._http = httpx.Client(
            timeout=settings.http_timeout_s if timeout_s is None else timeout_s,
            verify=not skip_cert_check,
            follow_redirects=False,
            transport=transport,
        )
        self._hosts: list[dict[str, Any]] | None = None

    @classmethod
    def for_instance(cls, instance: OneAgent, tokens: Tokens) -> "DynatraceClient":
        return cls(
            instance.spec.api_url,
            tokens.api_token,
            tokens.paas_token,
            skip_cert_check=instance.spec.skip_cert_check,
        )

    def close(self) -> None:
        self._http.close()

    def _get(self, path: str, token: str, params: dict[str, str] | None = None) -> Any:
        url = f"{self.api_url}{path}"
        try:
            resp = self._http.get(url, headers={"Authorization": f"Api-Token {token}"}, params=params)
        except httpx.HTTPError as e:
            raise DynatraceError(f"GET {path}: {type(e).__name__}: {e}") from e

        if resp.status_code != 200:
            detail = resp.reason_phrase
            try:
                err = resp.json().get("error") or {}
                detail = err.get("message") or detail
            except (ValueError, AttributeError):
                pass
            raise DynatraceError(f"GET {path}: HTTP {resp.status_code}: {detail}")

        try:
            return resp.json()
        except ValueError as e:
            raise DynatraceError(f"GET {path}: invalid JSON") from e

    def latest_agent_version(self, os: str = OS_UNIX, installer_type: str = INSTALLER_TYPE_DEFAULT) -> str:
        data = self._get(f"/v1/deployment/installer/agent/{os}/{installer_type}/latest/metainfo", self.paas_token)
        if not isinstance(data, dict):
            raise DynatraceError(f"unexpected metainfo payload: {data!r}")
        return data.get("latestAgentVersion") or ""

    def agent_version_for_ip(self, ip: str | None) -> str:
        """Version of the agent running on the host with the given IP.

        The host list is fetched once per client and reused.
        """
        if not ip:
            raise DynatraceError("no host ip")
        if self._hosts is None:
            data = self._get("/v1/entity/infrastructure/hosts", self.api_token, params={"includeDetails": "false"})
            if not isinstance(data, list):
                raise DynatraceError(f"unexpected hosts payload: {type(data).__name__}")
            self._hosts = data

        for host in self._hosts:
            if ip in (host.get("ipAddresses") or []):
                version = host.get("agentVersion")
                if not version:
                    raise DynatraceError(f"host {ip} reports no agent version")
                return format_agent_version(version)
        raise DynatraceError(f"host {ip} not found")
