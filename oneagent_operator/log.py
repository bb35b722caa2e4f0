from __future__ import annotations

import logging
from typing import Any, MutableMapping

LOGGER_NAME = "oneagent_operator"

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure(level: str = "info") -> None:
    """Install a single stream handler on the root logger."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=_FORMAT)


class InstanceLogger(logging.LoggerAdapter):
    """Prefixes every record with the OneAgent instance it belongs to."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = self.extra or {}
        return f"[{extra.get('namespace')}/{extra.get('name')}] {msg}", kwargs


def instance_logger(namespace: str, name: str) -> InstanceLogger:
    """Logger scoped to one tick of one OneAgent instance."""
    return InstanceLogger(logging.getLogger(f"{LOGGER_NAME}.controller"), {"namespace": namespace, "name": name})
