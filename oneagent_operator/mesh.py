from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from .models import OneAgent


class MeshHook(ABC):
    """Service mesh integration run before the DaemonSet is converged.

    Implementations make the Dynatrace endpoints reachable from inside the
    mesh and report whether they changed anything in the cluster.
    """

    @abstractmethod
    def reconcile(
        self, log: logging.LoggerAdapter | logging.Logger, instance: OneAgent, dtc: Any
    ) -> tuple[bool, bool]:
        """Return (updated, ok)."""


class NullMeshHook(MeshHook):
    def reconcile(
        self, log: logging.LoggerAdapter | logging.Logger, instance: OneAgent, dtc: Any
    ) -> tuple[bool, bool]:
        log.debug("no service mesh integration configured")
        return False, True
