"""Dynatrace OneAgent operator.

Cluster-resident control loop that:
 - keeps one OneAgent DaemonSet per OneAgent custom resource converged
 - rolls out new agent versions node by node, waiting for each node's
   replacement pod to become ready before touching the next one
 - records installed versions per pod in the custom resource status
"""
