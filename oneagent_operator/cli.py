from __future__ import annotations

import argparse
import json
import sys

import requests

from .settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _run(args: argparse.Namespace) -> int:
    import uvicorn

    from . import log
    from .api import create_app
    from .controller import Controller
    from .reconciler import Reconciler
    from .runtime import RuntimeState
    from .store import KubeStore

    log.configure(args.log_level)

    store = KubeStore(in_cluster=args.in_cluster, context=args.context)
    runtime = RuntimeState()
    controller = Controller(store, Reconciler(store), runtime, namespace=args.namespace or None, workers=args.workers)
    controller.start()
    try:
        uvicorn.run(create_app(runtime), host=args.host, port=args.port, log_level=args.log_level.lower())
    finally:
        controller.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Dynatrace OneAgent operator")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_run = sub.add_parser("run", help="Run the controller and its status API")
    s_run.add_argument("--namespace", default=settings.namespace, help="Watched namespace ('' for all)")
    s_run.add_argument("--workers", type=int, default=settings.workers)
    s_run.add_argument("--host", default=settings.api_host)
    s_run.add_argument("--port", type=int, default=settings.api_port)
    s_run.add_argument("--log-level", default=settings.log_level)
    s_run.add_argument("--context", default=settings.kube_context, help="kubeconfig context when out of cluster")
    cluster = s_run.add_mutually_exclusive_group()
    cluster.add_argument("--in-cluster", dest="in_cluster", action="store_true", default=settings.in_cluster)
    cluster.add_argument("--kubeconfig", dest="in_cluster", action="store_false", help="Use the local kubeconfig")

    s_status = sub.add_parser("status", help="Show the last tick of each instance")
    s_status.add_argument("--api", default=f"http://localhost:{settings.api_port}", help="Status API base URL")
    s_status.add_argument("instance", nargs="?", help="namespace/name of one instance")

    args = p.parse_args(argv)

    if args.cmd == "run":
        return _run(args)

    if args.cmd == "status":
        base = args.api.rstrip("/")
        url = f"{base}/instances/{args.instance}" if args.instance else f"{base}/instances"
        r = requests.get(url, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
