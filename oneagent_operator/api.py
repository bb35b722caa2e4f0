from __future__ import annotations

from dataclasses import asdict

from fastapi import FastAPI, HTTPException

from .api_models import HealthResponse, TickRecordOut
from .runtime import RuntimeState


def create_app(runtime: RuntimeState) -> FastAPI:
    """Status API exposing the last tick of every instance."""
    app = FastAPI(title="OneAgent Operator", version="0.1.0")

    @app.get("/healthz", response_model=HealthResponse)
    def healthz() -> HealthResponse:
        return HealthResponse()

    @app.get("/instances", response_model=list[TickRecordOut])
    def list_instances() -> list[TickRecordOut]:
        return [TickRecordOut(**asdict(r)) for r in runtime.list()]

    @app.get("/instances/{namespace}/{name}", response_model=TickRecordOut)
    def get_instance(namespace: str, name: str) -> TickRecordOut:
        rec = runtime.get(namespace, name)
        if not rec:
            raise HTTPException(status_code=404, detail=f"no tick recorded for {namespace}/{name}")
        return TickRecordOut(**asdict(rec))

    return app
