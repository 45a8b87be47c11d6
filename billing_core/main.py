from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from billing_core.metrics import METRICS_ENABLED, metrics_endpoint, metrics_middleware, set_app_info
from billing_core.routers.admin import router as admin_router
from billing_core.routers.events import router as events_router


def create_app() -> FastAPI:
    app = FastAPI(title="Billing Core", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if METRICS_ENABLED:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    app.include_router(events_router)
    app.include_router(admin_router)

    return app


app = create_app()
