from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from entitlement_sync.config import settings
from entitlement_sync.observability import configure_logging
from entitlement_sync.routers import (
    internal,
    super_admin,
    webhooks,
)

configure_logging()

app = FastAPI(title="Entitlement Sync", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

if settings.webhook_enabled:
    app.include_router(webhooks.ingest_router)
app.include_router(webhooks.router)
app.include_router(internal.router)
app.include_router(super_admin.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "entitlement-sync"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
