"""
Main FastAPI application for the order access gate.
Serves verification, whitelist, device and session APIs, health and metrics.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from order_gate.api.routes import device, health, multi, sessions, verify
from order_gate.core.config import settings
from order_gate.core.logging import configure_logging
from order_gate.db.session import init_db
from order_gate.services.sessions.store import session_store
from order_gate.utils.metrics import router as metrics_router


@asynccontextmanager
async def lifespan(_app: FastAPI):
    configure_logging()
    init_db()
    session_store.start()
    try:
        yield
    finally:
        session_store.stop()


app = FastAPI(
    title="Order Gate API",
    description="Order-number access verification with device and session limits",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
origins = settings.cors_origins_list
if not origins:
    origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Session-ID", "X-Device-ID", "X-Internal-API-Key", "X-Admin-Key"],
)

# Routers
app.include_router(health.router, tags=["health"])
app.include_router(verify.router)
app.include_router(multi.router)
app.include_router(device.router)
app.include_router(sessions.router)
app.include_router(metrics_router)
