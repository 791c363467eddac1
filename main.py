from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import asyncio
import os

from core.config import logger, RUN_DOWNGRADE_SWEEP, DOWNGRADE_SWEEP_INTERVAL_SEC, APP_NAME  # type: ignore

# Routers
from routers import admin, pricing_webhook  # type: ignore

app = FastAPI(title=f"{APP_NAME} subscriptions")

# ---- CORS setup ----
_default_origins = ",".join([
    "https://photoproof.app",
    "http://localhost:3000",
    "http://localhost:5173",
])
_origins_env = os.getenv("ALLOWED_ORIGINS") or os.getenv("CORS_ORIGINS") or os.getenv("FRONTEND_ORIGIN") or _default_origins
ALLOWED_ORIGINS = [o.strip() for o in _origins_env.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Security headers ---
@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("X-Frame-Options", "DENY")
    return response


app.include_router(pricing_webhook.router)
app.include_router(admin.router)


async def _downgrade_sweep_once():
    from utils.webhook_processor import get_engine
    engine = get_engine()
    expired = await asyncio.to_thread(engine.run_expiry_sweep)
    if expired:
        logger.info(f"[subscriptions.sweep] downgraded {len(expired)} user(s): {', '.join(expired)}")
    lapsed = await asyncio.to_thread(engine.run_manual_activation_sweep)
    if lapsed:
        logger.info(f"[subscriptions.sweep] {len(lapsed)} manual activation(s) expired: {', '.join(lapsed)}")


async def _downgrade_sweep_loop():
    interval = max(30, DOWNGRADE_SWEEP_INTERVAL_SEC)
    while True:
        try:
            await _downgrade_sweep_once()
        except Exception as ex:
            logger.warning(f"[subscriptions.sweep] run failed: {ex}")
        await asyncio.sleep(interval)


@app.on_event("startup")
async def _init_schema():
    try:
        from core.database import init_db
        init_db()
    except Exception as _ex:
        logger.warning(f"init_db failed: {_ex}")


@app.on_event("startup")
async def _start_downgrade_sweep():
    if RUN_DOWNGRADE_SWEEP:
        asyncio.create_task(_downgrade_sweep_loop())


@app.get("/health")
async def health():
    return {"ok": True}

