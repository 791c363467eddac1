import os
from typing import Optional

from fastapi import APIRouter, Body, Request, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.config import logger, ADMIN_ALLOWLIST_IPS
from utils.rate_limit import check_admin_rate_limit
from utils.subscription_status import CATEGORIES
from utils.webhook_processor import SubscriptionEngine, get_engine

router = APIRouter(prefix="/api/admin", tags=["admin"])  # secure endpoints via ADMIN_SECRET


# --- Security helpers ---

def _get_admin_secret() -> str:
    return (os.getenv("ADMIN_SECRET") or "").strip()


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


def _extract_secret(request: Request, explicit: Optional[str] = None) -> str:
    if explicit and explicit.strip():
        return explicit.strip()
    # Header takes precedence over the query string
    h = (request.headers.get("X-Admin-Secret") or "").strip()
    if h:
        return h
    return (request.query_params.get("secret") or "").strip()


def _require_admin(request: Request, secret: Optional[str] = None) -> Optional[JSONResponse]:
    configured = _get_admin_secret()
    if not configured:
        return JSONResponse({"error": "admin_not_configured"}, status_code=503)
    provided = _extract_secret(request, secret)
    if not provided or provided != configured:
        return JSONResponse({"error": "unauthorized"}, status_code=401)
    ip = _client_ip(request)
    if ADMIN_ALLOWLIST_IPS and ip and ip not in ADMIN_ALLOWLIST_IPS:
        return JSONResponse({"error": "forbidden"}, status_code=403)
    allowed, message = check_admin_rate_limit(ip or "unknown")
    if not allowed:
        return JSONResponse({"error": message}, status_code=429)
    return None


# --- Models ---

class ManualActivationPayload(BaseModel):
    email: str
    plan: str
    activated_by: Optional[str] = None


class RestorePlanPayload(BaseModel):
    email: str
    activated_by: Optional[str] = None


# --- Subscriptions ---

@router.get("/subscriptions")
async def admin_list_subscriptions(
    request: Request,
    category: str = "all",
    engine: SubscriptionEngine = Depends(get_engine),
):
    """List users with their subscription analysis, filtered by category."""
    denied = _require_admin(request)
    if denied:
        return denied
    if category not in CATEGORIES:
        return JSONResponse({"error": "invalid_category", "categories": list(CATEGORIES)}, status_code=400)
    rows = engine.list_users_by_category(category)
    users = [{**user.to_dict(), "analysis": analysis.to_dict()} for user, analysis in rows]
    return {"category": category, "count": len(users), "users": users}


@router.get("/subscriptions/summary")
async def admin_subscriptions_summary(request: Request, engine: SubscriptionEngine = Depends(get_engine)):
    denied = _require_admin(request)
    if denied:
        return denied
    counts = {cat: len(engine.list_users_by_category(cat)) for cat in CATEGORIES}
    return {"counts": counts}


@router.get("/subscriptions/{email}")
async def admin_get_subscription(email: str, request: Request, engine: SubscriptionEngine = Depends(get_engine)):
    denied = _require_admin(request)
    if denied:
        return denied
    user = engine.store.get_by_email(email)
    if user is None:
        return JSONResponse({"error": "not_found"}, status_code=404)
    analysis = engine.analyze(email)
    return {**user.to_dict(), "analysis": analysis.to_dict() if analysis else None}


@router.post("/subscriptions/activate")
async def admin_activate_subscription(
    request: Request,
    payload: ManualActivationPayload = Body(...),
    engine: SubscriptionEngine = Depends(get_engine),
):
    """Grant a plan by hand; protected from automatic downgrades for the grace period."""
    denied = _require_admin(request)
    if denied:
        return denied
    by = (payload.activated_by or "").strip() or f"admin@{_client_ip(request) or 'unknown'}"
    try:
        user = engine.activate_manually(payload.email, payload.plan, by)
    except LookupError:
        return JSONResponse({"error": "not_found"}, status_code=404)
    except ValueError as ex:
        return JSONResponse({"error": str(ex)}, status_code=400)
    logger.info(f"[admin.subscriptions] manual activation {payload.email} -> {user.plan.value} by {by}")
    return {"ok": True, "user": user.to_dict()}


@router.post("/subscriptions/restore")
async def admin_restore_subscription(
    request: Request,
    payload: RestorePlanPayload = Body(...),
    engine: SubscriptionEngine = Depends(get_engine),
):
    """Give back the plan taken by a refund or chargeback."""
    denied = _require_admin(request)
    if denied:
        return denied
    by = (payload.activated_by or "").strip() or f"admin@{_client_ip(request) or 'unknown'}"
    try:
        user = engine.restore_previous_plan(payload.email, by)
    except LookupError:
        return JSONResponse({"error": "not_found"}, status_code=404)
    except ValueError as ex:
        return JSONResponse({"error": str(ex)}, status_code=400)
    return {"ok": True, "user": user.to_dict()}


@router.post("/subscriptions/sweep")
async def admin_run_sweep(request: Request, engine: SubscriptionEngine = Depends(get_engine)):
    """Apply due pending downgrades and lapse expired manual activations."""
    denied = _require_admin(request)
    if denied:
        return denied
    expired = engine.run_expiry_sweep()
    lapsed = engine.run_manual_activation_sweep()
    return {"ok": True, "downgraded": expired, "manualActivationsExpired": lapsed}
