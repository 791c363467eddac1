from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from typing import Optional

from core.config import logger, HOTMART_WEBHOOK_SECRET, DODO_WEBHOOK_SECRET
from utils.webhook_processor import SubscriptionEngine, get_engine

router = APIRouter(tags=["pricing"])

# Header names each provider signs with, in lookup order
SIGNATURE_HEADERS = {
    "hotmart": ("X-Hotmart-Hmac-Sha256", "X-Signature", "X-Hub-Signature-256"),
    "dodo": ("webhook-signature", "X-Signature"),
}
PROVIDER_SECRETS = {
    "hotmart": lambda: HOTMART_WEBHOOK_SECRET,
    "dodo": lambda: DODO_WEBHOOK_SECRET,
}


def _signature_from_headers(request: Request, provider: str) -> Optional[str]:
    for name in SIGNATURE_HEADERS.get(provider, ()):
        value = request.headers.get(name)
        if value and value.strip():
            return value.strip()
    return None


async def _handle(provider: str, request: Request, engine: SubscriptionEngine) -> JSONResponse:
    provider = (provider or "").strip().lower()
    if provider not in PROVIDER_SECRETS:
        return JSONResponse({"error": f"unknown provider {provider}"}, status_code=404)

    raw_body = await request.body()
    logger.info(f"[pricing.webhook] received {provider} webhook ({len(raw_body)} bytes)")
    result = engine.process_webhook(
        raw_body,
        signature=_signature_from_headers(request, provider),
        secret=PROVIDER_SECRETS[provider](),
        provider=provider,
        headers=dict(request.headers),
    )
    return JSONResponse(result.to_dict(), status_code=result.status_code)


@router.post("/api/pricing/webhook/{provider}")
async def pricing_webhook(provider: str, request: Request, engine: SubscriptionEngine = Depends(get_engine)):
    """
    Payment provider webhook.
    Always answers 2xx once the delivery is processed or deliberately ignored, so
    providers do not retry; 400 bad JSON, 401 bad signature, 503 retryable store failure.
    """
    return await _handle(provider, request, engine)


@router.post("/api/webhooks/hotmart")
async def hotmart_webhook_legacy(request: Request, engine: SubscriptionEngine = Depends(get_engine)):
    # URL registered in the Hotmart dashboard before providers were generalized
    return await _handle("hotmart", request, engine)
