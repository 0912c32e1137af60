"""
Webhook and Event API Endpoints
WhatsApp Cloud API webhooks, Shopify order webhooks, CSV imports and knowledge-base operations
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from recete.middleware.webhook_auth import get_webhook_secret
from recete.models.events import BatchProcessResult, EventSource
from recete.models.knowledge import IndexResult, RAGQueryOptions, RAGQueryResponse
from recete.services.container import Services
from recete.services.csv_importer import parse_csv
from recete.utils.exceptions import EmbeddingError, MissingPhoneError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Services are not initialized")
    return services


class IndexProductsRequest(BaseModel):
    product_ids: List[str] = Field(..., min_length=1, description="Product UUIDs to (re)index")


# ============================================
# WHATSAPP
# ============================================

@router.get("/webhooks/whatsapp", summary="WhatsApp webhook verification")
async def verify_whatsapp_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
    services: Services = Depends(get_services)
):
    answer = services.whatsapp.verify_webhook(mode, token, challenge)
    if answer is None:
        logger.warning("WhatsApp webhook verification failed")
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Verification failed")
    return PlainTextResponse(answer)


@router.post("/webhooks/whatsapp", status_code=status.HTTP_200_OK, summary="Receive WhatsApp messages")
async def whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services)
):
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid JSON body")

    # Acknowledge immediately; Meta retries slow webhooks
    background_tasks.add_task(services.messages.handle_inbound, payload)
    return {"success": True}


# ============================================
# SHOPIFY
# ============================================

@router.post("/webhooks/shopify/{merchant_id}", summary="Receive Shopify order webhook")
async def shopify_webhook(
    merchant_id: str,
    request: Request,
    x_shopify_topic: Optional[str] = Header(None, alias="X-Shopify-Topic"),
    x_shopify_webhook_id: Optional[str] = Header(None, alias="X-Shopify-Webhook-Id"),
    services: Services = Depends(get_services)
):
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid JSON body")

    event = services.normalizer.normalize(EventSource.SHOPIFY.value, payload, x_shopify_topic, merchant_id)
    if event is None:
        return {"success": True, "skipped": True}

    try:
        ingest, result = await services.orders.ingest_and_process(event, x_shopify_webhook_id)
    except MissingPhoneError as e:
        logger.warning(f"⚠️ Shopify order {event.external_order_id} skipped: {e}")
        # 200 so Shopify does not retry an event that can never succeed
        return JSONResponse(status_code=200, content={"success": False, "reason": "missing_phone"})
    except Exception as e:
        logger.error(f"❌ Error processing Shopify webhook: {e}", exc_info=True)
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))

    return {
        "success": True,
        "duplicate": ingest.duplicate,
        "order_id": result.order_id if result else None,
    }


# ============================================
# EVENTS
# ============================================

@router.post("/events/csv/{merchant_id}", summary="Import orders from CSV")
async def import_csv(
    merchant_id: str,
    request: Request,
    integration_id: Optional[str] = Query(None),
    secret: str = Depends(get_webhook_secret),
    services: Services = Depends(get_services)
):
    content = (await request.body()).decode("utf-8-sig", errors="replace")
    parsed = parse_csv(content, merchant_id, integration_id)
    if not parsed.success:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=[e.model_dump() for e in parsed.errors])

    processed, duplicates, failed = 0, 0, []
    for event in parsed.events:
        try:
            ingest, _ = await services.orders.ingest_and_process(event)
            if ingest.duplicate:
                duplicates += 1
            else:
                processed += 1
        except Exception as e:
            logger.error(f"❌ CSV order {event.external_order_id} failed: {e}")
            failed.append({"external_order_id": event.external_order_id, "error": str(e)})

    return {
        "success": True,
        "summary": parsed.summary.model_dump(),
        "errors": [e.model_dump() for e in parsed.errors],
        "processed": processed,
        "duplicates": duplicates,
        "failed": failed,
    }


@router.post("/events/process", response_model=BatchProcessResult, summary="Drain unprocessed events")
async def process_events(
    limit: int = Query(100, ge=1, le=1000),
    secret: str = Depends(get_webhook_secret),
    services: Services = Depends(get_services)
):
    return await services.orders.process_external_events(limit)


# ============================================
# KNOWLEDGE BASE
# ============================================

@router.post("/knowledge/index", response_model=List[IndexResult], summary="Re-index products")
async def index_products(
    body: IndexProductsRequest,
    secret: str = Depends(get_webhook_secret),
    services: Services = Depends(get_services)
):
    return await services.indexer.index_products(body.product_ids)


@router.post("/knowledge/query", response_model=RAGQueryResponse, summary="Query the knowledge base")
async def query_knowledge(
    options: RAGQueryOptions,
    secret: str = Depends(get_webhook_secret),
    services: Services = Depends(get_services)
):
    try:
        return await services.rag.query(options)
    except EmbeddingError as e:
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, str(e))
