"""
Gateway webhook routes.

The raw body is handed to the webhook service untouched: signature checks
run on the exact bytes the gateway signed.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_webhook_service
from application.services.webhook_service import WebhookService
from core.logging_config import get_logger
from core.response import success_response


router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = get_logger(__name__)


@router.post("/{gateway}", summary="Gateway webhook receiver")
async def receive_webhook(
    gateway: str,
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    result = await service.handle_inbound(gateway.lower(), headers, raw_body)
    message = "Duplicate event ignored" if result.get("duplicate") else "Webhook received"
    return success_response(data=result, message=message)
