from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from loguru import logger

from receipt_vault.api.dependencies import get_owner_id, get_services
from receipt_vault.api.schemas import (
    DeliveryView,
    SignatureCheck,
    WebhookCreate,
    WebhookTestRequest,
    WebhookUpdate,
    WebhookView,
    pagination,
)
from receipt_vault.common.models import EVENT_TYPES, DeliveryStatus
from receipt_vault.services import Services

router = APIRouter()


# Static paths are declared before /{webhook_id} so they are not shadowed.


@router.get("/events/available")
async def list_available_events():
    return {
        "success": True,
        "data": [
            {"type": event_type, "description": description}
            for event_type, description in EVENT_TYPES.items()
        ],
    }


@router.post("/verify-signature")
async def verify_signature(
    body: SignatureCheck, services: Services = Depends(get_services)
):
    valid = services.dispatcher.verify_signature(body.payload, body.signature, body.secret)
    return {
        "success": True,
        "data": {
            "valid": valid,
            "message": "Signature is valid" if valid else "Signature is invalid",
        },
    }


@router.post("", status_code=201)
async def create_webhook(
    body: WebhookCreate,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    subscription = await services.registry.create(
        owner_id,
        url=body.url,
        events=body.events,
        description=body.description,
        secret=body.secret,
        active=body.active,
        retry_policy=body.retry_policy.to_policy() if body.retry_policy else None,
        filter_rules=body.filter_rules,
    )
    return {
        "success": True,
        "data": WebhookView.from_subscription(subscription, include_secret=True).render(),
    }


@router.get("")
async def list_webhooks(
    active: Optional[bool] = None,
    event: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    subscriptions = await services.registry.list(owner_id, active=active, event=event)
    start = (page - 1) * limit
    return {
        "success": True,
        "data": [
            WebhookView.from_subscription(subscription).render()
            for subscription in subscriptions[start:start + limit]
        ],
        "pagination": pagination(page, limit, len(subscriptions)),
    }


@router.get("/{webhook_id}")
async def get_webhook(
    webhook_id: str,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    subscription = await services.registry.get(webhook_id, owner_id)
    return {"success": True, "data": WebhookView.from_subscription(subscription).render()}


@router.put("/{webhook_id}")
async def update_webhook(
    webhook_id: str,
    body: WebhookUpdate,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    changes = body.model_dump(exclude_unset=True, exclude={"retry_policy"})
    if body.retry_policy is not None:
        changes["retry_policy"] = body.retry_policy.to_policy()
    subscription = await services.registry.update(webhook_id, owner_id, **changes)
    return {"success": True, "data": WebhookView.from_subscription(subscription).render()}


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook(
    webhook_id: str,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    await services.registry.delete(webhook_id, owner_id)
    return Response(status_code=204)


@router.post("/{webhook_id}/test")
async def test_webhook(
    webhook_id: str,
    body: Optional[WebhookTestRequest] = None,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    body = body or WebhookTestRequest()
    subscription = await services.registry.get(webhook_id, owner_id)
    outcome = await services.dispatcher.test_webhook(subscription, body.event, body.payload)
    return {
        "success": True,
        "data": {
            "status": "delivered" if outcome.success else "failed",
            "responseCode": outcome.http_status,
            "responseTime": outcome.duration_ms,
            "error": outcome.error,
        },
    }


@router.get("/{webhook_id}/deliveries")
async def list_deliveries(
    webhook_id: str,
    status: Optional[DeliveryStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    await services.registry.get(webhook_id, owner_id)
    deliveries, total = await services.dispatcher.list_deliveries(
        webhook_id, status, page, limit
    )
    return {
        "success": True,
        "data": [DeliveryView.render(delivery) for delivery in deliveries],
        "pagination": pagination(page, limit, total),
    }


@router.get("/{webhook_id}/deliveries/{delivery_id}")
async def get_delivery(
    webhook_id: str,
    delivery_id: str,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    await services.registry.get(webhook_id, owner_id)
    delivery = await services.dispatcher.get_delivery(webhook_id, delivery_id)
    return {"success": True, "data": DeliveryView.render(delivery)}


@router.post("/{webhook_id}/deliveries/{delivery_id}/retry", status_code=202)
async def retry_delivery(
    webhook_id: str,
    delivery_id: str,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    await services.registry.get(webhook_id, owner_id)
    delivery = await services.dispatcher.retry_delivery(webhook_id, delivery_id)
    if delivery is None:
        raise HTTPException(
            status_code=404, detail="Delivery not found or not in failed state"
        )
    logger.info(f"Delivery {delivery_id} of webhook {webhook_id} queued for retry via API")
    return {"success": True, "message": "Delivery queued for retry"}


@router.get("/{webhook_id}/stats")
async def get_webhook_stats(
    webhook_id: str,
    owner_id: str = Depends(get_owner_id),
    services: Services = Depends(get_services),
):
    await services.registry.get(webhook_id, owner_id)
    stats = await services.dispatcher.stats(webhook_id)
    return {
        "success": True,
        "data": {
            "totalDeliveries": stats["total"],
            "successfulDeliveries": stats["successful"],
            "failedDeliveries": stats["failed"],
            "retryingDeliveries": stats["retrying"],
            "pendingDeliveries": stats["pending"],
            "successRate": stats["success_rate"],
            "averageResponseTime": stats["average_duration_ms"],
            "lastDeliveryAt": stats["last_delivery_at"].isoformat()
            if stats["last_delivery_at"]
            else None,
        },
    }
