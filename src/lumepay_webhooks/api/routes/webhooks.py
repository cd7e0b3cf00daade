"""Merchant webhook subscription endpoints.

Secrets appear only in the responses of create, regenerate-secret and an
update that sets or rotates the secret.
"""
from __future__ import annotations

from aiohttp import web
from pydantic import ValidationError

from lumepay_webhooks.api.utils import (
    paginated_response,
    pagination_params,
    parse_uuid,
    read_json,
)
from lumepay_webhooks.core.exceptions import InvalidSubscriptionError, NotFoundError
from lumepay_webhooks.domain.dto import SubscriptionCreateDTO, SubscriptionUpdateDTO
from lumepay_webhooks.domain.webhooks import DeliveryStatus
from lumepay_webhooks.services.dependencies import (
    get_delivery_ledger,
    get_subscription_registry,
    require_merchant,
)

routes = web.RouteTableDef()


@routes.post("/api/v1/webhooks")
async def create_webhook(request: web.Request):
    merchant = require_merchant(request)
    body = await read_json(request)
    try:
        dto = SubscriptionCreateDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc

    registry = get_subscription_registry(request)
    try:
        sub = await registry.create(
            merchant=merchant,
            url=str(dto.url),
            events=dto.events,
            secret=dto.secret,
        )
    except InvalidSubscriptionError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    payload = sub.model_dump(mode="json")
    payload["secret"] = sub.secret
    return web.json_response(payload, status=201)


@routes.get("/api/v1/webhooks")
async def list_webhooks(request: web.Request):
    merchant = require_merchant(request)
    limit, offset = pagination_params(request)
    registry = get_subscription_registry(request)
    items, total = await registry.list_for_merchant(merchant, limit=limit, offset=offset)
    payload = paginated_response(
        [item.model_dump(mode="json") for item in items],
        limit=limit,
        offset=offset,
        key="webhooks",
        total=total,
    )
    return web.json_response(payload)


@routes.get("/api/v1/webhooks/{webhook_id}")
async def get_webhook(request: web.Request):
    merchant = require_merchant(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    registry = get_subscription_registry(request)
    try:
        sub = await registry.get(merchant, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(sub.model_dump(mode="json"))


@routes.put("/api/v1/webhooks/{webhook_id}")
async def update_webhook(request: web.Request):
    merchant = require_merchant(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    body = await read_json(request)
    try:
        dto = SubscriptionUpdateDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc

    registry = get_subscription_registry(request)
    try:
        sub = await registry.update(
            merchant,
            webhook_id,
            url=str(dto.url) if dto.url is not None else None,
            events=dto.events,
            secret=dto.secret,
            is_active=dto.is_active,
        )
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except InvalidSubscriptionError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    payload = sub.model_dump(mode="json")
    if dto.secret is not None:
        # set or rotated by this update
        payload["secret"] = sub.secret
    return web.json_response(payload)


@routes.delete("/api/v1/webhooks/{webhook_id}")
async def delete_webhook(request: web.Request):
    merchant = require_merchant(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    registry = get_subscription_registry(request)
    try:
        await registry.delete(merchant, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.Response(status=204)


@routes.post("/api/v1/webhooks/{webhook_id}/regenerate-secret")
async def regenerate_secret(request: web.Request):
    merchant = require_merchant(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    registry = get_subscription_registry(request)
    try:
        sub = await registry.regenerate_secret(merchant, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response({"id": str(sub.id), "secret": sub.secret})


@routes.get("/api/v1/webhooks/{webhook_id}/deliveries")
async def list_deliveries(request: web.Request):
    merchant = require_merchant(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    status_raw = request.rel_url.query.get("status")
    try:
        status = DeliveryStatus(status_raw) if status_raw else None
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid status") from exc
    limit, offset = pagination_params(request)

    registry = get_subscription_registry(request)
    try:
        await registry.get(merchant, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    items, total = await get_delivery_ledger(request).history(
        webhook_id, status=status, limit=limit, offset=offset
    )
    payload = paginated_response(
        [item.model_dump(mode="json", exclude={"claimed_at"}) for item in items],
        limit=limit,
        offset=offset,
        key="deliveries",
        total=total,
    )
    return web.json_response(payload)
