"""Internal trigger used by the payment-intent service."""
from __future__ import annotations

from aiohttp import web
from pydantic import ValidationError

from lumepay_webhooks.api.utils import read_json
from lumepay_webhooks.domain.dto import EventNotifyDTO
from lumepay_webhooks.services.dependencies import get_notifier

routes = web.RouteTableDef()


@routes.post("/internal/v1/events")
async def publish_event(request: web.Request):
    body = await read_json(request)
    try:
        dto = EventNotifyDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc

    # answer before any delivery happens
    get_notifier(request).notify_in_background(dto.merchant, dto.type, dto.data)
    return web.json_response({"accepted": True, "type": dto.type.value}, status=202)
