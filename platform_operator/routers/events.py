"""Event intake from the cluster watch machinery.

Delivery is at-least-once and unordered; the controller collapses duplicate
keys, so watchers may post freely.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from platform_operator.schemas import EventIn

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["events"])


@router.post("", status_code=202)
def post_event(event: EventIn, request: Request) -> dict[str, str]:
    controller = request.app.state.controller
    key = controller.notify(event.kind, event.namespace, event.name, event.hint)
    return {"key": str(key), "status": "queued"}
