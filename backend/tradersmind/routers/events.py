from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from tradersmind.schemas import InteractionEvent, MessageEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["events"])


@router.post("/message")
async def message_event(event: MessageEvent, request: Request):
    try:
        prompt_id = await request.app.state.interactions.handle_message(event)
    except Exception as exc:
        logger.exception("Unhandled error for message %s", event.id)
        raise HTTPException(status_code=500, detail="Message handling failed") from exc
    return {"prompt_id": prompt_id}


@router.post("/interaction")
async def interaction_event(event: InteractionEvent, request: Request):
    try:
        return await request.app.state.interactions.handle_interaction(event)
    except Exception as exc:
        logger.exception("Unhandled error for interaction %s", event.id)
        raise HTTPException(status_code=500, detail="Interaction handling failed") from exc
