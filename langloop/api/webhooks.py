"""Inbound signed webhook endpoint."""

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from pydantic import ValidationError

from langloop.api.deps import get_services
from langloop.schemas.events import EventEnvelope, ProlificStudyNotification
from langloop.schemas.schemas import WebhookAcceptedResponse
from langloop.services.container import Services
from langloop.services.signing import WebhookSource

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/webhooks", tags=["Webhooks"])


def _secret_for(services: Services, source: WebhookSource):
    if source == WebhookSource.PROLIFIC:
        return services.settings.prolific_webhook_secret
    return services.settings.babel_webhook_secret


@router.post(
    "",
    response_model=WebhookAcceptedResponse,
    summary="Receive a signed event",
    description="Verify and accept a signed event; processing happens after the response.",
)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    """
    Receive an event from a partner.

    Requests are rejected with 400 when the sender or the envelope cannot be
    identified, and with 401 when the signature or timestamp is invalid.
    Accepted events are dispatched in the background.
    """
    codec = services.codec
    source = codec.detect_source(request.headers)
    if source == WebhookSource.UNKNOWN:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown webhook source")

    body = await request.body()
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")

    try:
        if source == WebhookSource.PROLIFIC and "event_type" in payload:
            message = ProlificStudyNotification.model_validate(payload)
            event_name = message.event_type
        else:
            message = EventEnvelope.model_validate(payload)
            event_name = message.event
    except ValidationError as e:
        logger.warning(f"Rejected malformed {source.value} webhook: {e.error_count()} validation errors")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid event payload")

    signature, timestamp = codec.extract(request.headers, source)
    verification = codec.verify(body, signature, timestamp, _secret_for(services, source))
    if not verification.is_valid:
        logger.warning(f"Rejected {source.value} webhook {event_name}: {verification.error.value}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=verification.error.value)

    logger.info(f"Accepted {source.value} webhook {event_name}")
    if isinstance(message, ProlificStudyNotification):
        background_tasks.add_task(services.router.dispatch_study_notification, message)
    else:
        background_tasks.add_task(services.router.dispatch, message)

    return WebhookAcceptedResponse(source=source.value, event=event_name)
