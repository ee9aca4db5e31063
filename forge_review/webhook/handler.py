"""
Webhook Handler Module

This module defines the FastAPI endpoint that receives forge webhooks.

Design Decisions:
- Verify, then parse, then accept; nothing is stored for rejected requests
- Return immediately after a pending job is recorded (forge timeout handling)
- Offload the review pipeline to background tasks
- Non-triggering events are acknowledged as ``ignored``, not rejected
"""

import json
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status

from forge_review.events import describe_event, should_trigger_review, triggered_by
from forge_review.logging_config import get_logger
from forge_review.webhook.processor import ReviewOrchestrator
from forge_review.webhook.security import extract_delivery_id, verify_request_signature

logger = get_logger(__name__)

# Create router for webhook endpoints
router = APIRouter(prefix="/webhook", tags=["webhook"])


class PayloadValidationError(Exception):
    """Webhook body is not a JSON object."""
    pass


def get_orchestrator(request: Request) -> ReviewOrchestrator:
    """Dependency returning the orchestrator wired into the application."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Review service not configured"
        )
    return orchestrator


def decode_payload(raw_body: bytes) -> Dict[str, Any]:
    """
    Decode a webhook body.

    Raises:
        PayloadValidationError: If the body is not a JSON object
    """
    try:
        payload = json.loads(raw_body or b"")
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise PayloadValidationError(f"Invalid JSON payload: {e}") from e

    if not isinstance(payload, dict):
        raise PayloadValidationError("Webhook payload must be a JSON object")
    return payload


@router.post("/{provider}", status_code=status.HTTP_200_OK)
async def receive_webhook(
    provider: str,
    request: Request,
    background_tasks: BackgroundTasks,
    orchestrator: ReviewOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """
    Forge webhook endpoint.

    Validates the signature, normalizes the payload and, for triggering
    events, records a pending review and queues it for background
    processing. The response never waits for the review itself.

    Raises:
        HTTPException: 404 for an unconfigured provider, 401 on signature
            failure, 400 on a malformed body
    """
    forge = orchestrator.provider

    if forge.name.value != provider.lower():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Provider '{provider}' is not configured"
        )

    delivery_id = extract_delivery_id(request.headers)

    logger.info(
        "Received webhook",
        provider=provider,
        delivery_id=delivery_id,
        remote_addr=request.client.host if request.client else "unknown"
    )

    # Read raw body for signature verification
    raw_body = await request.body()

    # Step 1: Verify webhook signature (security critical)
    await verify_request_signature(request, raw_body, forge, orchestrator.settings.forge_webhook_secret)

    # Step 2: Decode the payload
    try:
        payload = decode_payload(raw_body)
    except PayloadValidationError as e:
        logger.error("Failed to parse webhook payload", error=str(e), delivery_id=delivery_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        ) from e

    # Step 3: Normalize into a canonical event
    event = forge.parse_webhook_event(payload, dict(request.headers))
    if event is None:
        logger.debug("Ignoring webhook event", provider=provider, delivery_id=delivery_id)
        return {
            "status": "ignored",
            "reason": "Event not handled",
            "delivery_id": delivery_id
        }

    # Step 4: Decide whether it starts a review
    if not should_trigger_review(event):
        logger.info("Event does not trigger a review", event=describe_event(event), delivery_id=delivery_id)
        return {
            "status": "ignored",
            "reason": describe_event(event),
            "delivery_id": delivery_id
        }

    # Step 5: Record the job and queue background processing
    job = await orchestrator.accept(
        event,
        triggered_by=triggered_by(event),
        webhook_event_id=delivery_id or event.id
    )
    background_tasks.add_task(orchestrator.run, job.id, event)

    return {
        "status": "queued",
        "message": "PR review has been queued for processing",
        "delivery_id": delivery_id,
        "job_id": job.id,
        "event": describe_event(event),
        "pr": {
            "repository": job.repository,
            "number": job.pr_number
        }
    }


@router.get("/health")
async def webhook_health() -> Dict[str, str]:
    """
    Health check endpoint for the webhook service.

    Returns:
        Simple health status
    """
    return {"status": "healthy", "service": "webhook"}
