"""
Webhook Package

This package contains webhook handling components:
- handler: forge webhook endpoint
- status: review status and retry endpoints
- security: webhook signature verification
- processor: review orchestration
"""

from forge_review.webhook.handler import router as webhook_router
from forge_review.webhook.status import router as reviews_router

__all__ = ["reviews_router", "webhook_router"]
