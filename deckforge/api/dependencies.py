"""
FastAPI dependencies: container access, caller identity, admin gate, rate limits.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Awaitable, Callable
from typing import Optional

from fastapi import Depends, Request

from deckforge.container import Container
from deckforge.errors import AuthenticationRequired, PermissionDenied
from deckforge.orchestrator.service import FlashcardOrchestrator
from deckforge.review.queue import ReviewQueue


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_orchestrator(container: Container = Depends(get_container)) -> FlashcardOrchestrator:
    return container.orchestrator


def get_review_queue(container: Container = Depends(get_container)) -> ReviewQueue:
    return container.review_queue


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


def get_caller_id(request: Request, container: Container = Depends(get_container)) -> str:
    """
    Identify the caller for rate limiting and audit fields.

    Bearer token (hashed) first, then X-Caller-Id, then the client host.

    Raises:
        AuthenticationRequired: In production, when no Authorization header is sent
    """
    token = _bearer_token(request)
    if token:
        return "token:" + hashlib.sha256(token.encode()).hexdigest()[:16]
    if container.settings.is_production():
        raise AuthenticationRequired("Authorization header required")
    caller = request.headers.get("x-caller-id")
    if caller:
        return caller.strip()
    return request.client.host if request.client else "anonymous"


def require_admin(request: Request, container: Container = Depends(get_container)) -> str:
    """
    Gate review-queue endpoints. Returns the reviewer name for audit fields.

    Raises:
        AuthenticationRequired: No bearer token when one is required
        PermissionDenied: Wrong token, or no admin token configured in production
    """
    expected = container.settings.admin_token
    reviewer = request.headers.get("x-caller-id", "admin").strip() or "admin"

    if not expected:
        if container.settings.is_production():
            raise PermissionDenied("Admin access is not configured")
        return reviewer

    token = _bearer_token(request)
    if token is None:
        raise AuthenticationRequired("Admin bearer token required")
    if not hmac.compare_digest(token, expected):
        raise PermissionDenied("Invalid admin token")
    return reviewer


def rate_limit(endpoint_class: str) -> Callable[..., Awaitable[str]]:
    """Dependency factory counting the request against the caller's window for `endpoint_class`."""

    async def dependency(
        caller_id: str = Depends(get_caller_id),
        container: Container = Depends(get_container),
    ) -> str:
        registry = container.registry
        await registry.rate_limiter.check(caller_id, endpoint_class, registry.rule(endpoint_class))
        return caller_id

    return dependency
