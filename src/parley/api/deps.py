from __future__ import annotations

"""Process-wide service instances for the HTTP layer.

Routers depend on these getters; tests swap them through
``app.dependency_overrides``.
"""

import math
from typing import Callable, Optional

from fastapi import Depends, Response

from ..config import Settings
from ..infrastructure.conversation_store import build_conversation_store
from ..security.identity import get_account_id
from ..security.rate_limit import RateLimitGate, RateLimiter
from ..services.completion_provider import build_provider
from ..services.context_builder import ContextBuilder
from ..services.stream_coordinator import StreamCoordinator


_settings: Optional[Settings] = None
_coordinator: Optional[StreamCoordinator] = None
_gate: Optional[RateLimitGate] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def get_coordinator() -> StreamCoordinator:
    global _coordinator
    if _coordinator is None:
        settings = get_settings()
        store = build_conversation_store(settings.store_impl, settings.database_url)
        builder = ContextBuilder(store, system_prompt=settings.system_prompt, history_limit=settings.history_limit)
        _coordinator = StreamCoordinator(store, build_provider(settings), context_builder=builder)
    return _coordinator


def get_rate_limit_gate() -> RateLimitGate:
    global _gate
    if _gate is None:
        settings = get_settings()
        limiter = RateLimiter(sweep_interval_seconds=settings.rate_limit_sweep_seconds)
        _gate = RateLimitGate(limiter, settings.rate_limits, disabled=settings.rate_limit_disabled)
    return _gate


def reset_dependencies() -> None:
    global _settings, _coordinator, _gate
    if _gate is not None:
        _gate.limiter.stop()
    _settings = None
    _coordinator = None
    _gate = None


def rate_limit(category: str) -> Callable[..., str]:
    """Dependency enforcing the two-tier limit for ``category`` and returning the caller's account id."""

    def dependency(
        response: Response,
        account_id: str = Depends(get_account_id),
        gate: RateLimitGate = Depends(get_rate_limit_gate),
    ) -> str:
        result = gate.enforce(category, account_id)
        config = gate.config_for(category)
        response.headers["X-RateLimit-Limit"] = str(config.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(math.ceil(result.reset_at / 1000))
        return account_id

    return dependency
