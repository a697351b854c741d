"""Translate provider and storage failures into the engine's error taxonomy."""

from __future__ import annotations

import logging

import requests
from sqlalchemy.exc import SQLAlchemyError

from ..domain.errors import ChatError, InternalError, RateLimited, ServiceUnavailable, Unauthorized
from .completion_provider import ProviderError, ProviderNotConfigured


logger = logging.getLogger(__name__)

SERVICE_RETRY_AFTER_SECONDS = 30
PROVIDER_RATE_LIMIT_RETRY_AFTER_SECONDS = 60
STREAM_FAILED_MESSAGE = "Chat stream failed"


def classify(exc: BaseException) -> ChatError:
    if isinstance(exc, ChatError):
        return exc

    if isinstance(exc, ProviderNotConfigured):
        return ServiceUnavailable("Completion service not configured", retry_after=0)

    if isinstance(exc, ProviderError):
        status = exc.status_code
        if status == 401:
            return Unauthorized("Invalid completion provider API key")
        if status == 429:
            retry_after = exc.retry_after if exc.retry_after is not None else PROVIDER_RATE_LIMIT_RETRY_AFTER_SECONDS
            return RateLimited("Completion provider rate limit reached", retry_after=retry_after)
        return ServiceUnavailable(retry_after=SERVICE_RETRY_AFTER_SECONDS)

    if isinstance(exc, requests.RequestException):
        return ServiceUnavailable(retry_after=SERVICE_RETRY_AFTER_SECONDS)

    if isinstance(exc, SQLAlchemyError):
        logger.error("storage_failure", extra={"err_type": exc.__class__.__name__})
        return InternalError()

    logger.error("unclassified_failure", extra={"err_type": exc.__class__.__name__})
    return InternalError()


def sanitize(exc: BaseException) -> str:
    """User-facing text for a streaming error event; never the raw exception text."""

    return classify(exc).message or STREAM_FAILED_MESSAGE
