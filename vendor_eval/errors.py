"""
Failure categories and exception helpers shared by the connector fan-out,
the specialist executor and the orchestrator.
"""
from __future__ import annotations
import asyncio
import json
from enum import Enum
from typing import Optional

import httpx
import openai
from pydantic import ValidationError


class FailureCategory(str, Enum):
    AUTHENTICATION = "authentication"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    PARSING = "parsing"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ConnectorFailure(Exception):
    """Raised by connector adapters; converted to a ConnectorError by the fan-out."""

    def __init__(self, category: FailureCategory, message: str):
        super().__init__(message)
        self.category = category
        self.message = message


class ResponseParseError(ValueError):
    """The text-generation service returned something that is not the expected JSON object."""


class EvaluationError(RuntimeError):
    """The orchestration machinery itself failed; no evaluation could be produced."""


def categorize_exception(exc: BaseException) -> FailureCategory:
    """Map an exception raised by an external call onto a FailureCategory."""
    if isinstance(exc, ConnectorFailure):
        return exc.category
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, openai.APITimeoutError)):
        return FailureCategory.TIMEOUT
    if isinstance(exc, (json.JSONDecodeError, ResponseParseError, ValidationError)):
        return FailureCategory.PARSING
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return FailureCategory.AUTHENTICATION
    if isinstance(exc, openai.RateLimitError):
        return FailureCategory.RATE_LIMIT
    if isinstance(exc, httpx.HTTPStatusError):
        return category_for_status(exc.response.status_code) or FailureCategory.NETWORK
    if isinstance(exc, (openai.APIConnectionError, httpx.TransportError, ConnectionError)):
        return FailureCategory.NETWORK
    return FailureCategory.UNKNOWN


def category_for_status(status_code: int) -> Optional[FailureCategory]:
    """Category for a non-2xx HTTP status, or None for success codes."""
    if 200 <= status_code < 300:
        return None
    if status_code in (401, 403):
        return FailureCategory.AUTHENTICATION
    if status_code == 429:
        return FailureCategory.RATE_LIMIT
    return FailureCategory.NETWORK
