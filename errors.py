"""
Figma Sentinel error taxonomy.

This module defines:
- The exception hierarchy raised across the pipeline
- Classification of Figma API error responses into that hierarchy
- User-facing error messages
- An aggregator that collects per-node failures during a run

Every error carries ``is_retryable`` so a retry-driving caller can decide
policy without checking subclasses by name.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Mapping

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Tag identifying the kind of a FigmaSentinelError."""
    VALIDATION = "VALIDATION_ERROR"
    AUTHENTICATION = "AUTH_ERROR"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMIT = "RATE_LIMIT"
    SERVER = "SERVER_ERROR"
    NETWORK = "NETWORK_ERROR"
    STORAGE = "STORAGE_ERROR"
    UNKNOWN = "UNKNOWN_ERROR"


class FigmaSentinelError(Exception):
    """Base class for all Figma Sentinel errors."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN,
        is_retryable: bool = False,
        cause: Optional[BaseException] = None,
        file_key: Optional[str] = None,
        node_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.is_retryable = is_retryable
        self.cause = cause
        self.file_key = file_key
        self.node_id = node_id


class ValidationError(FigmaSentinelError):
    """Malformed input or configuration (HTTP 400)."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=ErrorCode.VALIDATION, is_retryable=False, **kwargs)


class AuthenticationError(FigmaSentinelError):
    """Invalid token or missing scope (HTTP 401/403)."""

    def __init__(self, message: str, status: int = 401, **kwargs):
        super().__init__(message, code=ErrorCode.AUTHENTICATION, is_retryable=False, **kwargs)
        self.status = status


class NotFoundError(FigmaSentinelError):
    """File or node does not exist (HTTP 404)."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=ErrorCode.NOT_FOUND, is_retryable=False, **kwargs)


class RateLimitError(FigmaSentinelError):
    """Rate limit hit (HTTP 429). Retryable after ``retry_after_sec``."""

    def __init__(
        self,
        message: str,
        retry_after_sec: int = 60,
        plan_tier: Optional[str] = None,
        rate_limit_type: Optional[str] = None,
        upgrade_link: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, code=ErrorCode.RATE_LIMIT, is_retryable=True, **kwargs)
        self.retry_after_sec = retry_after_sec
        self.plan_tier = plan_tier
        self.rate_limit_type = rate_limit_type
        self.upgrade_link = upgrade_link


class ServerError(FigmaSentinelError):
    """Figma returned a 5xx response."""

    def __init__(self, message: str, status: int = 500, **kwargs):
        super().__init__(message, code=ErrorCode.SERVER, is_retryable=True, **kwargs)
        self.status = status


class NetworkError(FigmaSentinelError):
    """Transport failure before a response was received."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=ErrorCode.NETWORK, is_retryable=True, **kwargs)


class StorageError(FigmaSentinelError):
    """Reading or writing the spec store failed."""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(message, code=ErrorCode.STORAGE, is_retryable=False, **kwargs)
        self.path = path


# =============================================================================
# API boundary classification
# =============================================================================

class PayloadFormat(str, Enum):
    """Shape of a Figma error body, resolved once when parsing."""
    ERR_MESSAGE = "err_message"        # {"status": 400, "err": "..."}
    ERROR_BOOLEAN = "error_boolean"    # {"error": true, "status": 404, "message": "..."}
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorPayload:
    """Parsed Figma error body."""
    format: PayloadFormat
    message: Optional[str] = None
    status: Optional[int] = None


@dataclass(frozen=True)
class RateLimitHeaders:
    """Rate limit metadata taken from Figma response headers."""
    retry_after_sec: Optional[int] = None
    plan_tier: Optional[str] = None
    rate_limit_type: Optional[str] = None
    upgrade_link: Optional[str] = None


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def parse_rate_limit_headers(headers: Optional[Mapping[str, str]]) -> RateLimitHeaders:
    """
    Parse rate limit headers from a Figma API response.

    Args:
        headers: Response headers. Lookup is case-insensitive.

    Returns:
        RateLimitHeaders with whichever fields were present.
    """
    if not headers:
        return RateLimitHeaders()

    retry_after_sec = None
    retry_after = _header(headers, "Retry-After")
    if retry_after:
        try:
            retry_after_sec = int(retry_after.strip())
        except ValueError:
            logger.debug(f"Ignoring non-numeric Retry-After header: {retry_after!r}")

    return RateLimitHeaders(
        retry_after_sec=retry_after_sec,
        plan_tier=_header(headers, "X-Figma-Plan-Tier") or None,
        rate_limit_type=_header(headers, "X-Figma-Rate-Limit-Type") or None,
        upgrade_link=_header(headers, "X-Figma-Upgrade-Link") or None,
    )


def parse_error_payload(body: Any) -> ErrorPayload:
    """
    Resolve a Figma error body into an ErrorPayload.

    Figma answers errors in two shapes, ``{"status", "err"}`` and
    ``{"error": true, "status", "message"}``. Anything else is UNKNOWN, with
    a best-effort message.

    Args:
        body: Raw response text, bytes, or an already decoded mapping.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")

    payload = body
    if isinstance(body, str):
        text = body.strip()
        if not text:
            return ErrorPayload(PayloadFormat.UNKNOWN)
        try:
            payload = json.loads(text)
        except ValueError:
            # Plain text body; only keep it when short enough to be a message
            return ErrorPayload(PayloadFormat.UNKNOWN, message=text if len(text) <= 200 else None)

    if not isinstance(payload, dict):
        return ErrorPayload(PayloadFormat.UNKNOWN)

    status = payload.get("status") if isinstance(payload.get("status"), int) else None

    if isinstance(payload.get("err"), str):
        return ErrorPayload(PayloadFormat.ERR_MESSAGE, message=payload["err"], status=status)

    if payload.get("error") is True and isinstance(payload.get("message"), str):
        return ErrorPayload(PayloadFormat.ERROR_BOOLEAN, message=payload["message"], status=status)

    message = None
    if isinstance(payload.get("message"), str):
        message = payload["message"]
    elif isinstance(payload.get("error"), str):
        message = payload["error"]
    return ErrorPayload(PayloadFormat.UNKNOWN, message=message, status=status)


def error_from_response(
    status: int,
    body: Any = None,
    headers: Optional[Mapping[str, str]] = None,
    file_key: Optional[str] = None,
    node_id: Optional[str] = None,
) -> FigmaSentinelError:
    """
    Classify a failed Figma API response.

    Args:
        status: HTTP status code.
        body: Response body (text, bytes or decoded JSON).
        headers: Response headers.
        file_key: File being fetched, for context.
        node_id: Node being fetched, for context.

    Returns:
        The matching FigmaSentinelError subclass instance.
    """
    payload = parse_error_payload(body)
    message = payload.message or f"HTTP {status}"
    context = {"file_key": file_key, "node_id": node_id}

    if status == 400:
        return ValidationError(message, **context)
    if status in (401, 403):
        if str(status) not in message:
            message = f"{status} {message}"
        return AuthenticationError(message, status=status, **context)
    if status == 404:
        return NotFoundError(message, **context)
    if status == 429:
        rate = parse_rate_limit_headers(headers)
        return RateLimitError(
            message,
            retry_after_sec=rate.retry_after_sec if rate.retry_after_sec is not None else 60,
            plan_tier=rate.plan_tier,
            rate_limit_type=rate.rate_limit_type,
            upgrade_link=rate.upgrade_link,
            **context
        )
    if 500 <= status < 600:
        return ServerError(message, status=status, **context)
    return FigmaSentinelError(message, **context)


# =============================================================================
# User-facing messages
# =============================================================================

def generate_error_message(
    error: FigmaSentinelError,
    file_key: Optional[str] = None,
    node_id: Optional[str] = None,
) -> str:
    """
    Build an actionable message for an error.

    Args:
        error: The error to describe.
        file_key: Overrides the file key carried by the error.
        node_id: Overrides the node id carried by the error.

    Returns:
        A human-readable message. Unknown error kinds return their raw message.
    """
    file_key = file_key or error.file_key
    node_id = node_id or error.node_id

    if error.code == ErrorCode.VALIDATION:
        return f"Invalid request: {error.message}. Check Figma URL format or reduce request size."

    if error.code == ErrorCode.AUTHENTICATION:
        if getattr(error, "status", None) == 403 or "403" in error.message:
            file_ref = f" for file {file_key}" if file_key else ""
            return (
                f"Access denied{file_ref}. Check: 1) Token has file_read scope "
                f"2) You have view access 3) Enterprise plan for Variables."
            )
        return "Authentication failed. Verify your FIGMA_TOKEN is valid and not expired."

    if error.code == ErrorCode.NOT_FOUND:
        file_ref = f" {file_key}" if file_key else ""
        node_ref = f" (node {node_id})" if node_id else ""
        return f"Figma file{file_ref}{node_ref} not found. Verify the file key from your Figma URL."

    if error.code == ErrorCode.RATE_LIMIT:
        tier = f", Tier: {error.plan_tier}" if error.plan_tier else ""
        limit_type = f", Type: {error.rate_limit_type}" if error.rate_limit_type else ""
        upgrade = f". Upgrade: {error.upgrade_link}" if error.upgrade_link else ""
        return f"Rate limit exceeded. Waiting {error.retry_after_sec}s{tier}{limit_type}{upgrade}"

    if error.code == ErrorCode.SERVER:
        return "Figma server error. Try reducing nodes requested or try again later."

    if error.code == ErrorCode.NETWORK:
        return f"Network error: {error.message}. Check internet connection and try again."

    if error.code == ErrorCode.STORAGE:
        where = f" ({error.path})" if getattr(error, "path", None) else ""
        return f"Spec storage failed{where}: {error.message}"

    return error.message


# =============================================================================
# Aggregation
# =============================================================================

@dataclass
class AggregatedError:
    """An error recorded during a run, with its context."""
    error: FigmaSentinelError
    file_key: Optional[str] = None
    node_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ErrorAggregator:
    """Collects errors and successes for an end-of-run summary."""

    def __init__(self):
        self._errors: List[AggregatedError] = []
        self._success_count = 0

    def add_error(
        self,
        error: FigmaSentinelError,
        file_key: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> None:
        self._errors.append(AggregatedError(
            error=error,
            file_key=file_key or error.file_key,
            node_id=node_id or error.node_id,
        ))

    def add_success(self) -> None:
        self._success_count += 1

    @property
    def errors(self) -> List[AggregatedError]:
        return list(self._errors)

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def failure_count(self) -> int:
        return len(self._errors)

    def summary(self) -> Dict[str, Any]:
        """Group errors by error code and by file key."""
        by_code: Dict[str, List[AggregatedError]] = {}
        by_file_key: Dict[str, List[AggregatedError]] = {}

        for entry in self._errors:
            by_code.setdefault(entry.error.code.value, []).append(entry)
            by_file_key.setdefault(entry.file_key or "unknown", []).append(entry)

        return {
            "total_errors": len(self._errors),
            "success_count": self._success_count,
            "by_error_type": {code: len(items) for code, items in by_code.items()},
            "by_file_key": {key: len(items) for key, items in by_file_key.items()},
        }

    def reset(self) -> None:
        self._errors = []
        self._success_count = 0
