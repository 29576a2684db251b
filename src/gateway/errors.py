from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any

import httpx


class ErrorCode(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    CALLER_NOT_FOUND = "caller_not_found"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    MALFORMED_REQUEST = "malformed_request"
    TIER_INELIGIBLE = "tier_ineligible"
    QUOTA_EXCEEDED = "quota_exceeded"
    PROVIDER_UNCONFIGURED = "provider_unconfigured"
    UPSTREAM_ERROR = "upstream_error"
    UPSTREAM_TIMEOUT = "upstream_timeout"

    @classmethod
    def from_error_type(cls, error_type: str) -> "ErrorCode | None":
        try:
            return cls(error_type)
        except ValueError:
            return None


class GatewayError(Exception):
    status_code: int = 500
    error_type: str = "internal_error"
    code: ErrorCode | None = None

    def __init__(
        self,
        message: str,
        *,
        details: Any = None,
        retry_after: int | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.retry_after = retry_after
        self.extra = dict(extra or {})

    def to_body(self) -> dict[str, Any]:
        body = make_error_body(
            status_code=self.status_code,
            message=self.message,
            error_type=self.error_type,
            retry_after=self.retry_after,
            code=self.code,
        )
        if self.details is not None:
            body["error"]["details"] = self.details
        body.update(self.extra)
        return body


class Unauthenticated(GatewayError):
    status_code = 401
    error_type = "authentication_error"
    code = ErrorCode.UNAUTHENTICATED


class Forbidden(GatewayError):
    status_code = 403
    error_type = "permission_error"
    code = ErrorCode.FORBIDDEN


class CallerNotFound(GatewayError):
    status_code = 404
    error_type = "not_found"
    code = ErrorCode.CALLER_NOT_FOUND


class RecordNotFound(GatewayError):
    status_code = 404
    error_type = "not_found"
    code = ErrorCode.NOT_FOUND


class Conflict(GatewayError):
    status_code = 409
    error_type = "conflict"
    code = ErrorCode.CONFLICT


class MalformedRequest(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"
    code = ErrorCode.MALFORMED_REQUEST


class TierIneligible(GatewayError):
    status_code = 402
    error_type = "payment_required"
    code = ErrorCode.TIER_INELIGIBLE


class QuotaExceeded(GatewayError):
    status_code = 429
    error_type = "rate_limit"
    code = ErrorCode.QUOTA_EXCEEDED


class ProviderUnconfigured(GatewayError):
    status_code = 503
    error_type = "service_unavailable"
    code = ErrorCode.PROVIDER_UNCONFIGURED


class UpstreamError(GatewayError):
    status_code = 502
    error_type = "provider_error"
    code = ErrorCode.UPSTREAM_ERROR

    def __init__(self, message: str, *, upstream_status: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.upstream_status = upstream_status


class UpstreamTimeout(UpstreamError):
    status_code = 504
    error_type = "provider_timeout"
    code = ErrorCode.UPSTREAM_TIMEOUT


def make_error_body(
    *,
    status_code: int,
    message: str,
    error_type: str,
    retry_after: int | None = None,
    code: "ErrorCode | str | None" = None,
) -> dict[str, Any]:
    if isinstance(code, ErrorCode):
        resolved_code = code.value
    elif code is not None:
        resolved_code = str(code)
    else:
        member = ErrorCode.from_error_type(error_type)
        resolved_code = member.value if member is not None else error_type
    payload: dict[str, Any] = {
        "message": message,
        "type": error_type,
        "code": resolved_code,
        "status": status_code,
    }
    if retry_after is not None:
        payload["retry_after"] = retry_after
    return {"error": payload}


def http_status_error_details(exc: httpx.HTTPStatusError) -> tuple[int | None, str]:
    status: int | None = None
    message: str | None = None
    response = exc.response
    if response is not None:
        status = response.status_code
        try:
            payload = response.json()
        except (ValueError, httpx.ResponseNotRead):
            payload = None
        if isinstance(payload, dict):
            error_field = payload.get("error")
            if isinstance(error_field, dict):
                error_message = error_field.get("message")
                if isinstance(error_message, str) and error_message:
                    message = error_message
            if message is None:
                nested_message = payload.get("message")
                if isinstance(nested_message, str) and nested_message:
                    message = nested_message
        if message is None:
            try:
                text = response.text
            except httpx.ResponseNotRead:
                text = ""
            if text:
                message = text
        if message is None:
            reason = response.reason_phrase
            if reason:
                message = reason
    if message is None:
        message = str(exc)
    return status, message


def retry_after_seconds(response: httpx.Response | None) -> int | None:
    if response is None:
        return None
    header = response.headers.get("Retry-After")
    if not header:
        return None
    value = header.strip()
    if not value:
        return None
    if value.isdigit():
        return max(int(value), 0)
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    delta = (parsed - datetime.now(timezone.utc)).total_seconds()
    return max(int(delta), 0)


def upstream_error_from_exception(exc: Exception) -> UpstreamError:
    if isinstance(exc, UpstreamError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamTimeout("upstream provider timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        status, message = http_status_error_details(exc)
        return UpstreamError(
            message,
            upstream_status=status,
            retry_after=retry_after_seconds(exc.response),
        )
    if isinstance(exc, httpx.HTTPError):
        return UpstreamError(str(exc) or "upstream transport error")
    return UpstreamError(str(exc) or "provider error")
