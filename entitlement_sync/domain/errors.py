from __future__ import annotations

from typing import Any, Protocol


class WebhookErrorLike(Protocol):
    @property
    def category(self) -> str: ...

    @property
    def retryable(self) -> bool: ...


class WebhookError(Exception):
    category = "webhook_error"
    retryable = False

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason or self.category


class RejectionError(WebhookError):
    """Sender could not be trusted: unknown or inactive installation, bad signature."""

    category = "rejected"


class UnknownSenderError(RejectionError):
    category = "unknown_sender"


class SignatureRejectedError(RejectionError):
    category = "signature_rejected"


class MalformedPayloadError(WebhookError):
    category = "malformed_payload"


class TransientError(WebhookError):
    category = "transient"
    retryable = True


def webhook_error_http_status(exc: WebhookErrorLike) -> int:
    if exc.category == "unknown_sender":
        return 400
    if exc.category in {"signature_rejected", "rejected"}:
        return 403
    if exc.category == "malformed_payload":
        return 422
    return 503 if exc.retryable else 500


def webhook_error_detail(*, exc: WebhookErrorLike, **context: Any) -> dict[str, Any]:
    detail = {
        "type": "webhook_error",
        "category": exc.category,
        "retryable": exc.retryable,
        "message": str(exc),
    }
    detail.update({key: value for key, value in context.items() if value is not None})
    return detail
