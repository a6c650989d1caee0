from typing import Any, Dict, Optional


class StorefrontError(Exception):
    """
    Base class for every error raised by the order and payment core.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable error identifier
        details: Additional context for support diagnosis (never secrets)
    """

    error_code = "STOREFRONT_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "success": False,
            "error_code": self.error_code,
            "error": self.message,
            "details": self.details
        }


class OrderNotFound(StorefrontError):
    error_code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found", {"order_id": order_id})


class ReturnNotFound(StorefrontError):
    error_code = "RETURN_NOT_FOUND"

    def __init__(self, return_id: str):
        super().__init__(f"Return request {return_id} not found", {"return_id": return_id})


class PermissionDenied(StorefrontError):
    error_code = "PERMISSION_DENIED"


class OrderValidationError(StorefrontError):
    """Checkout input rejected before any order is written."""

    error_code = "ORDER_INVALID"


class InvalidTransition(StorefrontError):
    """
    Requested status change is not legal from the current state.

    Never retried automatically; the order is left untouched.
    """

    error_code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, reason: Optional[str] = None):
        message = f"Cannot move from '{current}' to '{target}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, {"current": current, "target": target})
        self.current = current
        self.target = target


class ConcurrentModification(StorefrontError):
    """Conditional update lost the race; re-read the order and retry."""

    error_code = "CONCURRENT_MODIFICATION"

    def __init__(self, order_id: str, expected_status: str, expected_version: int):
        super().__init__(
            f"Order {order_id} changed since it was read "
            f"(expected status '{expected_status}', version {expected_version})",
            {"order_id": order_id, "expected_status": expected_status,
             "expected_version": expected_version}
        )


class GatewayError(StorefrontError):
    """
    Failure reported by, or while talking to, an external payment processor.

    Carries the payment method and external reference so a support ticket can
    be traced, but never credentials or raw webhook signatures.
    """

    error_code = "GATEWAY_ERROR"

    def __init__(self, message: str, method: str, reference: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        context = {"method": method, "external_reference": reference}
        context.update(details or {})
        super().__init__(message, context)
        self.method = method
        self.reference = reference


class GatewayUnavailable(GatewayError):
    """Transient processor or network failure; the same call may be retried."""

    error_code = "GATEWAY_UNAVAILABLE"


class CaptureError(GatewayError):
    error_code = "CAPTURE_FAILED"


class RefundError(GatewayError):
    error_code = "REFUND_FAILED"


class PaymentExpired(StorefrontError):
    error_code = "PAYMENT_EXPIRED"

    def __init__(self, order_id: str, reference: Optional[str] = None):
        super().__init__(
            f"Payment for order {order_id} expired before it was confirmed",
            {"order_id": order_id, "external_reference": reference}
        )


class ReturnNotEligible(StorefrontError):
    error_code = "RETURN_NOT_ELIGIBLE"


class WebhookVerificationError(StorefrontError):
    error_code = "WEBHOOK_REJECTED"
