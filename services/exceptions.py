"""
Billing Exceptions

Custom exception classes for subscription and metering errors.
Routers translate these into the normalized error envelope; the HTTP
status for each kind lives on the class.
"""
from typing import Optional


class BillingError(Exception):
    """
    Base exception for all billing-related errors.

    All billing exceptions inherit from this class, allowing for
    broad exception handling when needed.
    """

    status_code = 400

    def __init__(self, message: str, code: str = "BILLING_ERROR", details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details
        }


class NotFoundError(BillingError):
    status_code = 404


class PlanNotFound(NotFoundError):
    def __init__(self, plan_ref: str):
        super().__init__(
            message=f"Plan not found: {plan_ref}",
            code="PLAN_NOT_FOUND",
            details={'plan': plan_ref}
        )
        self.plan_ref = plan_ref


class SubscriptionNotFound(NotFoundError):
    def __init__(self, subscription_id: str):
        super().__init__(
            message=f"Subscription not found: {subscription_id}",
            code="SUBSCRIPTION_NOT_FOUND",
            details={'subscription_id': subscription_id}
        )
        self.subscription_id = subscription_id


class UserNotFound(NotFoundError):
    def __init__(self, user_id: str):
        super().__init__(
            message=f"User not found: {user_id}",
            code="USER_NOT_FOUND",
            details={'user_id': user_id}
        )
        self.user_id = user_id


class InvalidState(BillingError):
    """
    Raised when a transition is not allowed from the subscription's current state.

    Examples:
        - Reactivating after the period has already elapsed
        - Canceling an already-canceled subscription
    """

    status_code = 409

    def __init__(self, message: str, current_status: Optional[str] = None, **context):
        details = {'current_status': current_status}
        details.update(context)
        super().__init__(message=message, code="INVALID_STATE", details=details)
        self.current_status = current_status


class GatewayError(BillingError):
    """
    Raised when the payment gateway rejects a request or times out.
    """

    status_code = 502

    def __init__(self, message: str = "Payment gateway error", provider_error: str = None):
        super().__init__(
            message=message,
            code="GATEWAY_ERROR",
            details={'provider_error': provider_error} if provider_error else {}
        )
        self.provider_error = provider_error


class ConcurrencyConflict(BillingError):
    """
    The atomic check-and-increment lost a race. Callers should deny and
    ask the user to retry, not treat it as a server failure.
    """

    status_code = 429

    def __init__(self, message: str = "Concurrent usage update, please retry", code: str = "CONCURRENCY_CONFLICT",
                 details: dict = None):
        super().__init__(message=message, code=code, details=details)


class UsageLimitExceeded(ConcurrencyConflict):
    """
    Raised by UsageMeter.consume when the quota has no room left.

    Attributes:
        used: Units consumed in the current window
        limit: Quota for the window
    """

    def __init__(self, resource_type: str, used: int, limit: int):
        super().__init__(
            message=f"Usage limit reached for {resource_type} ({used}/{limit})",
            code="USAGE_LIMIT_EXCEEDED",
            details={
                'resource_type': resource_type,
                'used': used,
                'limit': limit,
                'remaining': max(0, limit - used)
            }
        )
        self.resource_type = resource_type
        self.used = used
        self.limit = limit


class WebhookError(BillingError):
    """
    Raised when a gateway callback cannot be verified or parsed.
    """

    def __init__(self, message: str = "Webhook processing error", event_type: str = None):
        super().__init__(
            message=message,
            code="WEBHOOK_ERROR",
            details={'event_type': event_type} if event_type else {}
        )
        self.event_type = event_type


class UnknownResourceType(BillingError):
    def __init__(self, resource_type: str):
        super().__init__(
            message=f"Unknown resource type: {resource_type}",
            code="UNKNOWN_RESOURCE_TYPE",
            details={'resource_type': resource_type}
        )
        self.resource_type = resource_type
