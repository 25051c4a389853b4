"""Error taxonomy for checkout and webhook processing.

Every failure that leaves the checkout orchestrator or the webhook
reconciler is one of these classes. Each carries the HTTP status the API
answers with, a stable machine-readable code, and whether the caller may
retry the same request.
"""


class CheckoutBrokerError(Exception):
    status_code = 500
    code = "internal_error"
    retryable = False

    def __init__(self, message=None, **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self):
        payload = {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        payload.update(
            {k: v for k, v in self.details.items() if v is not None}
        )
        return payload


# ── Client errors ──

class ValidationError(CheckoutBrokerError):
    status_code = 400
    code = "validation_error"


class SubjectRequired(CheckoutBrokerError):
    status_code = 401
    code = "subject_required"


class CheckoutConflict(CheckoutBrokerError):
    """The idempotency key is already bound to an order that cannot be reused.

    Clients should back off for ``retry_after`` seconds (the rest of the
    current bucket) instead of retrying immediately.
    """

    status_code = 409
    code = "checkout_conflict"

    @property
    def retry_after(self):
        return self.details.get("retry_after")


class OrderNotFound(CheckoutBrokerError):
    status_code = 404
    code = "order_not_found"


class InvalidTransition(CheckoutBrokerError):
    status_code = 409
    code = "invalid_transition"


# ── Gateway errors ──

class GatewayUnavailable(CheckoutBrokerError):
    """Network, timeout, rate-limit or 5xx failure talking to Stripe."""

    status_code = 503
    code = "gateway_unavailable"
    retryable = True


class GatewayRejected(CheckoutBrokerError):
    """Stripe refused the request (bad price, bad customer data, ...)."""

    status_code = 502
    code = "gateway_rejected"


# ── Webhook errors ──

class InvalidSignature(CheckoutBrokerError):
    status_code = 400
    code = "invalid_signature"


class MalformedPayload(CheckoutBrokerError):
    status_code = 400
    code = "malformed_payload"


# ── Store errors ──

class StoreUnavailable(CheckoutBrokerError):
    status_code = 503
    code = "store_unavailable"
    retryable = True


class DuplicateOrderId(CheckoutBrokerError):
    code = "duplicate_order_id"
    retryable = True


class ClaimSubjectMismatch(CheckoutBrokerError):
    code = "claim_subject_mismatch"
