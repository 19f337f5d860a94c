from typing import Any, Dict, Optional


class BillingError(ValueError):
    code = "bad_request"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"message": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class NotFound(BillingError):
    code = "not_found"
    status_code = 404


class InvalidRole(BillingError):
    code = "invalid_role"


class InvalidRequest(BillingError):
    code = "invalid_request"


class AlreadyActive(BillingError):
    code = "already_active"


class PackageMismatch(BillingError):
    code = "package_mismatch"


class Forbidden(BillingError):
    code = "forbidden"
    status_code = 403


class EntitlementDenied(BillingError):
    status_code = 403


class NoSubscription(EntitlementDenied):
    code = "no_subscription"


class Expired(EntitlementDenied):
    code = "expired"


class PaymentRequired(EntitlementDenied):
    code = "payment_required"


class LimitReached(EntitlementDenied):
    code = "limit_reached"


DENIALS = {cls.code: cls for cls in (NoSubscription, Expired, PaymentRequired, LimitReached)}
