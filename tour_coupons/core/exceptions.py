class CouponError(Exception):
    """Base de errores del servicio de cupones. `code` viaja como detail HTTP."""

    code = "COUPON_ERROR"

    def __init__(self, message: str = None):
        self.message = message or self.code
        super().__init__(self.message)


class CouponNotFound(CouponError):
    code = "COUPON_NOT_FOUND"


class CouponCodeTaken(CouponError):
    code = "COUPON_CODE_TAKEN"


class CouponValidationFailed(CouponError):
    code = "COUPON_INVALID_DATA"

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class CouponNotEligible(CouponError):
    code = "COUPON_NOT_ELIGIBLE"

    def __init__(self, reasons):
        self.reasons = list(reasons)
        super().__init__(", ".join(self.reasons))


class CouponAlreadyApplied(CouponError):
    code = "COUPON_ALREADY_APPLIED"


class UsageLimitReached(CouponError):
    code = "COUPON_MAX_USES_REACHED"


class UsageNotFound(CouponError):
    code = "USAGE_NOT_FOUND"


class UsageNotRefundable(CouponError):
    code = "USAGE_NOT_REFUNDABLE"
