class CouponError(Exception):
    pass


class CouponUnavailableError(CouponError):
    pass


class CouponReservedError(CouponError):
    pass


class CouponExpiredError(CouponError):
    pass


class CouponWrongCourseError(CouponError):
    pass


class CouponWrongOwnerError(CouponError):
    pass
