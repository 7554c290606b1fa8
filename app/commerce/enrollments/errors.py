class EnrollmentError(Exception):
    pass


class DuplicateEnrollmentError(EnrollmentError):
    pass


class EnrollmentNotFoundError(EnrollmentError):
    pass


class EnrollmentStateError(EnrollmentError):
    pass
