class ConfirmationError(Exception):
    pass


class MissingCorrelationError(ConfirmationError):
    pass


class UnknownEnrollmentError(ConfirmationError):
    pass
