class CommissionError(Exception):
    pass


class CommissionInputError(CommissionError):
    pass
