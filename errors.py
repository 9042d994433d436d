class FinanceError(Exception):
    """Business-rule failure carrying the HTTP status the API should answer with."""

    status = 500

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = int(status)

    def to_dict(self) -> dict:
        return {"status": self.status, "message": self.message}


class ValidationError(FinanceError):
    status = 400


class NotFoundError(FinanceError):
    status = 404


class ConflictError(FinanceError):
    # Settled competência / duplicate payment; answered as 400 like validation.
    status = 400
