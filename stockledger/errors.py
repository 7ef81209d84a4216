# Domain exceptions for the stock ledger
# Each exception carries the HTTP status the route layer should answer with


class LedgerError(Exception):
    """
    Base class for every error the ledger reports back to a client.
    The message is shown to the user as-is in the JSON error body.
    """
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'error': self.message}


class ValidationError(LedgerError):
    """Request data is missing or malformed."""
    status_code = 400


class InsufficientStock(LedgerError):
    """
    A stock change would take a product below zero.
    Raised for oversized sales and for reverting purchases whose units were already sold.
    """
    status_code = 400

    def __init__(self, message, product=None, requested=None, available=None):
        super().__init__(message)
        self.product = product
        self.requested = requested
        self.available = available

    def to_dict(self):
        data = super().to_dict()
        if self.product is not None:
            data['product'] = self.product
            data['requested'] = self.requested
            data['available'] = self.available
        return data


class NotFoundError(LedgerError):
    status_code = 404


class ConflictError(LedgerError):
    """Uniqueness clash or a delete blocked by referencing records."""
    status_code = 409
