# 📂 backend/hostbill/errors.py — service-layer errors
# -----------------------------------------------------------------------------
# Services raise these (ValueError subclasses, like the ledger helpers always
# did); main.py maps them onto JSON responses with the carried status code.
# Routes and auth helpers keep raising HTTPException directly.
# -----------------------------------------------------------------------------

from __future__ import annotations


class ServiceError(ValueError):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationFailed(ServiceError):
    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class DeliveryError(ServiceError):
    """Outbound e-mail could not be delivered."""
    status_code = 500
