from typing import Dict, Optional


class ShopError(Exception):
    """Base error rendered to clients as ``{"message": ...}``."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, object]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(ShopError):
    status_code = 400


class AuthenticationError(ShopError):
    status_code = 401


class Forbidden(ShopError):
    status_code = 403


class NotFound(ShopError):
    status_code = 404


class ConflictError(ShopError):
    status_code = 409


class InternalError(ShopError):
    status_code = 500


class NotificationError(Exception):
    """Raised by a mailer when a message could not be delivered."""
