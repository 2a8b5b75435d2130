"""Exceptions raised by the storefront API and its clients."""

from datetime import datetime
from typing import Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    pass


class InvalidRequestError(StorefrontError):
    """Raised when a request is well-formed JSON but cannot be acted on."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(StorefrontError):
    """Raised when a document id doesn't exist or is malformed."""

    def __init__(self, kind: str, doc_id: str):
        self.kind = kind
        self.doc_id = doc_id
        super().__init__(f"{kind} not found: {doc_id}")


class SoldOutError(StorefrontError):
    """Raised when an order or cart references products flagged sold out."""

    def __init__(self, titles: list[str]):
        self.titles = list(titles)
        super().__init__(
            "Cannot place order: the following products are sold out: "
            + ", ".join(self.titles)
        )


class AuthenticationError(StorefrontError):
    """Raised for a missing token or wrong credentials."""

    def __init__(self, message: str = "Invalid username or password"):
        super().__init__(message)


class InvalidTokenError(StorefrontError):
    """Raised when a bearer token is malformed, forged or expired."""

    def __init__(self, message: str = "Invalid token"):
        super().__init__(message)


class RegistrationClosedError(StorefrontError):
    """Raised when registering while an account already exists."""

    def __init__(self):
        super().__init__("Registration is disabled: an admin account already exists")


class LockedOutError(StorefrontError):
    """Raised while a lockout is in effect."""

    def __init__(self, locked_until: datetime, reason: Optional[str] = None):
        self.locked_until = locked_until
        self.reason = reason
        msg = f"Too many attempts. Locked until {locked_until.isoformat()}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class AssetHostError(StorefrontError):
    """Raised when the image host rejects an upload or deletion."""

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Image host {operation} failed: {detail}")
