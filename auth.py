"""
auth.py
=======
Identity boundary.

Token signing and verification happen upstream. What arrives here is a
customer id with the token version it was issued under, or a guest id. A
customer whose stored token_version moved on (logout, password change) is
rejected as revoked before any service runs.
"""

import hmac
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

import models
from database import get_db
from errors import Forbidden, Unauthorized


@dataclass(frozen=True)
class Identity:
    customer_id: Optional[int] = None
    guest_id: Optional[str] = None

    def __post_init__(self):
        if (self.customer_id is None) == (self.guest_id is None):
            raise ValueError("Exactly one of customer_id or guest_id is required")

    @property
    def is_guest(self) -> bool:
        return self.guest_id is not None

    @property
    def key(self) -> str:
        return f"guest:{self.guest_id}" if self.is_guest else f"customer:{self.customer_id}"

    @classmethod
    def customer(cls, customer_id: int) -> "Identity":
        return cls(customer_id=customer_id)

    @classmethod
    def guest(cls, guest_id: str) -> "Identity":
        return cls(guest_id=guest_id)


def parse_guest_id(raw: str) -> str:
    try:
        parsed = uuid.UUID(raw)
    except (ValueError, AttributeError):
        raise Unauthorized("Invalid guest ID format", "INVALID_GUEST_ID")
    if parsed.version != 4:
        raise Unauthorized("Invalid guest ID format", "INVALID_GUEST_ID")
    return str(parsed)


def verify_customer(db: Session, customer_id: int, token_version: Optional[int]) -> models.Customer:
    customer = db.get(models.Customer, customer_id)
    if (
        customer is None
        or not customer.is_active
        or token_version is None
        or customer.token_version != token_version
    ):
        raise Unauthorized("Session has been revoked", "TOKEN_REVOKED")
    return customer


def get_identity(
    request: Request,
    x_customer_id: Optional[int] = Header(None),
    x_token_version: Optional[int] = Header(None),
    x_guest_id: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Identity:
    if x_customer_id is not None:
        verify_customer(db, x_customer_id, x_token_version)
        identity = Identity.customer(x_customer_id)
    elif x_guest_id:
        identity = Identity.guest(parse_guest_id(x_guest_id))
    else:
        raise Unauthorized("Customer ID or Guest ID required", "IDENTITY_REQUIRED")
    request.state.identity = identity
    return identity


def get_customer_identity(identity: Identity = Depends(get_identity)) -> Identity:
    if identity.is_guest:
        raise Unauthorized("Customer login required", "LOGIN_REQUIRED")
    return identity


def require_staff(request: Request, x_staff_key: Optional[str] = Header(None)) -> None:
    expected = request.app.state.settings.staff_api_key
    if not expected or not x_staff_key or not hmac.compare_digest(expected, x_staff_key):
        raise Forbidden("Staff access required", "STAFF_ONLY")
