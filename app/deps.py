"""Shared FastAPI dependencies."""

from fastapi import Depends, Header

from app.core.config import get_settings
from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.security import is_admin_email
from app.services.catalog import BeanieCatalog, Catalog
from app.services.gateway import RazorpayGateway
from app.services.verification import PaymentVerifier


def get_catalog() -> Catalog:
    return BeanieCatalog()


def get_gateway() -> RazorpayGateway:
    return RazorpayGateway.from_settings()


def get_verifier(gateway: RazorpayGateway = Depends(get_gateway)) -> PaymentVerifier:
    return PaymentVerifier(gateway, get_settings().razorpay_key_secret)


async def require_admin(x_user_email: str | None = Header(default=None, alias="X-User-Email")) -> str:
    """Dependency: caller's email must match ADMIN_EMAIL. Stand-in until sessions are wired here."""
    if not x_user_email:
        raise UnauthorizedError("Not authenticated")
    if not is_admin_email(x_user_email, get_settings().admin_email):
        raise ForbiddenError("Admin only")
    return x_user_email.strip().lower()
