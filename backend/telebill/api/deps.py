"""
API dependencies (admin auth, shared DI).

Admin auth:
- Reads the X-Admin-Token header
- Compares it against ADMIN_TOKEN from settings
"""
import hmac
from typing import Optional

from fastapi import Header, HTTPException, status

from telebill.core.config import settings
from telebill.services.payment_gateway import PaymentGateway, StripeGateway


def verify_admin(
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
) -> None:
    admin_token = (settings.ADMIN_TOKEN or "").strip()
    if not admin_token:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_TOKEN not configured",
        )
    if not x_admin_token or not hmac.compare_digest(x_admin_token, admin_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def get_gateway() -> PaymentGateway:
    return StripeGateway(settings.STRIPE_SECRET_KEY)
