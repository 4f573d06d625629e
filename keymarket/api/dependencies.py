"""
FastAPI Dependencies - Authentication, authorization and rate limiting.

NO DICTIONARIES - All dependencies return typed objects.

Identity is issued elsewhere; this service only verifies the Identity
Service's bearer tokens and the internal shared secret.
"""

import hmac

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from keymarket.config import settings
from keymarket.exceptions import RateLimitExceededError
from keymarket.models.api import UserRole
from keymarket.models.domain import Principal
from keymarket.services.notifier import Notifier, get_notifier
from keymarket.services.payment_gateway import PaymentGateway, get_payment_gateway
from keymarket.services.rate_limiter import RateLimiter, intake_limiter

logger = get_logger(__name__)

# Bearer token scheme for Identity Service tokens
bearer_scheme = HTTPBearer(auto_error=False)


def decode_identity_token(token: str) -> Principal | None:
    """Verify an Identity Service token and map its claims to a Principal."""
    if not settings.identity_jwt_secret:
        logger.warning("identity_token_rejected_no_secret")
        return None
    try:
        payload = jwt.decode(
            token,
            settings.identity_jwt_secret,
            algorithms=[settings.identity_jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        logger.warning("identity_token_expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning("identity_token_invalid", error=str(e))
        return None

    subject = payload.get("sub")
    role = payload.get("role")
    if not subject or role not in {r.value for r in UserRole}:
        logger.warning("identity_token_missing_claims", has_sub=bool(subject), role=role)
        return None
    return Principal(subject=str(subject), role=str(role), email=payload.get("email"))


async def get_optional_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal | None:
    """
    Principal for routes open to guests.

    No header means guest; a header that fails verification is a 401.
    """
    if credentials is None:
        return None
    principal = decode_identity_token(credentials.credentials)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


async def get_principal(
    principal: Principal | None = Depends(get_optional_principal),
) -> Principal:
    """Principal for routes that require a signed-in caller."""
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


async def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    """Allow only the admin role."""
    if principal.role != UserRole.ADMIN.value:
        logger.warning("admin_access_denied", subject=principal.subject, role=principal.role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return principal


async def require_seller(principal: Principal = Depends(get_principal)) -> Principal:
    """Allow only sellers with an Identity Service user id."""
    if principal.role != UserRole.SELLER.value or principal.user_id is None:
        logger.warning("seller_access_denied", subject=principal.subject, role=principal.role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Seller role required",
        )
    return principal


async def require_internal_api_key(
    x_api_key: str | None = Header(None, description="Internal shared secret"),
) -> str:
    """
    Verify the shared secret of internal callers before anything else runs.

    Raises:
        HTTPException 401 if missing or wrong
    """
    if (
        not x_api_key
        or not settings.internal_api_key
        or not hmac.compare_digest(x_api_key.encode("utf-8"), settings.internal_api_key.encode("utf-8"))
    ):
        logger.warning("internal_api_key_rejected", provided=bool(x_api_key))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
    return x_api_key


def get_intake_limiter() -> RateLimiter:
    """Limiter shared by purchase intake and refund requests."""
    return intake_limiter


async def rate_limit(
    request: Request,
    principal: Principal | None = Depends(get_optional_principal),
    limiter: RateLimiter = Depends(get_intake_limiter),
) -> None:
    """Charge one request against the caller's budget (subject, else client IP)."""
    if principal is not None:
        key = f"user:{principal.subject}"
    else:
        key = f"ip:{request.client.host if request.client else 'unknown'}"
    try:
        limiter.hit(key)
    except RateLimitExceededError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests, please try again later",
            headers={"Retry-After": str(exc.retry_after)},
        ) from exc


def get_gateway() -> PaymentGateway:
    """Configured payment gateway."""
    return get_payment_gateway()


def get_event_notifier() -> Notifier:
    """Configured notifier."""
    return get_notifier()
