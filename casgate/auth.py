import logging
from datetime import datetime, timezone
from functools import partial
from typing import Optional
from urllib.parse import urlencode

from fastapi import Depends, HTTPException, status, Request
from sqlmodel import Session, select

from .core.config import Settings, get_settings
from .core.exceptions import CASError, TransportError
from .core.gateway import ATTEMPTS_KEY, GatewayStrategy
from .core.pgt_registry import PGTRegistry
from .core.strategy import Error, Fail, Identity, LoginStrategy, Outcome, Redirect, Success
from .database import get_session
from .models import User

logger = logging.getLogger(__name__)

SESSION_USER_KEY = "user"

_settings = get_settings()
pgt_registry = PGTRegistry(ttl=_settings.pgt_ttl, max_entries=_settings.pgt_max_entries)


def verify_identity(session: Session, identity: Identity):
    """
    Application side of the CAS login: provision unknown users and turn
    away disabled accounts even when CAS vouches for them.
    """
    user = session.exec(select(User).where(User.cas_uid == identity.user)).first()
    if not user:
        user = User(
            cas_uid=identity.user,
            name=str(identity.attributes.get("displayName") or identity.user),
            email=str(identity.attributes.get("mail") or ""),
        )
        logger.info("Provisioning CAS user %s", identity.user)
    elif not user.is_active:
        return None, {"message": f"Account {identity.user} is disabled"}

    user.last_login = datetime.now(timezone.utc)
    session.add(user)
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(user)
    return user.cas_uid, {"user_id": user.id}


def get_gateway_strategy(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> GatewayStrategy:
    return GatewayStrategy(
        settings.cas_url,
        partial(verify_identity, session),
        max_attempts=settings.max_attempts,
        anonymous=settings.anonymous_user,
        timeout=settings.validate_timeout,
        proxy_callback_url=settings.proxy_callback_url,
    )


def get_login_strategy(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> LoginStrategy:
    return LoginStrategy(
        settings.cas_url,
        partial(verify_identity, session),
        timeout=settings.validate_timeout,
        proxy_callback_url=settings.proxy_callback_url,
    )


def check_configuration(settings: Settings):
    """
    Build both strategies once so a bad CAS setup stops the app at startup
    instead of failing on the first visitor. Raises ConfigurationError.
    """
    reject = lambda identity: (None, None)
    GatewayStrategy(
        settings.cas_url,
        reject,
        max_attempts=settings.max_attempts,
        anonymous=settings.anonymous_user,
    )
    LoginStrategy(settings.cas_url, reject)
    logger.info("CAS server %s, %s gateway attempts", settings.cas_url, settings.max_attempts)


def redirect_to(url: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_302_FOUND, detail="Redirecting", headers={"Location": url})


def raise_for_outcome(outcome: Outcome):
    """Turn anything but a Success into the matching HTTP error."""
    if isinstance(outcome, Redirect):
        raise redirect_to(outcome.url)
    if isinstance(outcome, Fail):
        message = (outcome.info or {}).get("message", "Not authorized for this resource")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=message)
    if isinstance(outcome, Error):
        if isinstance(outcome.error, TransportError):
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(outcome.error))
        if isinstance(outcome.error, CASError):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(outcome.error))
        # Application failures stay in the log
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Authentication error")


def log_in(request: Request, outcome: Success):
    request.session[SESSION_USER_KEY] = outcome.user
    pgt_iou = (outcome.info or {}).get("pgt_iou")
    if pgt_iou:
        request.session["pgtIou"] = pgt_iou
    logger.info("Logged in user %s", outcome.user)


def original_url(request: Request) -> str:
    url = request.url.path
    if request.url.query:
        url += "?" + request.url.query
    return url


def get_current_user_optional(request: Request, settings: Settings = Depends(get_settings)) -> Optional[str]:
    user = request.session.get(SESSION_USER_KEY)
    if not user or user == settings.anonymous_user:
        return None
    return user


def require_login(request: Request, user: Optional[str] = Depends(get_current_user_optional)) -> str:
    """
    Strict gate: a logged in user continues, everybody else goes to the CAS login.
    """
    if user:
        return user
    next_url = original_url(request)
    logger.debug("No user, redirecting to login with nextUrl %s", next_url)
    raise redirect_to("/auth/login?" + urlencode({"nextUrl": next_url}))


def require_gateway_login(request: Request, strategy: GatewayStrategy = Depends(get_gateway_strategy)) -> str:
    """
    Gateway gate: let known users through, try a silent CAS login for the
    rest and let them in anonymously once the gateway attempts are used up.
    """
    session = request.session
    if session.get(SESSION_USER_KEY) == strategy.anonymous:
        del session[SESSION_USER_KEY]

    if (session.get(ATTEMPTS_KEY) or 0) >= strategy.max_attempts:
        logger.debug("gatewayLogin: exhausted gateway attempts, allow access as anonymous user")
        # Reset before granting access so a later real login is not capped
        session[ATTEMPTS_KEY] = 0
        return strategy.anonymous

    user = session.get(SESSION_USER_KEY)
    if user:
        logger.debug("gatewayLogin: found user %s", user)
        return user

    logger.debug("gatewayLogin: no user, attempt gateway login")
    raise redirect_to("/auth/gateway?" + urlencode({"nextUrl": original_url(request)}))


async def gateway_user(
    request: Request,
    strategy: GatewayStrategy = Depends(get_gateway_strategy),
    user: Optional[str] = Depends(get_current_user_optional),
) -> str:
    """
    Run the gateway strategy on the current request itself.
    """
    if user:
        return user

    outcome = await strategy.authenticate(request)
    raise_for_outcome(outcome)

    if outcome.user == strategy.anonymous:
        request.session[ATTEMPTS_KEY] = 0
    else:
        log_in(request, outcome)
    return outcome.user
