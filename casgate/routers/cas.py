import logging
from typing import Optional
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, RedirectResponse

from ..auth import (
    SESSION_USER_KEY, get_gateway_strategy, get_login_strategy, log_in,
    pgt_registry, raise_for_outcome,
)
from ..core.cas_client import CASClient
from ..core.config import Settings, get_settings
from ..core.gateway import ATTEMPTS_KEY, GatewayStrategy
from ..core.strategy import LoginStrategy

logger = logging.getLogger(__name__)

router = APIRouter()


def safe_next_url(next_url: Optional[str], settings: Settings) -> str:
    # Only local paths, never another host. Browsers treat a backslash like a slash.
    if not next_url or "\\" in next_url or not next_url.startswith("/") or next_url.startswith("//"):
        return settings.default_next_url
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return settings.default_next_url
    return next_url


@router.get("/auth/login")
async def cas_login(
    request: Request,
    strategy: LoginStrategy = Depends(get_login_strategy),
    settings: Settings = Depends(get_settings),
    nextUrl: Optional[str] = None,
):
    """
    Strict CAS login. CAS sends the visitor back here with a ticket.
    """
    outcome = await strategy.authenticate(request)
    raise_for_outcome(outcome)

    log_in(request, outcome)
    return RedirectResponse(url=safe_next_url(nextUrl, settings), status_code=302)


@router.get("/auth/gateway")
async def cas_gateway(
    request: Request,
    strategy: GatewayStrategy = Depends(get_gateway_strategy),
    settings: Settings = Depends(get_settings),
    nextUrl: Optional[str] = None,
):
    """
    Silent CAS login. Ends up at nextUrl either logged in or, once the
    gateway attempts are used up, as the anonymous user.
    """
    outcome = await strategy.authenticate(request)
    raise_for_outcome(outcome)

    if outcome.user != strategy.anonymous:
        log_in(request, outcome)
    return RedirectResponse(url=safe_next_url(nextUrl, settings), status_code=302)


@router.get("/auth/logout")
async def cas_logout(request: Request, settings: Settings = Depends(get_settings)):
    """
    Logout locally and from CAS.
    """
    user = request.session.pop(SESSION_USER_KEY, None)
    request.session.pop("pgtIou", None)
    request.session.pop(ATTEMPTS_KEY, None)
    logger.info("Logged out user %s", user)

    service_url = str(request.base_url)
    return RedirectResponse(url=CASClient(settings.cas_url).get_logout_url(service_url), status_code=302)


@router.get("/pgtCallback", response_class=PlainTextResponse)
async def pgt_callback(pgtIou: Optional[str] = None, pgtId: Optional[str] = None):
    """
    Proxy-granting-ticket delivery from the CAS server.
    CAS checks the URL without parameters first; that still gets a 200.
    """
    if pgtIou and pgtId:
        pgt_registry.record(pgtIou, pgtId)
        logger.info("Received PGT for IOU %s", pgtIou)
    else:
        logger.debug("pgtCallback without a ticket pair")
    return "OK"


@router.get("/auth/status")
async def cas_status(request: Request):
    """Diagnostics: where this session is in the CAS flow."""
    return {
        "user": request.session.get(SESSION_USER_KEY),
        ATTEMPTS_KEY: request.session.get(ATTEMPTS_KEY, 0),
    }
