import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

from starlette.requests import Request

from .cas_client import CASClient
from .exceptions import CASError, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class Identity:
    """What the CAS server told us about the visitor, handed to the verify callback."""
    status: bool
    user: str
    ticket: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    pgt_iou: Optional[str] = None


# Outcomes of one authentication attempt

@dataclass
class Success:
    user: Any
    info: Optional[dict] = None


@dataclass
class Fail:
    info: Optional[dict] = None


@dataclass
class Error:
    error: Exception


@dataclass
class Redirect:
    url: str


Outcome = Union[Success, Fail, Error, Redirect]


class CASStrategy:
    """
    Shared part of the CAS strategies: validate a ticket, then let the
    application's verify callback decide what the identity is worth.

    verify(identity) returns (user, info), plain or as a coroutine.
    A None user is a fail outcome; an exception is an error outcome.
    """

    name = "cas"

    def __init__(
        self,
        cas_url: str,
        verify: Callable,
        client: CASClient = None,
        timeout: float = 10.0,
        proxy_callback_url: str = None,
    ):
        if not isinstance(cas_url, str) or not cas_url.strip():
            raise ConfigurationError(f"{type(self).__name__} requires a CAS URL")
        if not callable(verify):
            raise ConfigurationError(f"{type(self).__name__} requires a verify callback")
        self.cas_url = cas_url
        self.verify = verify
        self.client = client or CASClient(cas_url, timeout=timeout, proxy_callback_url=proxy_callback_url)

    async def authenticate(self, request: Request) -> Outcome:
        raise NotImplementedError

    async def validate(self, ticket: str, service_url: str) -> Outcome:
        """validate -> parse -> verify, stopping at the first error."""
        try:
            result = await self.client.validate_ticket(ticket, service_url)
        except CASError as e:
            return Error(e)

        identity = Identity(
            status=True,
            user=result.user,
            ticket=ticket,
            attributes=result.attributes,
            pgt_iou=result.pgt_iou,
        )
        try:
            verified = self.verify(identity)
            if inspect.isawaitable(verified):
                verified = await verified
            user, info = verified
        except Exception as e:
            logger.exception("verify callback failed for %s", identity.user)
            return Error(e)

        if not user:
            logger.warning("CAS user %s rejected by the application", identity.user)
            return Fail(info)

        if identity.pgt_iou:
            info = {**(info or {}), "pgt_iou": identity.pgt_iou}
        return Success(user, info)


class LoginStrategy(CASStrategy):
    """Strict CAS login: always sends the visitor to the login form when there is no ticket."""

    async def authenticate(self, request: Request) -> Outcome:
        service_url = str(request.url)
        ticket = request.query_params.get("ticket")
        if not ticket:
            login_url = self.client.get_login_url(service_url)
            logger.debug("No ticket, redirecting to %s", login_url)
            return Redirect(login_url)
        return await self.validate(ticket, service_url)
