import logging
from typing import Callable

from starlette.requests import Request

from .cas_client import CASClient
from .exceptions import ConfigurationError
from .strategy import CASStrategy, Outcome, Redirect, Success

logger = logging.getLogger(__name__)

ATTEMPTS_KEY = "gatewayAttempts"


class GatewayStrategy(CASStrategy):
    """
    CAS gateway login: silently asks the CAS server whether the visitor
    already has an SSO session.

    Every ticket-less request bumps the session counter and redirects to
    <cas>/login?gateway=true. Once the counter has reached max_attempts the
    visitor gets the anonymous identity instead. The counter is left at
    max_attempts; the session gate resets it when it grants access.
    A request carrying a ticket resets the counter and validates the ticket.
    """

    name = "cas-gateway"

    def __init__(
        self,
        cas_url: str,
        verify: Callable,
        max_attempts: int = 2,
        anonymous: str = "anonymous-user",
        client: CASClient = None,
        timeout: float = 10.0,
        proxy_callback_url: str = None,
    ):
        super().__init__(cas_url, verify, client=client, timeout=timeout, proxy_callback_url=proxy_callback_url)
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            raise ConfigurationError("GatewayStrategy requires a positive number for max attempts")
        if not isinstance(anonymous, str) or not anonymous:
            raise ConfigurationError("GatewayStrategy requires a fallback username for anonymous users")
        self.max_attempts = max_attempts
        self.anonymous = anonymous

    async def authenticate(self, request: Request) -> Outcome:
        session = request.session
        service_url = str(request.url)
        ticket = request.query_params.get("ticket")

        if ticket:
            session[ATTEMPTS_KEY] = 0
            return await self.validate(ticket, service_url)

        attempts = session.get(ATTEMPTS_KEY) or 0
        if attempts >= self.max_attempts:
            logger.debug("Gateway attempts exhausted (%s), continuing as %s", attempts, self.anonymous)
            return Success(self.anonymous)

        session[ATTEMPTS_KEY] = attempts + 1
        login_url = self.client.get_login_url(service_url, gateway=True)
        logger.debug("Gateway attempt %s of %s, redirecting to %s", attempts + 1, self.max_attempts, login_url)
        return Redirect(login_url)
