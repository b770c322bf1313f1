import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import unquote_plus, urlencode, urlsplit, urlunsplit

import httpx
import xmltodict
from xml.parsers.expat import ExpatError

from .exceptions import CasAuthenticationFailure, MalformedResponseError, TransportError

logger = logging.getLogger(__name__)

# The only query parameter allowed to survive in the service URL sent to serviceValidate.
NEXT_URL_PARAM = "nextUrl"


@dataclass
class ServiceValidation:
    user: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    pgt_iou: Optional[str] = None


def build_service_url(request_url: str) -> str:
    """
    Canonical service URL for ticket validation.
    Keeps scheme, host and path; drops every query parameter except nextUrl.
    The CAS server string-compares this with the service it saw at login time.
    """
    parts = urlsplit(request_url)
    # nextUrl is kept byte for byte as the browser sent it
    kept = [pair for pair in parts.query.split("&") if unquote_plus(pair.split("=", 1)[0]) == NEXT_URL_PARAM]
    query = kept[0] if kept else ""
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, ""))


def _head(value):
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _text(value) -> Optional[str]:
    value = _head(value)
    if isinstance(value, dict):
        value = value.get("#text")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _strip_prefix(key: str) -> str:
    return key.split(":", 1)[1] if ":" in key else key


def parse_service_response(xml) -> ServiceValidation:
    """
    Classify a serviceValidate body.
    Failure is checked before success, so a body carrying both is a failure.
    """
    try:
        data = xmltodict.parse(xml)
    except (ExpatError, ValueError) as e:
        raise MalformedResponseError("Badly formatted response") from e

    if not isinstance(data, dict) or "cas:serviceResponse" not in data:
        raise MalformedResponseError("Badly formatted response")
    service_response = data["cas:serviceResponse"]
    if not isinstance(service_response, dict):
        # Empty or text-only envelope: neither branch present
        service_response = {}

    failure = _head(service_response.get("cas:authenticationFailure"))
    if failure is not None:
        code = failure.get("@code") if isinstance(failure, dict) else None
        reason = _text(failure) or code
        if reason:
            raise CasAuthenticationFailure(reason, code=code)

    success = _head(service_response.get("cas:authenticationSuccess"))
    if isinstance(success, dict):
        user = _text(success.get("cas:user"))
        if user:
            attributes = success.get("cas:attributes") or {}
            if not isinstance(attributes, dict):
                attributes = {}
            return ServiceValidation(
                user=user,
                attributes={_strip_prefix(k): v for k, v in attributes.items() if not k.startswith("@")},
                pgt_iou=_text(success.get("cas:proxyGrantingTicket")),
            )

    raise MalformedResponseError("No username found")


class CASClient:
    def __init__(self, server_url: str, timeout: float = 10.0, proxy_callback_url: str = None):
        self.server_url = server_url.rstrip('/')
        self.timeout = timeout
        self.proxy_callback_url = proxy_callback_url

    def _endpoint(self, path: str, params: dict) -> str:
        # Any query string already on the CAS base URL is dropped
        parts = urlsplit(self.server_url)
        path = f"{parts.path.rstrip('/')}/{path}"
        return urlunsplit((parts.scheme, parts.netloc, path, urlencode(params), ""))

    def get_login_url(self, service_url: str, gateway: bool = False) -> str:
        """
        Generate the CAS login URL with the service parameter.
        With gateway=True the CAS server never shows a login form.
        """
        params = {'gateway': 'true', 'service': service_url} if gateway else {'service': service_url}
        return self._endpoint("login", params)

    def get_logout_url(self, service_url: str = None) -> str:
        """
        Generate the CAS logout URL.
        """
        params = {'service': service_url} if service_url else {}
        return self._endpoint("logout", params)

    def get_validate_url(self, ticket: str, service_url: str) -> str:
        params = {
            'ticket': ticket,
            'service': build_service_url(service_url),
        }
        if self.proxy_callback_url:
            params['pgtUrl'] = self.proxy_callback_url
        return self._endpoint("serviceValidate", params)

    async def validate_ticket(self, ticket: str, service_url: str) -> ServiceValidation:
        """
        Validate the Service Ticket (ST) against the CAS server.
        Uses /serviceValidate (CAS 2.0). One attempt only, retrying is up to the caller.
        Raises TransportError, MalformedResponseError or CasAuthenticationFailure.
        """
        validate_url = self.get_validate_url(ticket, service_url)
        logger.debug("Validating ticket %s via %s", ticket, validate_url)

        async with httpx.AsyncClient() as client:
            try:
                response = await client.get(validate_url, timeout=self.timeout)
            except httpx.HTTPError as e:
                logger.error("CAS validation request failed: %r", e)
                raise TransportError(f"CAS validation request failed: {e!r}") from e

        if response.status_code != 200:
            logger.error("CAS validation failed: HTTP %s", response.status_code)
            raise TransportError(f"CAS validation failed: HTTP {response.status_code}")

        try:
            result = parse_service_response(response.content)
        except CasAuthenticationFailure as e:
            logger.warning("CAS auth failure for ticket %s: %s", ticket, e)
            raise
        except MalformedResponseError as e:
            logger.error("Unusable CAS response for ticket %s: %s", ticket, e)
            raise

        logger.debug("Ticket %s belongs to %s", ticket, result.user)
        return result
