from casgate.core.cas_client import CASClient, build_service_url, parse_service_response
from casgate.core.exceptions import CasAuthenticationFailure, MalformedResponseError, TransportError
from unittest.mock import MagicMock, patch
from urllib.parse import urlsplit, parse_qs
import httpx
import pytest

SUCCESS_XML = b"""<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'>
    <cas:authenticationSuccess>
        <cas:user>abc123</cas:user>
    </cas:authenticationSuccess>
</cas:serviceResponse>"""

def test_cas_client_urls():
    client = CASClient("https://cas.example.com")

    login_url = client.get_login_url("http://service.com")
    assert login_url == "https://cas.example.com/login?service=http%3A%2F%2Fservice.com"

    gateway_url = client.get_login_url("http://host/protected", gateway=True)
    assert gateway_url == "https://cas.example.com/login?gateway=true&service=http%3A%2F%2Fhost%2Fprotected"

    logout_url = client.get_logout_url("http://service.com")
    assert logout_url == "https://cas.example.com/logout?service=http%3A%2F%2Fservice.com"
    assert client.get_logout_url() == "https://cas.example.com/logout"

def test_cas_client_keeps_context_path_and_drops_query():
    client = CASClient("https://sso.example.com/cas/?locale=en")
    url = client.get_login_url("http://host/", gateway=True)
    parts = urlsplit(url)
    assert parts.path == "/cas/login"
    assert parse_qs(parts.query) == {"gateway": ["true"], "service": ["http://host/"]}

def test_build_service_url_strips_everything_but_next_url():
    assert build_service_url("http://host/auth/gateway?nextUrl=%2Fnews&ticket=ST-1&foo=bar") == \
        "http://host/auth/gateway?nextUrl=%2Fnews"
    assert build_service_url("http://host/protected?ticket=ST-1") == "http://host/protected"
    assert build_service_url("https://host:8443/a/b") == "https://host:8443/a/b"
    # nextUrl is not re-encoded, CAS compares it byte for byte
    assert build_service_url("http://host/g?ticket=ST-1&nextUrl=/a%20b") == "http://host/g?nextUrl=/a%20b"

def test_validate_url_never_carries_ticket_in_service():
    client = CASClient("https://cas.example.com")
    url = client.get_validate_url("ST-9", "http://host/protected?ticket=ST-9&nextUrl=/x")
    query = parse_qs(urlsplit(url).query)
    assert urlsplit(url).path == "/serviceValidate"
    assert query["ticket"] == ["ST-9"]
    assert query["service"] == ["http://host/protected?nextUrl=/x"]
    assert "pgtUrl" not in query

def test_validate_url_with_proxy_callback():
    client = CASClient("https://cas.example.com", proxy_callback_url="https://app.example.com/pgtCallback")
    query = parse_qs(urlsplit(client.get_validate_url("ST-9", "http://host/")).query)
    assert query["pgtUrl"] == ["https://app.example.com/pgtCallback"]

def test_parse_success():
    assert parse_service_response(SUCCESS_XML).user == "abc123"

def test_parse_success_with_attributes_and_pgt():
    result = parse_service_response(b"""<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'>
        <cas:authenticationSuccess>
            <cas:user>testuser</cas:user>
            <cas:attributes>
                <cas:mail>test@example.com</cas:mail>
            </cas:attributes>
            <cas:proxyGrantingTicket>PGTIOU-84678-8a9d</cas:proxyGrantingTicket>
        </cas:authenticationSuccess>
    </cas:serviceResponse>""")
    assert result.user == "testuser"
    assert result.attributes == {"mail": "test@example.com"}
    assert result.pgt_iou == "PGTIOU-84678-8a9d"

def test_parse_failure():
    with pytest.raises(CasAuthenticationFailure) as exc:
        parse_service_response(b"""<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'>
            <cas:authenticationFailure>INVALID_TICKET</cas:authenticationFailure>
        </cas:serviceResponse>""")
    assert str(exc.value) == "INVALID_TICKET"

def test_parse_failure_with_code():
    with pytest.raises(CasAuthenticationFailure) as exc:
        parse_service_response(b"""<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'>
            <cas:authenticationFailure code="INVALID_TICKET">
                Ticket ST-1856339 not recognized
            </cas:authenticationFailure>
        </cas:serviceResponse>""")
    assert str(exc.value) == "Ticket ST-1856339 not recognized"
    assert exc.value.code == "INVALID_TICKET"

def test_parse_failure_wins_over_success():
    with pytest.raises(CasAuthenticationFailure):
        parse_service_response(b"""<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'>
            <cas:authenticationSuccess><cas:user>abc123</cas:user></cas:authenticationSuccess>
            <cas:authenticationFailure>INVALID_SERVICE</cas:authenticationFailure>
        </cas:serviceResponse>""")

@pytest.mark.parametrize("body", [
    b"<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'></cas:serviceResponse>",
    b"<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'><cas:authenticationSuccess/></cas:serviceResponse>",
    b"<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'><cas:other>x</cas:other></cas:serviceResponse>",
    # Bare envelopes without attributes come back from the parser as None
    b"<cas:serviceResponse></cas:serviceResponse>",
    b"<cas:serviceResponse/>",
])
def test_parse_no_username(body):
    with pytest.raises(MalformedResponseError) as exc:
        parse_service_response(body)
    assert str(exc.value) == "No username found"

@pytest.mark.parametrize("body", [b"", b"<html><body>Maintenance</body></html>", b"not xml at all"])
def test_parse_badly_formatted(body):
    with pytest.raises(MalformedResponseError) as exc:
        parse_service_response(body)
    assert str(exc.value) == "Badly formatted response"

@pytest.mark.asyncio
async def test_cas_validate_ticket_success():
    client = CASClient("https://cas.example.com")

    with patch("httpx.AsyncClient.get") as mock_get:
        mock_get.return_value = MagicMock(status_code=200, content=SUCCESS_XML)

        result = await client.validate_ticket("ST-123", "http://service.com/?ticket=ST-123")
        assert result.user == "abc123"

        called_url = mock_get.call_args.args[0]
        assert parse_qs(urlsplit(called_url).query)["service"] == ["http://service.com/"]
        assert mock_get.call_args.kwargs["timeout"] == 10.0

@pytest.mark.asyncio
async def test_cas_validate_ticket_fail():
    client = CASClient("https://cas.example.com")

    with patch("httpx.AsyncClient.get") as mock_get:
        mock_get.return_value = MagicMock(
            status_code=200,
            content=b"""<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'>
                <cas:authenticationFailure code="INVALID_TICKET">INVALID_TICKET</cas:authenticationFailure>
            </cas:serviceResponse>"""
        )

        with pytest.raises(CasAuthenticationFailure) as exc:
            await client.validate_ticket("ST-123", "http://service.com")
        assert str(exc.value) == "INVALID_TICKET"

@pytest.mark.asyncio
async def test_cas_validate_ticket_timeout():
    client = CASClient("https://cas.example.com", timeout=0.5)

    with patch("httpx.AsyncClient.get", side_effect=httpx.ReadTimeout("timed out")) as mock_get:
        with pytest.raises(TransportError):
            await client.validate_ticket("ST-123", "http://service.com")
        # No internal retry
        assert mock_get.call_count == 1

@pytest.mark.asyncio
async def test_cas_validate_ticket_http_error_status():
    client = CASClient("https://cas.example.com")

    with patch("httpx.AsyncClient.get") as mock_get:
        mock_get.return_value = MagicMock(status_code=500, content=b"oops")
        with pytest.raises(TransportError):
            await client.validate_ticket("ST-123", "http://service.com")
