class CASError(Exception):
    """Base class for everything that can go wrong talking to the CAS server."""


class ConfigurationError(CASError, ValueError):
    """Raised when a strategy is constructed with invalid options."""


class TransportError(CASError):
    """Network failure, timeout or non-200 answer from serviceValidate."""


class MalformedResponseError(CASError):
    """The validation response is not a usable CAS envelope."""


class CasAuthenticationFailure(CASError):
    """The CAS server explicitly rejected the ticket."""

    def __init__(self, reason: str, code: str = None):
        super().__init__(reason)
        self.reason = reason
        self.code = code
