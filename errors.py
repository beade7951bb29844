class LnurlProxyError(Exception):
    status_code = 500
    default_reason = "Internal server error"

    def __init__(
        self,
        reason: str | None = None,
        *,
        procedure: str | None = None,
        identity: str | None = None,
    ) -> None:
        self.reason = reason or self.default_reason
        self.procedure = procedure
        self.identity = identity
        super().__init__(self.reason)


class InvalidIdentity(LnurlProxyError):
    status_code = 400
    default_reason = "Invalid identifier"


class InvalidAmount(LnurlProxyError):
    status_code = 400
    default_reason = "Invalid amount parameter"


class AmountOutOfRange(InvalidAmount):
    default_reason = "Amount out of range"


class ConnectionFailed(LnurlProxyError):
    status_code = 404
    default_reason = "Could not connect to the payment server"


class MalformedRemoteResponse(LnurlProxyError):
    status_code = 502
    default_reason = "Payment server returned an unexpected response"


class RemoteUnavailable(LnurlProxyError):
    status_code = 502
    default_reason = "Payment server is unavailable"


class RemoteTimeout(RemoteUnavailable):
    status_code = 504
    default_reason = "Payment server did not respond in time"


class RemoteToolError(LnurlProxyError):
    status_code = 502
    default_reason = "Payment server rejected the request"


# Raised by the transport and session layers, classified by the invoker.


class TransportError(Exception):
    pass

