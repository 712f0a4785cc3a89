class GatewayError(Exception):
    """Base class for everything the gateway client raises on purpose."""


class DiscoveryError(GatewayError):
    """The discovery endpoint could not be reached or returned no usable URL."""


class PayloadDecodeError(GatewayError):
    """An inbound frame could not be inflated, parsed or validated."""

    def __init__(self, message: str, raw: str | bytes | None = None):
        super().__init__(message)
        self.raw = raw
