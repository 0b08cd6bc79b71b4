"""
Domain errors raised by Gatewise services and mapped to HTTP status codes
by the API layer
"""


class GatewiseError(Exception):
    """Base class for service errors"""


class NotFoundError(GatewiseError):
    """A referenced session, gate, binding or suggestion does not exist"""


class StaleStateError(GatewiseError):
    """The target changed since it was read (merged, inactive, already reviewed)"""


class ThresholdValidationError(GatewiseError):
    """Rejected threshold update; stored configuration is unchanged"""


class InvalidTransitionError(GatewiseError):
    """Requested binding status change is not allowed"""
