"""
Discovery Errors

Only misuse (operating on a destroyed instance, holepunching without a
referrer) and explicit request failures raise. Transient DHT round failures
never become exceptions; they are reported through a session's
``update`` event instead.
"""


class DiscoveryError(Exception):
    """Base class for all discovery errors."""


class InvalidState(DiscoveryError):
    """Operation attempted on a destroyed registry or session."""

    def __init__(self, message: str = "Discovery instance is destroyed"):
        super().__init__(message)


class NoBootstrapNodes(DiscoveryError):
    def __init__(self, message: str = "No bootstrap nodes available"):
        super().__init__(message)


class AllBootstrapNodesFailed(DiscoveryError):
    def __init__(self, message: str = "All bootstrap nodes failed"):
        super().__init__(message)


class NotEnoughReplies(DiscoveryError):
    def __init__(self, message: str = "Not enough bootstrap nodes replied"):
        super().__init__(message)


class ReferrerRequired(DiscoveryError):
    def __init__(self, message: str = "Referrer needed to holepunch"):
        super().__init__(message)


class LookupFailed(DiscoveryError):
    def __init__(self, message: str = "Lookup failed"):
        super().__init__(message)
