class SecurityError(Exception):
    """Base class for errors raised by the security core."""


class ConfigurationError(SecurityError, RuntimeError):
    """
    Fatal misconfiguration: missing/short secret key, unusable session
    storage, missing user or role store. Raised immediately, never deferred.
    """


class ValidationError(SecurityError, ValueError):
    """A caller passed a value the core refuses to operate on."""
