class ThreatwatchError(Exception):
    """Base class for errors raised by threatwatch services."""


class UpstreamError(ThreatwatchError):
    """
    The network controller could not be reached, rejected the request,
    or answered with a payload we cannot use.
    """


class SettingsDecryptionError(ThreatwatchError):
    """An encrypted setting exists but cannot be decrypted with the configured key."""
