"""Error taxonomy for the note push sync pipeline."""


class SyncError(Exception):
    """Base class for all sync pipeline errors."""
    pass


class ConfigurationError(SyncError):
    """Token or target document missing; the user must fix the settings."""
    pass


class InvalidSaltError(ConfigurationError):
    """Salt is absent or shorter than the required 48 characters."""
    pass


class AuthError(SyncError):
    """Backend rejected the access token (HTTP 401)."""
    pass


class NetworkError(SyncError):
    """Transient transport or server failure; retried on the next tick."""
    pass


class ServerError(SyncError):
    """Backend reported an error with a message meant for the user."""
    pass


class DecryptError(SyncError):
    """A payload could not be decrypted with the configured salt."""
    pass


class UploadError(SyncError):
    """The asset store refused or failed an upload."""
    pass


class DocumentStoreError(SyncError):
    """The document store failed to create or append content."""
    pass
