"""
Custom exception hierarchy for Cast Magnet Link.
Provides specific exception types for better error handling and debugging.
"""


class CastMagnetLinkError(Exception):
    """Base exception for all Cast Magnet Link errors."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


# Configuration errors
class ConfigurationError(CastMagnetLinkError):
    """Raised when there's a configuration problem."""

    pass


class MissingCredentialsError(ConfigurationError):
    """Raised when required credentials are missing."""

    def __init__(self, missing: list[str]):
        super().__init__(
            f"Missing required environment variables: {', '.join(missing)}"
        )
        self.missing = missing


# Upstream errors
class UpstreamUnavailable(CastMagnetLinkError):
    """Raised when an upstream API is unreachable or answers with a non-2xx status."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        body: str | None = None,
        error_code: int | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.body = body
        self.error_code = error_code


class RealDebridError(UpstreamUnavailable):
    """Raised when a Real-Debrid API call fails."""

    pass


class CastedLinksError(UpstreamUnavailable):
    """Raised when a Debrid Media Manager casted-links call fails."""

    pass


# Pipeline errors
class ResolutionError(CastMagnetLinkError):
    """Raised when a torrent cannot be turned into a streamable link."""

    def __init__(self, message: str, status: str | None = None, torrent_id: str | None = None):
        super().__init__(message)
        self.status = status
        self.torrent_id = torrent_id


class NoLinksAvailable(ResolutionError):
    """Raised when a torrent session ends without a usable link."""

    pass


# Virtual directory errors
class MalformedIdentifier(CastMagnetLinkError):
    """Raised when a synthetic filename does not carry its hash and IMDb id."""

    def __init__(self, filename: str, message: str | None = None):
        super().__init__(
            message or "Invalid filename format - missing hash or imdbId encoding"
        )
        self.filename = filename


class EntryNotFound(CastMagnetLinkError):
    """Raised when a cache or listing lookup misses."""

    def __init__(self, key: str, message: str | None = None):
        super().__init__(message or f"Not found: {key}")
        self.key = key


# Validation errors
class ValidationError(CastMagnetLinkError):
    """Raised when input validation fails."""

    pass


# Persistence errors
class PersistenceError(CastMagnetLinkError):
    """Base exception for link store errors."""

    pass
