"""Errors raised while fetching and checking out images."""


class ContainerImageError(Exception):
    """Base exception for all container-image errors."""


class ProtocolError(ContainerImageError):
    """Raised when the registry answers outside of the distribution protocol."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.body = body


class AuthenticationError(ProtocolError):
    """Raised when the registry rejects the bearer token."""


class IntegrityError(ContainerImageError):
    """Raised when downloaded content does not match its descriptor."""


class ParseError(ContainerImageError):
    """Raised when a token, manifest, reference or platform cannot be parsed."""


class CacheError(ContainerImageError):
    """Raised when the on-disk cache cannot be read or written."""


class FilesystemError(ContainerImageError):
    """Raised when a layer cannot be extracted."""


class Cancelled(ContainerImageError):
    """Raised inside a task when a sibling task already failed."""
