"""Error taxonomy shared by providers, exporters and the CLI."""


class MailbakError(Exception):
    """Base class for all mailbak errors."""


class MailConnectionError(MailbakError, ConnectionError):
    """Authentication or network failure while connecting."""


class NotConnectedError(MailbakError):
    """Operation attempted on a provider that is not connected."""

    def __init__(self, message: str = "Provider not connected. Call connect() first."):
        super().__init__(message)


class NotFoundError(MailbakError):
    """Requested message or folder does not exist."""


class ProviderError(MailbakError):
    """A provider-native operation failed.

    `description` holds the provider's own error text, unmodified.
    """

    def __init__(self, message: str, description: str | None = None):
        super().__init__(message)
        self.description = description if description is not None else message


class InvalidArgumentError(MailbakError, ValueError):
    """Caller passed something the operation cannot use (e.g. upload without raw)."""


class ParseError(MailbakError):
    """A single message could not be parsed."""
