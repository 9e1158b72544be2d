"""
Error taxonomy for the latest-mail function

Invocation-level errors (configuration, connection, mailbox, search and
partial failure) abort the request with a 500. Per-message errors (fetch,
parse) are recovered by dropping the message.
"""


class MailFunctionError(Exception):
    """Base class for every error raised by this package"""


class ConfigurationError(MailFunctionError):
    """Missing credentials or invalid settings; never retried"""


class ImapConnectionError(MailFunctionError, ConnectionError):
    """Connect or login handshake failed or hit its own timeout"""


class ImapTimeoutError(MailFunctionError, TimeoutError):
    """The end-to-end connection timeout elapsed first"""


class MailboxError(MailFunctionError):
    """The inbox could not be opened"""


class SearchError(MailFunctionError):
    """Enumerating the mailbox failed"""


class FetchError(MailFunctionError):
    """One message could not be fetched"""

    def __init__(self, identifier: int, reason: str):
        super().__init__(f"Fetch of message {identifier} failed: {reason}")
        self.identifier = identifier
        self.reason = reason


class FetchTimeoutError(FetchError):
    """One message did not arrive within its fetch timeout"""


class PartialFailureError(MailFunctionError):
    """The mailbox has messages but none could be retrieved"""
