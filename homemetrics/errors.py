"""Exception hierarchy for the ingestion daemon.

Per-message errors (extraction, mailbox, store) are caught by the stream
processor and folded into the batch report.  Configuration errors and
credential exhaustion propagate up to the scheduler.
"""

from __future__ import annotations


class HomeMetricsError(Exception):
    """Base class for every error raised by ``homemetrics``."""


# ----------------------------------------------------------------------
# Extraction
# ----------------------------------------------------------------------


class ExtractionError(HomeMetricsError):
    """Raw content could not be turned into readings."""


class UnsupportedFormatError(ExtractionError):
    """The content kind of an attachment could not be determined."""


class NoDataError(ExtractionError):
    """No well-formed row was found in an attachment."""


class NoMetricsFoundError(ExtractionError):
    """None of the pool metric patterns matched."""


class MalformedValueError(ExtractionError):
    """A value or a whole document is syntactically invalid."""


class AmbiguousSensorNameError(ExtractionError):
    """The attachment file name matches no known sensor naming convention."""

    def __init__(self, filename: str) -> None:
        super().__init__(f"Cannot derive a sensor name from {filename!r}")
        self.filename = filename


# ----------------------------------------------------------------------
# Mailbox
# ----------------------------------------------------------------------


class MailboxError(HomeMetricsError):
    """A mailbox provider call failed."""


class MessageNotFoundError(MailboxError):
    pass


class RateLimitedError(MailboxError):
    pass


class AuthExpiredError(MailboxError):
    """The provider rejected the current credentials."""


class TransientMailboxError(MailboxError):
    """Network hiccup, timeout or 5xx; safe to retry."""


class CredentialsExhaustedError(MailboxError):
    """Credentials are still rejected after a renewal attempt.

    The operator has to re-authorize the application.
    """


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------


class StoreError(HomeMetricsError):
    """A reading store call failed."""


class ConnectionLostError(StoreError):
    pass


class ConstraintViolationError(StoreError):
    pass


# ----------------------------------------------------------------------
# Configuration / labels
# ----------------------------------------------------------------------


class ConfigError(HomeMetricsError):
    """Invalid or incomplete configuration."""


class LabelNotFoundError(ConfigError):
    def __init__(self, label_name: str) -> None:
        super().__init__(f"Label {label_name!r} does not exist in the mailbox")
        self.label_name = label_name


class InvalidScheduleError(ConfigError):
    pass


class LabelCacheError(HomeMetricsError):
    """Fetching the label list from the mailbox failed."""


class InvalidTransitionError(HomeMetricsError):
    """A message was moved to a state its current state cannot reach."""
