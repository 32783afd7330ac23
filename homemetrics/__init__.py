"""HomeMetrics: mailbox-driven ingestion of home sensor readings."""

from .config import HomeMetricsConfig, StreamConfig
from .errors import HomeMetricsError
from .interface import MailboxClient, ReadingStore
from .models import (
    Attachment,
    BatchReport,
    MessageEnvelope,
    MessageOutcome,
    OutcomeKind,
    PoolReading,
    SensorReading,
)

__version__ = "0.1.0"

__all__ = [
    "Attachment",
    "BatchReport",
    "HomeMetricsConfig",
    "HomeMetricsError",
    "MailboxClient",
    "MessageEnvelope",
    "MessageOutcome",
    "OutcomeKind",
    "PoolReading",
    "ReadingStore",
    "SensorReading",
    "StreamConfig",
]
