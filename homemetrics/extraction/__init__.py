"""Turn attachment and body content into typed readings."""

from .common import html_to_text
from .pool import (
    ORP_OPTIMAL_RANGE,
    PH_OPTIMAL_RANGE,
    describe_pool_reading,
    extract_pool_metrics,
    pool_alerts,
)
from .sensor import (
    ContentKind,
    detect_content_kind,
    extract_sensor_readings,
    sensor_name_from_filename,
)

# Attachments worth handing to the sensor extractor.
DATA_FILE_EXTENSIONS = (".csv", ".tsv", ".json", ".txt", ".xml", ".xlsx", ".xls")


def is_data_attachment(filename: str) -> bool:
    return filename.lower().endswith(DATA_FILE_EXTENSIONS)


__all__ = [
    "DATA_FILE_EXTENSIONS",
    "ORP_OPTIMAL_RANGE",
    "PH_OPTIMAL_RANGE",
    "ContentKind",
    "describe_pool_reading",
    "detect_content_kind",
    "extract_pool_metrics",
    "extract_sensor_readings",
    "html_to_text",
    "is_data_attachment",
    "pool_alerts",
    "sensor_name_from_filename",
]
