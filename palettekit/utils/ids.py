"""
palettekit Extraction ID Utilities
Generate unique extraction IDs for log correlation.
"""
import uuid
from datetime import datetime


def generate_extraction_id(prefix: str = "ext") -> str:
    """
    Generate a unique extraction ID for tracking.

    Args:
        prefix: Short tag placed in front of the ID (strategy name, "ext", ...)

    Returns:
        Unique extraction ID string
    """
    timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
    short_uuid = str(uuid.uuid4())[:8]
    return f"{prefix}-{timestamp}-{short_uuid}"


def extract_timestamp_from_extraction_id(extraction_id: str) -> str:
    """
    Extract timestamp from extraction ID.

    Args:
        extraction_id: Extraction ID string

    Returns:
        Timestamp string or empty if not found
    """
    parts = extraction_id.split("-")
    if len(parts) >= 3 and parts[1].isdigit():
        return parts[1]
    return ""
