"""
Input validation helpers
"""
import re
from datetime import datetime, date
from typing import Any, Optional, Tuple

SOURCE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_.:-]+$')


def validate_source_id(source_id: Any) -> Tuple[bool, Optional[str]]:
    """
    Validate a content source identifier.

    Returns:
        (is_valid, error_message)
    """
    if not source_id:
        return False, 'source id must not be empty'

    if not isinstance(source_id, str):
        return False, 'source id must be a string'

    source_id = source_id.strip()

    if len(source_id) > 64:
        return False, 'source id must not exceed 64 characters'

    if not SOURCE_ID_PATTERN.match(source_id):
        return False, 'source id may only contain letters, digits, "_", ".", ":" and "-"'

    return True, None


def validate_priority(priority: Any) -> Tuple[bool, Optional[str], int]:
    """
    Validate a task priority (1-10, default 5).

    Returns:
        (is_valid, error_message, cleaned_priority)
    """
    if priority is None or priority == '':
        return True, None, 5

    try:
        value = int(priority)
    except (TypeError, ValueError):
        return False, 'priority must be an integer', 0

    if value < 1 or value > 10:
        return False, 'priority must be between 1 and 10', 0

    return True, None, value


def parse_date(value: Any) -> Optional[date]:
    """
    Parse YYYY-MM-DD into a date.

    Raises:
        ValueError: if the value is not a valid date
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value).strip(), '%Y-%m-%d').date()
