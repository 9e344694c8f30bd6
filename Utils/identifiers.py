import re
from datetime import datetime, timezone

VISIBLE_ID_CHARS = 4
REPORT_NUMBER_DIGITS = 6

REPORT_PREFIXES = {
    "student": "STU",
    "staff": "STA",
}


def utcnow() -> datetime:
    """Naive UTC timestamp, the form MongoDB hands back on reads."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def mask_id_number(id_number, visible_chars: int = VISIBLE_ID_CHARS) -> str:
    """Replace all but the last ``visible_chars`` characters with ``*``.

    Values no longer than ``visible_chars`` are masked entirely so a short
    identifier is never shown in full.
    """
    if not id_number:
        return ""

    value = str(id_number)
    if len(value) <= visible_chars:
        return "*" * len(value)

    return "*" * (len(value) - visible_chars) + value[-visible_chars:]


def normalize_id_number(value) -> str:
    """Comparison form of an ID number: trimmed and upper-cased."""
    if value is None:
        return ""
    return str(value).strip().upper()


def format_report_number(id_type: str, sequence: int) -> str:
    prefix = REPORT_PREFIXES.get(id_type)
    if prefix is None:
        raise ValueError(f"Unknown ID type: {id_type}")
    if sequence < 1:
        raise ValueError("Report sequence must start at 1")

    return f"{prefix}{str(sequence).zfill(REPORT_NUMBER_DIGITS)}"


def format_phone_number(phone) -> str:
    """Normalise Kenyan phone numbers to +254 form, leave anything else alone."""
    if not phone:
        return ""

    digits = re.sub(r"\D", "", str(phone))

    if len(digits) == 9 and digits.startswith("7"):
        return f"+254{digits}"
    if len(digits) == 10 and digits.startswith("07"):
        return f"+254{digits[1:]}"
    if len(digits) > 10 and digits.startswith("254"):
        return f"+{digits}"

    return str(phone)


def calculate_recovery_rate(total: int, recovered: int) -> int:
    if not total:
        return 0
    return round((recovered / total) * 100)
