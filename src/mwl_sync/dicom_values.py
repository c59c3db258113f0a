"""
DICOM Value Representation encoders.

Turns native Python values into strings that satisfy the DA, TM, PN and
PatientSex (CS) value representations used by worklist items.
"""

import re
from datetime import date, datetime, time
from typing import Optional, Union

DateLike = Union[date, datetime, str]
TimeLike = Union[datetime, time, str]

_DA_RE = re.compile(r"^\d{8}$")
_TM_RE = re.compile(r"^\d{6}$")
_ISO_DATE_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_WHITESPACE_RE = re.compile(r"\s+")
_CARET_RUN_RE = re.compile(r"\^{2,}")


def is_dicom_date(value: Optional[str]) -> bool:
    """Return True when ``value`` is a valid YYYYMMDD calendar date."""
    if not value or not _DA_RE.match(value):
        return False
    try:
        datetime.strptime(value, "%Y%m%d")
    except ValueError:
        return False
    return True


def is_dicom_time(value: Optional[str]) -> bool:
    """Return True when ``value`` is a valid HHMMSS wall-clock time."""
    if not value or not _TM_RE.match(value):
        return False
    try:
        datetime.strptime(value, "%H%M%S")
    except ValueError:
        return False
    return True


def _to_local(value: datetime) -> datetime:
    # Aware datetimes are shifted to the facility's wall clock; naive ones
    # are already local.
    if value.tzinfo is not None:
        return value.astimezone()
    return value


def _parse_date_string(value: str) -> date:
    text = value.strip()
    if _DA_RE.match(text):
        return datetime.strptime(text, "%Y%m%d").date()
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return _to_local(parsed).date()


def encode_date(value: DateLike) -> str:
    """Encode a date as DICOM DA (``YYYYMMDD``).

    Args:
        value: ``date``, ``datetime`` or a string in ISO-8601 or YYYYMMDD form

    Returns:
        Eight digit, zero-padded date string in local time

    Raises:
        ValueError: If the value is not a valid date
    """
    if isinstance(value, datetime):
        day = _to_local(value).date()
    elif isinstance(value, date):
        day = value
    elif isinstance(value, str):
        try:
            day = _parse_date_string(value)
        except ValueError as e:
            raise ValueError(f"Invalid date value: {value!r}") from e
    else:
        raise ValueError(f"Invalid date value: {value!r}")

    return f"{day.year:04d}{day.month:02d}{day.day:02d}"


def encode_time(value: TimeLike) -> str:
    """Encode a time as DICOM TM (``HHMMSS``), dropping sub-second precision.

    Aware datetimes are converted to local time. A bare time carrying a UTC
    offset is rejected.

    Raises:
        ValueError: If the value is not a valid time
    """
    if isinstance(value, datetime):
        moment = _to_local(value).time()
    elif isinstance(value, time):
        moment = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            if _TM_RE.match(text):
                moment = datetime.strptime(text, "%H%M%S").time()
            elif _ISO_DATE_PREFIX_RE.match(text):
                moment = _to_local(datetime.fromisoformat(text.replace("Z", "+00:00"))).time()
            else:
                moment = time.fromisoformat(text)
        except ValueError as e:
            raise ValueError(f"Invalid time value: {value!r}") from e
    else:
        raise ValueError(f"Invalid time value: {value!r}")

    # Without a date the offset cannot be converted to local time
    if moment.tzinfo is not None:
        raise ValueError(f"Time with a UTC offset but no date: {value!r}")

    return f"{moment.hour:02d}{moment.minute:02d}{moment.second:02d}"


def encode_person_name(name: Optional[str]) -> str:
    """Encode a free-text name as a single-group DICOM PN value.

    Whitespace runs become a single ``^`` separator. This does not split the
    name into family/given/middle/prefix/suffix components; the whole string
    is kept as one component group, which is what the devices at this site
    expect.
    """
    if not name:
        return ""
    encoded = _WHITESPACE_RE.sub("^", name.strip())
    return _CARET_RUN_RE.sub("^", encoded).strip("^")


def encode_sex(raw: Optional[str]) -> str:
    """Map a free-text sex/gender value to ``M``, ``F`` or ``O``."""
    value = (raw or "").strip().lower()
    if value in ("male", "m"):
        return "M"
    if value in ("female", "f"):
        return "F"
    return "O"
