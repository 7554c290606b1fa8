from __future__ import annotations

import re
import secrets
from datetime import datetime

_COUPON_WHITESPACE_PATTERN = re.compile(r"\s+")
_COURSE_SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
_EMAIL_PATTERN = re.compile(
    r"^[a-z0-9!#$%&'*+/=?^_`{|}~-]+(?:\.[a-z0-9!#$%&'*+/=?^_`{|}~-]+)*"
    r"@(?:[a-z0-9](?:[a-z0-9-]*[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$"
)


def normalize_coupon_code(raw_code: str) -> str:
    return _COUPON_WHITESPACE_PATTERN.sub("", raw_code.strip().upper())


def normalize_email(raw_email: str) -> str:
    return raw_email.strip().lower()


def is_valid_email(email: str) -> bool:
    return _EMAIL_PATTERN.match(normalize_email(email)) is not None


def is_valid_course_slug(course_id: str) -> bool:
    return _COURSE_SLUG_PATTERN.match(course_id.strip()) is not None


def build_free_payment_id(now_utc: datetime) -> str:
    return f"free_{int(now_utc.timestamp() * 1000)}_{secrets.token_hex(4)}"
