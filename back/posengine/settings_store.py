"""
Business settings that staff edit at runtime.

Rows in `system_setting` are plain strings. They are read on every call and
turned into a typed, immutable snapshot; anything missing or malformed falls
back to the process defaults from `settings.py`.
"""

import logging
import math
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .models import SystemSetting
from .settings import settings

logger = logging.getLogger(__name__)

TAX_RATE_KEY = "tax_rate"
INVENTORY_TRACKING_KEY = "inventory_tracking_enabled"

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class BusinessSettings:
    tax_rate_percent: Decimal
    inventory_tracking_enabled: bool = False


def parse_tax_rate(raw: str | None) -> Decimal | None:
    """Parse a percentage like "11" or "12.5". Returns None when unusable."""
    if raw is None:
        return None
    try:
        value = float(raw.strip())
    except (AttributeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value) or value < 0:
        return None
    return Decimal(str(value))


def parse_bool(raw: str | None) -> bool:
    if raw is None:
        return False
    return raw.strip().lower() in _TRUE_VALUES


def load_business_settings(session: Session) -> BusinessSettings:
    default_rate = settings.default_tax_rate
    try:
        rows = session.exec(
            select(SystemSetting).where(
                SystemSetting.setting_key.in_([TAX_RATE_KEY, INVENTORY_TRACKING_KEY])
            )
        ).all()
    except SQLAlchemyError as e:
        session.rollback()
        logger.warning(f"Could not read business settings, using defaults: {e}")
        return BusinessSettings(tax_rate_percent=default_rate)

    values = {row.setting_key: row.setting_value for row in rows}

    tax_rate = parse_tax_rate(values.get(TAX_RATE_KEY))
    if tax_rate is None:
        if TAX_RATE_KEY in values:
            logger.warning(
                f"Unusable tax_rate setting {values[TAX_RATE_KEY]!r}, falling back to {default_rate}%"
            )
        tax_rate = default_rate

    return BusinessSettings(
        tax_rate_percent=tax_rate,
        inventory_tracking_enabled=parse_bool(values.get(INVENTORY_TRACKING_KEY)),
    )
