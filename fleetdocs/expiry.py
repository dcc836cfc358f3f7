"""
Expiry classification for compliance documents.

A document is classified from its expiry date, its alert window and the
current instant. Both dates are reduced to UTC calendar dates before they are
compared, so the result does not depend on the server's local timezone or on
daylight saving transitions.

State flow:
    vigente -> por_vencer -> vencido
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, Optional, Union

from fleetdocs import settings

DateLike = Union[date, datetime]


class DocumentState(str, Enum):
    """Lifecycle state persisted for each document."""
    VIGENTE = "vigente"        # Current
    POR_VENCER = "por_vencer"  # Inside the alert window
    VENCIDO = "vencido"        # Expired (includes expiring today)


class DisplayTier(str, Enum):
    """Finer-grained tier for presentation only. Never persisted."""
    VIGENTE = "vigente"
    POR_VENCER = "por_vencer"
    URGENTE = "urgente"
    VENCIDO = "vencido"


# Listing order: most severe first
SEVERITY_RANK: Dict[DocumentState, int] = {
    DocumentState.VENCIDO: 1,
    DocumentState.POR_VENCER: 2,
    DocumentState.VIGENTE: 3,
}


def to_utc_date(value: DateLike) -> date:
    """Reduce a date or datetime to a UTC calendar date.

    Naive datetimes are taken to be UTC already.

    Example:
        >>> to_utc_date(datetime.fromisoformat("2025-03-30T23:30:00-03:00"))
        datetime.date(2025, 3, 31)
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    raise TypeError(f"Expected date or datetime, got {type(value).__name__}")


def days_remaining(expiry_date: DateLike, now: DateLike) -> int:
    """Whole calendar days from ``now`` until ``expiry_date`` (negative once past)."""
    return (to_utc_date(expiry_date) - to_utc_date(now)).days


def classify(expiry_date: DateLike, alert_window_days: int, now: DateLike) -> DocumentState:
    """Classify a document by expiry.

    Args:
        expiry_date: Expiry date of the document
        alert_window_days: Days before expiry at which the document is expiring soon
        now: Current instant

    Returns:
        VENCIDO when 0 or fewer days remain, POR_VENCER when the remaining days
        fit in the alert window, VIGENTE otherwise

    Raises:
        ValueError: If alert_window_days is negative

    Example:
        >>> classify(date(2025, 1, 31), 30, date(2025, 1, 1))
        <DocumentState.POR_VENCER: 'por_vencer'>
        >>> classify(date(2025, 1, 1), 30, date(2025, 1, 1))
        <DocumentState.VENCIDO: 'vencido'>
    """
    if alert_window_days < 0:
        raise ValueError(f"alert_window_days must be >= 0 (got {alert_window_days})")

    remaining = days_remaining(expiry_date, now)
    if remaining <= 0:
        return DocumentState.VENCIDO
    if remaining <= alert_window_days:
        return DocumentState.POR_VENCER
    return DocumentState.VIGENTE


def display_tier(remaining: int, alert_window_days: int) -> DisplayTier:
    """Presentation tier derived from the days remaining.

    Splits the expiring-soon band so documents a few days from expiry can be
    highlighted as urgent.
    """
    if remaining <= 0:
        return DisplayTier.VENCIDO
    if remaining <= min(settings.URGENT_THRESHOLD_DAYS, alert_window_days):
        return DisplayTier.URGENTE
    if remaining <= alert_window_days:
        return DisplayTier.POR_VENCER
    return DisplayTier.VIGENTE


def severity_rank(state: Optional[DocumentState]) -> int:
    """Sort key that lists expired documents first."""
    return SEVERITY_RANK.get(state, len(SEVERITY_RANK) + 1)
