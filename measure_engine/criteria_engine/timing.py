"""Timing expressions: free-text parsing and window resolution.

A resolved window is an inclusive date range; either bound may be open.
Windows are anchored on the measurement period or on a named index event
supplied with the patient. Calendar arithmetic uses ``dateutil.relativedelta``
so "10 years before end of Measurement Period" lands on the same calendar day.
"""

import math
import re
from datetime import date, timedelta
from typing import Dict, Optional, Tuple

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel

from measure_engine.criteria_engine.exceptions import EvaluationAmbiguityError
from measure_engine.models.enums import TimingOperator, TimingPosition, TimingUnit
from measure_engine.models.measure_schema import TimingExpression

MEASUREMENT_PERIOD = "Measurement Period"

# Longest phrases first so "starts during" wins over "during".
_OPERATOR_PHRASES = [
    ("starts during", TimingOperator.STARTS_DURING),
    ("ends during", TimingOperator.ENDS_DURING),
    ("starts before", TimingOperator.STARTS_BEFORE),
    ("starts after", TimingOperator.STARTS_AFTER),
    ("ends before", TimingOperator.ENDS_BEFORE),
    ("ends after", TimingOperator.ENDS_AFTER),
    ("overlaps", TimingOperator.OVERLAPS),
    ("within", TimingOperator.WITHIN),
    ("during", TimingOperator.DURING),
]

_QUANTITY = re.compile(r"(\d+)\s*(year|month|week|day|hour)s?\b", re.IGNORECASE)
_POSITION = re.compile(r"\b(before|after)\s+(start|end)\s+of\b", re.IGNORECASE)
_BEFORE_AFTER = re.compile(r"\b(before|after)\b", re.IGNORECASE)
_FILLER = re.compile(r"\b(or less|or more|of|the)\b", re.IGNORECASE)


class TimingWindow(BaseModel):
    """Inclusive date range; ``None`` bounds are open."""
    start: Optional[date] = None
    end: Optional[date] = None

    def contains(self, value: date) -> bool:
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value > self.end:
            return False
        return True

    def overlaps(self, start: date, end: Optional[date]) -> bool:
        end = end or start
        if self.start is not None and end < self.start:
            return False
        if self.end is not None and start > self.end:
            return False
        return True

    def describe(self) -> str:
        start = self.start.isoformat() if self.start else "-inf"
        end = self.end.isoformat() if self.end else "+inf"
        return f"{start} to {end}"


def parse_timing_expression(text: str) -> TimingExpression:
    """
    Parse free text such as "within 1 year" or
    "10 years or less before end of Measurement Period".

    The original text is kept as ``display_expression``.
    """
    raw = (text or "").strip()
    lowered = raw.lower()
    remainder = lowered

    operator = None
    for phrase, op in _OPERATOR_PHRASES:
        if re.search(rf"\b{phrase}\b", lowered):
            operator = op
            remainder = re.sub(rf"\b{phrase}\b", " ", remainder, count=1)
            break

    quantity = None
    unit = None
    quantity_match = _QUANTITY.search(lowered)
    if quantity_match:
        quantity = int(quantity_match.group(1))
        unit = TimingUnit(quantity_match.group(2).lower() + "s")
        remainder = _QUANTITY.sub(" ", remainder, count=1)

    position = None
    position_match = _POSITION.search(lowered)
    if position_match:
        position = TimingPosition(
            f"{position_match.group(1).lower()} {position_match.group(2).lower()} of"
        )
        remainder = _POSITION.sub(" ", remainder, count=1)

    if operator is None:
        if quantity is not None and position is not None:
            operator = TimingOperator.WITHIN
        else:
            before_after = _BEFORE_AFTER.search(remainder)
            if before_after:
                operator = TimingOperator(before_after.group(1).lower())
                remainder = _BEFORE_AFTER.sub(" ", remainder, count=1)
            else:
                operator = TimingOperator.DURING

    reference = _FILLER.sub(" ", remainder)
    reference = re.sub(r"\s+", " ", reference).strip(" \"'")
    if not reference or "measurement period" in reference:
        reference = MEASUREMENT_PERIOD
    else:
        # Keep the caller's casing for index event names.
        start = lowered.find(reference)
        if start >= 0:
            reference = raw[start:start + len(reference)]

    return TimingExpression(
        operator=operator,
        quantity=quantity,
        unit=unit,
        position=position,
        reference=reference,
        display_expression=raw,
    )


def _delta(quantity: Optional[int], unit: Optional[TimingUnit]) -> Optional[relativedelta]:
    if quantity is None or unit is None:
        return None
    if unit == TimingUnit.HOURS:
        # Facts carry dates only; round hours up to whole days.
        return relativedelta(days=math.ceil(quantity / 24))
    return relativedelta(**{unit.value: quantity})


def resolve_reference(
    reference: str,
    period_start: date,
    period_end: date,
    index_events: Optional[Dict[str, date]] = None,
) -> Tuple[date, date]:
    """Start and end of the reference point; raises EvaluationAmbiguityError if unknown."""
    normalized = (reference or "").strip().lower()
    if not normalized or "measurement period" in normalized:
        return period_start, period_end
    for name, event_date in (index_events or {}).items():
        if name.strip().lower() == normalized:
            return event_date, event_date
    raise EvaluationAmbiguityError(f"Index event '{reference}' not available for patient")


def resolve_timing_window(
    timing: Optional[TimingExpression],
    period_start: date,
    period_end: date,
    index_events: Optional[Dict[str, date]] = None,
) -> TimingWindow:
    """Resolve a timing expression to a concrete inclusive window."""
    if timing is None:
        return TimingWindow(start=period_start, end=period_end)

    ref_start, ref_end = resolve_reference(timing.reference, period_start, period_end, index_events)
    delta = _delta(timing.quantity, timing.unit)

    if timing.position is not None:
        anchor = ref_start if timing.position in (
            TimingPosition.BEFORE_START_OF, TimingPosition.AFTER_START_OF
        ) else ref_end
        # Before start / after end lie outside the reference, like BEFORE and AFTER;
        # before end / after start keep the anchor day, which is inside it.
        if timing.position == TimingPosition.BEFORE_START_OF:
            return TimingWindow(start=anchor - delta if delta else None, end=anchor - timedelta(days=1))
        if timing.position == TimingPosition.BEFORE_END_OF:
            return TimingWindow(start=anchor - delta if delta else None, end=anchor)
        if timing.position == TimingPosition.AFTER_END_OF:
            return TimingWindow(start=anchor + timedelta(days=1), end=anchor + delta if delta else None)
        return TimingWindow(start=anchor, end=anchor + delta if delta else None)

    op = timing.operator
    if op == TimingOperator.WITHIN:
        if delta is None:
            return TimingWindow(start=ref_start, end=ref_end)
        return TimingWindow(start=ref_start - delta, end=ref_end + delta)
    if op in (TimingOperator.BEFORE, TimingOperator.STARTS_BEFORE, TimingOperator.ENDS_BEFORE):
        return TimingWindow(
            start=ref_start - delta if delta else None,
            end=ref_start - timedelta(days=1),
        )
    if op in (TimingOperator.AFTER, TimingOperator.STARTS_AFTER, TimingOperator.ENDS_AFTER):
        return TimingWindow(
            start=ref_end + timedelta(days=1),
            end=ref_end + delta if delta else None,
        )
    return TimingWindow(start=ref_start, end=ref_end)
