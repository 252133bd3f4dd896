"""Overtime calculator.

Hours are banded by period type and converted to paid-hours-equivalent:

    bonus_hours = worked_hours * (rate_multiplier - 100) / 100
    paid_hours  = worked_hours + bonus_hours

When hours qualify for several bands (Sunday night work, for example) the
band with the lowest ``precedence`` number takes all the hours. Bands are
only stacked when the winning band lists the other one in
``additive_with``; each stacked band then contributes its own bonus on the
same hours. Worked hours are attributed to the winning band only, so totals
never double count time.
"""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal

from paie_engine.calculators.types import (
    ZERO,
    OvertimeBandResult,
    OvertimeRateSpec,
    OvertimeResult,
    OvertimeSegment,
    PeriodType,
    round_xof,
)
from paie_engine.exceptions import ConfigurationError, PolicyViolationError, ValidationError

HUNDRED = Decimal("100")


class OvertimeCalculator:
    """Converts banded overtime hours into paid hours and pay."""

    def __init__(self, rates: dict[PeriodType, OvertimeRateSpec]):
        self.rates = rates

    @staticmethod
    def bonus_hours(worked_hours: Decimal, rate_multiplier: Decimal) -> Decimal:
        return worked_hours * (rate_multiplier - HUNDRED) / HUNDRED

    def apply_overrides(
        self, overrides: dict[PeriodType, Decimal] | None
    ) -> dict[PeriodType, OvertimeRateSpec]:
        """Return the rate table with caller overrides applied.

        Raises:
            PolicyViolationError: Override of a locked rate, or below the
                legal minimum.
        """
        table = dict(self.rates)
        for period_type, multiplier in (overrides or {}).items():
            rate = table.get(period_type)
            if rate is None:
                raise ConfigurationError(f"No overtime rate for period type '{period_type.value}'")
            if rate.locked:
                raise PolicyViolationError(
                    "OvertimeRate",
                    period_type.value,
                    "rate is locked by collective agreement",
                )
            if multiplier == rate.rate_multiplier:
                continue
            if multiplier < rate.legal_minimum:
                raise PolicyViolationError(
                    "OvertimeRate",
                    period_type.value,
                    f"multiplier {multiplier} is below legal minimum {rate.legal_minimum}",
                )
            table[period_type] = OvertimeRateSpec(
                id=rate.id,
                period_type=rate.period_type,
                rate_multiplier=multiplier,
                legal_minimum=rate.legal_minimum,
                locked=rate.locked,
                precedence=rate.precedence,
                additive_with=rate.additive_with,
            )
        return table

    def resolve_bands(
        self, segment: OvertimeSegment, table: dict[PeriodType, OvertimeRateSpec]
    ) -> tuple[OvertimeRateSpec, list[OvertimeRateSpec]]:
        """Pick the winning band for a segment and any bands stacked on it."""
        if not segment.period_types:
            raise ValidationError("Overtime segment has no period type")
        candidates = []
        for period_type in segment.period_types:
            rate = table.get(period_type)
            if rate is None:
                raise ConfigurationError(f"No overtime rate for period type '{period_type.value}'")
            candidates.append(rate)

        candidates.sort(key=lambda r: (r.precedence, r.period_type.value))
        winner = candidates[0]
        stacked = [r for r in candidates[1:] if r.period_type in winner.additive_with]
        return winner, stacked

    def calculate(
        self,
        segments: list[OvertimeSegment],
        hourly_rate: Decimal = ZERO,
        overrides: dict[PeriodType, Decimal] | None = None,
    ) -> OvertimeResult:
        """Band the segments and price them at ``hourly_rate``."""
        table = self.apply_overrides(overrides)
        worked: dict[PeriodType, Decimal] = defaultdict(lambda: ZERO)
        bonus: dict[PeriodType, Decimal] = defaultdict(lambda: ZERO)

        for segment in segments:
            if segment.hours < 0:
                raise ValidationError(f"Negative overtime hours: {segment.hours}")
            winner, stacked = self.resolve_bands(segment, table)
            worked[winner.period_type] += segment.hours
            bonus[winner.period_type] += self.bonus_hours(segment.hours, winner.rate_multiplier)
            for extra in stacked:
                bonus[extra.period_type] += self.bonus_hours(segment.hours, extra.rate_multiplier)
                worked.setdefault(extra.period_type, ZERO)

        result = OvertimeResult()
        for period_type in sorted(worked, key=lambda p: (table[p].precedence, p.value)):
            paid = worked[period_type] + bonus[period_type]
            result.bands.append(
                OvertimeBandResult(
                    period_type=period_type,
                    worked_hours=worked[period_type],
                    bonus_hours=bonus[period_type],
                    paid_hours=paid,
                    rate_multiplier=table[period_type].rate_multiplier,
                    amount=round_xof(paid * hourly_rate),
                )
            )
        return result
