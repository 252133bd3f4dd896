"""Côte d'Ivoire default policy tables.

Rates as published for 2024: CNPS retirement, family benefits, maternity
and work accident branches, CMU health coverage, ITS income tax with the
family reduction table, overtime multipliers from the labour code, ACP
accrual rules and the seniority allowance of the interprofessional
collective agreement.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from paie_engine.models import LeaveAccrualPolicy, OvertimeRate, PayrollPolicy, RateDefinition

logger = logging.getLogger(__name__)

COUNTRY_CODE = "CI"
DEFAULT_EFFECTIVE_FROM = date(2024, 1, 1)

CNPS_RETIREMENT_CEILING = Decimal("1647315")
CNPS_SMALL_BRANCH_CEILING = Decimal("70000")

ITS_BRACKETS = [
    {"min": "0", "max": "75000", "rate": "0"},
    {"min": "75000", "max": "240000", "rate": "0.16"},
    {"min": "240000", "max": "800000", "rate": "0.21"},
    {"min": "800000", "max": "2400000", "rate": "0.24"},
    {"min": "2400000", "max": "8000000", "rate": "0.28"},
    {"min": "8000000", "max": None, "rate": "0.32"},
]

ITS_FAMILY_DEDUCTIONS = {
    "1.0": "0",
    "1.5": "5500",
    "2.0": "11000",
    "2.5": "16500",
    "3.0": "22000",
    "3.5": "27500",
    "4.0": "33000",
    "4.5": "38500",
    "5.0": "44000",
}

# Work accident rate by activity sector
WORK_ACCIDENT_SECTOR_RATES = {
    "commerce": "0.02",
    "services": "0.02",
    "industry": "0.03",
    "transport": "0.04",
    "construction": "0.05",
}

# (period_type, multiplier, precedence, additive_with, legal reference)
OVERTIME_TABLE = [
    ("holiday", "200", 10, [], "Décret 96-203, art. 10: jours fériés"),
    ("sunday", "175", 20, [], "Décret 96-203, art. 10: dimanche"),
    ("night", "175", 30, [], "Décret 96-203, art. 10: heures de nuit"),
    ("weekday_48_plus", "150", 40, [], "Décret 96-203, art. 9: au-delà de la 48e heure"),
    ("weekday_41_48", "115", 50, [], "Décret 96-203, art. 9: de la 41e à la 48e heure"),
    ("saturday", "115", 60, [], "Décret 96-203, art. 9"),
]

ACP_SENIORITY_TIERS = [
    {"min_years": 5, "bonus_days": 1},
    {"min_years": 10, "bonus_days": 2},
    {"min_years": 15, "bonus_days": 3},
    {"min_years": 20, "bonus_days": 5},
    {"min_years": 25, "bonus_days": 7},
]


def rate_definitions(effective_from: date = DEFAULT_EFFECTIVE_FROM) -> list[RateDefinition]:
    """Contribution and tax definitions for Côte d'Ivoire."""
    return [
        RateDefinition(
            code="CNPS_RET",
            name="CNPS - Retraite",
            country_code=COUNTRY_CODE,
            category="social_security",
            calculation_base="percentage",
            base_kind="brut_imposable",
            employee_rate=Decimal("0.063"),
            employer_rate=Decimal("0.077"),
            ceiling_amount=CNPS_RETIREMENT_CEILING,
            ceiling_period="monthly",
            effective_from=effective_from,
        ),
        RateDefinition(
            code="CNPS_PF",
            name="CNPS - Prestations familiales",
            country_code=COUNTRY_CODE,
            category="social_security",
            calculation_base="percentage",
            base_kind="brut_imposable",
            employer_rate=Decimal("0.0575"),
            ceiling_amount=CNPS_SMALL_BRANCH_CEILING,
            ceiling_period="monthly",
            effective_from=effective_from,
        ),
        RateDefinition(
            code="CNPS_MAT",
            name="CNPS - Assurance maternité",
            country_code=COUNTRY_CODE,
            category="social_security",
            calculation_base="percentage",
            base_kind="brut_imposable",
            employer_rate=Decimal("0.0075"),
            ceiling_amount=CNPS_SMALL_BRANCH_CEILING,
            ceiling_period="monthly",
            effective_from=effective_from,
        ),
        RateDefinition(
            code="CNPS_AT",
            name="CNPS - Accident du travail",
            country_code=COUNTRY_CODE,
            category="social_security",
            calculation_base="percentage",
            base_kind="brut_imposable",
            employer_rate=Decimal("0.02"),
            sector_rates=dict(WORK_ACCIDENT_SECTOR_RATES),
            ceiling_amount=CNPS_SMALL_BRANCH_CEILING,
            ceiling_period="monthly",
            effective_from=effective_from,
        ),
        RateDefinition(
            code="CMU",
            name="Couverture maladie universelle",
            country_code=COUNTRY_CODE,
            category="health",
            calculation_base="fixed",
            base_kind="gross_salary",
            fixed_amount=Decimal("1000"),
            employer_fixed_amount=Decimal("500"),
            family_amounts={"employee": "1000", "employer": "5000"},
            effective_from=effective_from,
        ),
        RateDefinition(
            code="ITS",
            name="Impôt sur les traitements et salaires",
            country_code=COUNTRY_CODE,
            category="income_tax",
            calculation_base="bracket",
            base_kind="brut_imposable",
            brackets=[dict(b) for b in ITS_BRACKETS],
            family_deductions=dict(ITS_FAMILY_DEDUCTIONS),
            effective_from=effective_from,
        ),
    ]


def overtime_rates(effective_from: date = DEFAULT_EFFECTIVE_FROM) -> list[OvertimeRate]:
    return [
        OvertimeRate(
            country_code=COUNTRY_CODE,
            period_type=period_type,
            rate_multiplier=Decimal(multiplier),
            legal_minimum=Decimal(multiplier),
            locked=True,
            precedence=precedence,
            additive_with=list(additive),
            legal_reference=reference,
            effective_from=effective_from,
        )
        for period_type, multiplier, precedence, additive, reference in OVERTIME_TABLE
    ]


def leave_policy(effective_from: date = DEFAULT_EFFECTIVE_FROM) -> LeaveAccrualPolicy:
    return LeaveAccrualPolicy(
        country_code=COUNTRY_CODE,
        eligible_contract_types=["CDI", "CDD"],
        min_history_runs=3,
        days_per_month_factor=Decimal("2.2"),
        calendar_day_multiplier=Decimal("1.25"),
        seniority_tiers=[dict(t) for t in ACP_SENIORITY_TIERS],
        effective_from=effective_from,
    )


def payroll_policy(effective_from: date = DEFAULT_EFFECTIVE_FROM) -> PayrollPolicy:
    return PayrollPolicy(
        country_code=COUNTRY_CODE,
        monthly_reference_hours=Decimal("173.33"),
        days_per_month=30,
        seniority_allowance={
            "base_rate": "0.02",
            "increment": "0.01",
            "cap": "0.25",
            "minimum_years": 2,
        },
        effective_from=effective_from,
    )


async def seed_country_policies(
    session: AsyncSession, effective_from: date = DEFAULT_EFFECTIVE_FROM
) -> bool:
    """Insert the default tables unless the country already has rates.

    Returns True when rows were inserted.
    """
    result = await session.execute(
        select(func.count())
        .select_from(RateDefinition)
        .where(RateDefinition.country_code == COUNTRY_CODE)
    )
    if result.scalar_one():
        logger.info("policy_seed_skipped", extra={"country_code": COUNTRY_CODE})
        return False

    session.add_all(rate_definitions(effective_from))
    session.add_all(overtime_rates(effective_from))
    session.add(leave_policy(effective_from))
    session.add(payroll_policy(effective_from))
    await session.flush()
    logger.info(
        "policy_seeded",
        extra={"country_code": COUNTRY_CODE, "effective_from": effective_from.isoformat()},
    )
    return True
