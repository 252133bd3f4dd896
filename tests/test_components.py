"""Tests for salary component resolution."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import MARCH_END, MARCH_START, salary_components
from paie_engine.calculators.components import (
    SENIORITY_ALLOWANCE_CODE,
    SalaryComponentResolver,
    years_of_service,
)
from paie_engine.calculators.types import (
    PayrollPolicySpec,
    SalaryComponent,
    SeniorityAllowanceRule,
    SourceType,
)
from paie_engine.exceptions import ValidationError


@pytest.fixture
def resolver() -> SalaryComponentResolver:
    return SalaryComponentResolver(
        PayrollPolicySpec(seniority_allowance=SeniorityAllowanceRule())
    )


def resolve(resolver, components, hire_date=date(2023, 1, 15), termination_date=None, **kwargs):
    return resolver.resolve(
        components,
        hire_date=hire_date,
        termination_date=termination_date,
        period_start=MARCH_START,
        period_end=MARCH_END,
        **kwargs,
    )


class TestYearsOfService:
    def test_anniversary_reached(self):
        assert years_of_service(date(2019, 3, 15), date(2024, 3, 15)) == 5

    def test_day_before_anniversary(self):
        assert years_of_service(date(2019, 3, 16), date(2024, 3, 15)) == 4

    def test_future_hire_is_zero(self):
        assert years_of_service(date(2025, 1, 1), date(2024, 3, 15)) == 0


class TestProration:
    """Days worked on a 30-day monthly basis."""

    def test_full_month(self, resolver):
        result = resolve(resolver, salary_components("300000"))

        assert result.days_worked == Decimal("30")
        assert result.total == Decimal("300000")

    def test_mid_month_hire(self, resolver):
        result = resolve(resolver, salary_components("300000"), hire_date=date(2024, 3, 16))

        assert result.days_worked == Decimal("16")
        assert result.components[0].amount == Decimal("160000")
        # Base salary on the line item stays the contractual amount
        assert result.base_salary == Decimal("300000")

    def test_mid_month_termination(self, resolver):
        result = resolve(
            resolver,
            salary_components("300000", {"22": "30000"}),
            termination_date=date(2024, 3, 10),
        )

        assert result.days_worked == Decimal("10")
        assert {c.code: c.amount for c in result.components} == {
            "11": Decimal("100000"),
            "22": Decimal("10000"),
        }

    def test_thirty_one_day_month_caps_at_thirty(self, resolver):
        result = resolve(resolver, salary_components("300000"), hire_date=date(2024, 3, 1))

        assert result.days_worked == Decimal("30")

    def test_terminated_before_period(self, resolver):
        result = resolve(
            resolver, salary_components("300000"), termination_date=date(2024, 2, 20)
        )

        assert result.days_worked == Decimal("0")
        assert result.total == Decimal("0")


class TestSeniorityAllowance:
    """Prime d'ancienneté added as a calculated component."""

    def test_not_paid_before_two_years(self, resolver):
        result = resolve(resolver, salary_components("300000"), hire_date=date(2023, 1, 15))

        assert SENIORITY_ALLOWANCE_CODE not in {c.code for c in result.components}

    def test_two_percent_at_two_years(self, resolver):
        result = resolve(resolver, salary_components("300000"), hire_date=date(2022, 3, 1))

        allowance = next(c for c in result.components if c.code == SENIORITY_ALLOWANCE_CODE)
        assert allowance.amount == Decimal("6000")
        assert allowance.source_type == SourceType.CALCULATED

    def test_increment_per_year(self, resolver):
        result = resolve(resolver, salary_components("300000"), hire_date=date(2014, 3, 1))

        allowance = next(c for c in result.components if c.code == SENIORITY_ALLOWANCE_CODE)
        assert allowance.amount == Decimal("30000")  # 2% + 8 * 1%

    def test_capped(self, resolver):
        rule = SeniorityAllowanceRule()
        assert rule.rate_for(40) == Decimal("0.25")

    def test_existing_component_kept(self, resolver):
        result = resolve(
            resolver,
            salary_components("300000", {"21": "12345"}),
            hire_date=date(2014, 3, 1),
        )

        allowances = [c for c in result.components if c.code == SENIORITY_ALLOWANCE_CODE]
        assert [a.amount for a in allowances] == [Decimal("12345")]

    def test_no_rule_no_allowance(self):
        resolver = SalaryComponentResolver(PayrollPolicySpec())

        assert resolver.seniority_allowance(
            Decimal("300000"), date(2000, 1, 1), MARCH_END
        ) == Decimal("0")


class TestTaxability:
    def test_non_taxable_component_excluded_from_taxable_total(self, resolver):
        components = salary_components("300000")
        components.append(
            {"code": "22", "name": "Prime de transport", "amount": "25000", "taxable": False}
        )

        result = resolve(resolver, components)

        assert result.total == Decimal("325000")
        assert result.taxable_total == Decimal("300000")

    def test_extra_components_appended(self, resolver):
        extra = SalaryComponent(
            code="ACP",
            name="Allocation de congés payés",
            amount=Decimal("110000"),
            source_type=SourceType.CALCULATED,
        )

        result = resolve(resolver, salary_components("300000"), extra_components=[extra])

        assert result.components[-1] == extra
        assert result.total == Decimal("410000")


class TestValidation:
    """Malformed compensation records."""

    def test_missing_base_salary(self, resolver):
        with pytest.raises(ValidationError, match="base salary"):
            resolve(resolver, [{"code": "22", "name": "Transport", "amount": "25000"}])

    def test_empty_components(self, resolver):
        with pytest.raises(ValidationError):
            resolve(resolver, [])

    def test_negative_amount(self, resolver):
        with pytest.raises(ValidationError, match="Negative"):
            resolve(resolver, salary_components("300000", {"22": "-500"}))

    def test_malformed_amount(self, resolver):
        with pytest.raises(ValidationError, match="Invalid amount"):
            resolve(resolver, salary_components("trois cent mille"))

    def test_duplicate_code(self, resolver):
        components = salary_components("300000") + salary_components("1000")

        with pytest.raises(ValidationError, match="Duplicate"):
            resolve(resolver, components)

    def test_unknown_source_type(self, resolver):
        components = salary_components("300000")
        components[0]["source_type"] = "bonus"

        with pytest.raises(ValidationError, match="source type"):
            resolve(resolver, components)

    def test_zero_base_salary(self, resolver):
        with pytest.raises(ValidationError, match="positive"):
            resolve(resolver, salary_components("0"))

    def test_error_carries_employee_id(self, resolver):
        employee_id = uuid4()
        with pytest.raises(ValidationError) as exc_info:
            resolve(resolver, [], employee_id=employee_id)
        assert exc_info.value.employee_id == employee_id
