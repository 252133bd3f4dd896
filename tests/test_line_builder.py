"""Tests for LineItemBuilder: conservation and deterministic hashing."""

from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import MARCH_END, MARCH_START
from paie_engine.calculators.line_builder import ConservationError, LineItemBuilder
from paie_engine.calculators.types import (
    EmployeeCalculationInput,
    NamedAmount,
    OvertimeBandResult,
    OvertimeResult,
    PeriodType,
    ResolvedCompensation,
    SalaryComponent,
    SourceType,
    StatutoryDeductions,
)


@pytest.fixture
def employee_input() -> EmployeeCalculationInput:
    return EmployeeCalculationInput(
        employee_id=uuid4(),
        employee_number="E001",
        employee_name="Awa Koné",
        hire_date=date(2023, 1, 15),
        termination_date=None,
        period_start=MARCH_START,
        period_end=MARCH_END,
        components=[],
    )


@pytest.fixture
def compensation() -> ResolvedCompensation:
    return ResolvedCompensation(
        components=[
            SalaryComponent("11", "Salaire de base", Decimal("300000")),
            SalaryComponent("22", "Prime de transport", Decimal("25000"), taxable=False),
        ],
        base_salary=Decimal("300000"),
        days_worked=Decimal("30"),
    )


@pytest.fixture
def overtime() -> OvertimeResult:
    return OvertimeResult(
        bands=[
            OvertimeBandResult(
                period_type=PeriodType.SUNDAY,
                worked_hours=Decimal("4"),
                bonus_hours=Decimal("3"),
                paid_hours=Decimal("7"),
                rate_multiplier=Decimal("175"),
                amount=Decimal("12115"),
            )
        ]
    )


@pytest.fixture
def deductions() -> StatutoryDeductions:
    return StatutoryDeductions(
        employee_deductions=[
            NamedAmount("CNPS_RET", "CNPS - Retraite", Decimal("19663")),
            NamedAmount("ITS", "ITS", Decimal("41544")),
        ],
        employer_contributions=[
            NamedAmount("CNPS_RET", "CNPS - Retraite", Decimal("24033")),
            NamedAmount("CMU", "CMU", Decimal("500")),
        ],
    )


class TestBuild:
    """Totals derived from the calculator outputs."""

    def test_gross_includes_overtime(self, employee_input, compensation, overtime, deductions):
        item = LineItemBuilder.build(employee_input, compensation, overtime, deductions)

        assert item.overtime_pay == Decimal("12115")
        assert item.gross_salary == Decimal("337115")

    def test_brut_imposable_excludes_non_taxable(
        self, employee_input, compensation, overtime, deductions
    ):
        item = LineItemBuilder.build(employee_input, compensation, overtime, deductions)

        assert item.brut_imposable == Decimal("312115")

    def test_net_and_employer_cost(self, employee_input, compensation, overtime, deductions):
        item = LineItemBuilder.build(employee_input, compensation, overtime, deductions)

        assert item.total_deductions == Decimal("61207")
        assert item.net_salary == Decimal("275908")
        assert item.total_employer_contributions == Decimal("24533")
        assert item.total_employer_cost == Decimal("361648")

    def test_acp_amount_from_acp_component(
        self, employee_input, compensation, overtime, deductions
    ):
        compensation.components.append(
            SalaryComponent(
                "ACP",
                "Allocation de congés payés",
                Decimal("110000"),
                source_type=SourceType.CALCULATED,
            )
        )
        employee_input.acp_detail = {"acp_amount": "110000"}

        item = LineItemBuilder.build(employee_input, compensation, overtime, deductions)

        assert item.acp_amount == Decimal("110000")
        assert item.acp_detail == {"acp_amount": "110000"}
        assert item.gross_salary == Decimal("447115")

    def test_no_overtime(self, employee_input, compensation, deductions):
        item = LineItemBuilder.build(employee_input, compensation, OvertimeResult(), deductions)

        assert item.overtime == []
        assert item.overtime_pay == Decimal("0")
        assert item.gross_salary == Decimal("325000")


class TestConservation:
    """Validation rejects unbalanced items."""

    def test_built_item_validates(self, employee_input, compensation, overtime, deductions):
        item = LineItemBuilder.build(employee_input, compensation, overtime, deductions)

        LineItemBuilder.validate(item)

    def test_net_mismatch(self, employee_input, compensation, overtime, deductions):
        item = LineItemBuilder.build(employee_input, compensation, overtime, deductions)
        broken = replace(item, net_salary=item.net_salary + 1)

        with pytest.raises(ConservationError, match="net"):
            LineItemBuilder.validate(broken)

    def test_gross_mismatch(self, employee_input, compensation, overtime, deductions):
        item = LineItemBuilder.build(employee_input, compensation, overtime, deductions)
        broken = replace(item, gross_salary=item.gross_salary - 5)

        with pytest.raises(ConservationError, match="gross"):
            LineItemBuilder.validate(broken)

    def test_employer_cost_mismatch(self, employee_input, compensation, overtime, deductions):
        item = LineItemBuilder.build(employee_input, compensation, overtime, deductions)
        broken = replace(item, total_employer_cost=item.gross_salary)

        with pytest.raises(ConservationError, match="employer_cost"):
            LineItemBuilder.validate(broken)

    def test_fractional_amount_rejected(self, employee_input, compensation, deductions):
        compensation.components[1] = SalaryComponent(
            "22", "Prime de transport", Decimal("25000.50"), taxable=False
        )

        with pytest.raises(ConservationError, match="Fractional"):
            LineItemBuilder.build(employee_input, compensation, OvertimeResult(), deductions)

    def test_negative_net_detected(self, employee_input, compensation, deductions):
        deductions.employee_deductions.append(NamedAmount("X", "X", Decimal("500000")))
        item = LineItemBuilder.build(employee_input, compensation, OvertimeResult(), deductions)

        assert LineItemBuilder.is_negative_net(item)


class TestHash:
    """Calculation hash is a pure function of the item's values."""

    def test_same_input_same_hash(self, employee_input, compensation, overtime, deductions):
        first = LineItemBuilder.build(employee_input, compensation, overtime, deductions)
        second = LineItemBuilder.build(employee_input, compensation, overtime, deductions)

        assert first.calculation_hash == second.calculation_hash
        assert len(first.calculation_hash) == 64

    def test_different_amount_different_hash(
        self, employee_input, compensation, overtime, deductions
    ):
        first = LineItemBuilder.build(employee_input, compensation, overtime, deductions)
        compensation.components[0] = SalaryComponent("11", "Salaire de base", Decimal("300001"))
        second = LineItemBuilder.build(employee_input, compensation, overtime, deductions)

        assert first.calculation_hash != second.calculation_hash

    def test_display_name_not_hashed(self, employee_input, compensation, overtime, deductions):
        first = LineItemBuilder.build(employee_input, compensation, overtime, deductions)
        employee_input.employee_name = "Awa Koné-Traoré"
        second = LineItemBuilder.build(employee_input, compensation, overtime, deductions)

        assert first.calculation_hash == second.calculation_hash
