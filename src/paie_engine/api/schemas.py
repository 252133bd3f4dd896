"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ErrorResponse(BaseModel):
    """Error body returned for every handled failure."""

    code: str
    detail: str


# ============================================================================
# Payroll run schemas
# ============================================================================


class PayrollRunCreate(BaseModel):
    """Schema for creating a new payroll run."""

    period_start: date
    period_end: date
    payment_date: date
    country_code: str | None = Field(default=None, min_length=2, max_length=2)

    @model_validator(mode="after")
    def check_period(self) -> PayrollRunCreate:
        if self.period_end < self.period_start:
            raise ValueError("period_end must not precede period_start")
        return self


class PayrollRunResponse(BaseModel):
    """Schema for payroll run response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    run_number: str
    country_code: str
    period_start: date
    period_end: date
    payment_date: date
    status: str
    completion_status: str | None = None
    employee_count: int
    attempt: int
    failure_reason: str | None = None
    total_gross: Decimal
    total_net: Decimal
    total_employee_deductions: Decimal
    total_employer_contributions: Decimal
    total_employer_cost: Decimal
    created_by: str | None = None
    calculated_at: datetime | None = None
    approved_at: datetime | None = None
    approved_by: str | None = None
    paid_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class PayrollRunListResponse(BaseModel):
    items: list[PayrollRunResponse]
    total: int


# ============================================================================
# Progress schemas
# ============================================================================


class RunErrorResponse(BaseModel):
    employee_id: UUID | None = None
    employee_number: str | None = None
    error_code: str
    message: str
    chunk_index: int


class ProgressResponse(BaseModel):
    """Progress of the current calculation attempt."""

    model_config = ConfigDict(from_attributes=True)

    payroll_run_id: UUID
    run_status: str
    status: str
    attempt: int
    total_employees: int
    processed_count: int
    success_count: int
    error_count: int
    current_chunk: int
    total_chunks: int
    percent_complete: Decimal
    completion_status: str | None = None
    failure_reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None
    errors: list[RunErrorResponse] = Field(default_factory=list)


# ============================================================================
# Line item schemas
# ============================================================================


class LineItemResponse(BaseModel):
    """One employee's computed pay, as needed for payslips."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payroll_run_id: UUID
    employee_id: UUID
    employee_number: str
    employee_name: str
    base_salary: Decimal
    days_worked: Decimal
    components: list[dict[str, Any]]
    overtime: list[dict[str, Any]]
    overtime_pay: Decimal
    gross_salary: Decimal
    brut_imposable: Decimal
    employee_deductions: list[dict[str, Any]]
    employer_contributions: list[dict[str, Any]]
    total_deductions: Decimal
    total_employer_contributions: Decimal
    net_salary: Decimal
    total_employer_cost: Decimal
    acp_amount: Decimal
    acp_detail: dict[str, Any] | None = None
    calculation_hash: str
    status: str


class LineItemListResponse(BaseModel):
    items: list[LineItemResponse]
    total: int


class RecalculationResponse(BaseModel):
    employee_id: UUID
    previous_net: Decimal | None = None
    net_salary: Decimal
    calculation_hash: str
    changed: bool


# ============================================================================
# ACP schemas
# ============================================================================


class EligibilityWarningResponse(BaseModel):
    code: str
    message: str


class AcpPreviewResponse(BaseModel):
    """Paid-leave indemnity preview."""

    model_config = ConfigDict(from_attributes=True)

    employee_id: UUID
    acp_amount: Decimal
    daily_average_salary: Decimal
    total_gross_taxable_salary: Decimal
    number_of_months: Decimal
    leave_days_taken_calendar: Decimal
    seniority_bonus_days: int
    reference_period_start: date
    reference_period_end: date
    total_paid_days: Decimal
    payroll_run_count: int
    leave_days_accrued: Decimal
    is_eligible: bool
    warnings: list[EligibilityWarningResponse]


class AcpPaymentUpdate(BaseModel):
    """Schedule or cancel an employee's ACP payment."""

    payment_date: date | None = None
    active: bool
    notes: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def check_date(self) -> AcpPaymentUpdate:
        if self.active and self.payment_date is None:
            raise ValueError("payment_date is required when active")
        return self


class EmployeeAcpResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    employee_number: str
    full_name: str
    contract_type: str
    acp_payment_date: date | None = None
    acp_payment_active: bool
    acp_notes: str | None = None
    acp_last_paid_at: date | None = None


class LeaveApprovalNotice(BaseModel):
    """Published by the time-off workflow once a leave request is approved."""

    employee_id: UUID
    start_date: date
    end_date: date


# ============================================================================
# Policy schemas
# ============================================================================


class OvertimeRateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    country_code: str
    period_type: str
    rate_multiplier: Decimal
    legal_minimum: Decimal
    locked: bool
    precedence: int
    additive_with: list[str]
    legal_reference: str | None = None
    effective_from: date
    effective_to: date | None = None


class OvertimeRateUpdate(BaseModel):
    rate_multiplier: Decimal = Field(gt=0)


class RateDefinitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    country_code: str
    category: str
    calculation_base: str
    base_kind: str
    employee_rate: Decimal | None = None
    employer_rate: Decimal | None = None
    fixed_amount: Decimal | None = None
    employer_fixed_amount: Decimal | None = None
    ceiling_amount: Decimal | None = None
    ceiling_period: str | None = None
    effective_from: date
    effective_to: date | None = None
    referenced_at: datetime | None = None
