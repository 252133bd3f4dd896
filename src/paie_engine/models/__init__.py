"""ORM models."""

from paie_engine.models.base import Base, TimestampMixin, UpdatedAtMixin
from paie_engine.models.employee import Employee, EmployeeSalary, OvertimeEntry, TimeOffRequest
from paie_engine.models.payroll import (
    AcpPaymentRecord,
    PayrollLineItem,
    PayrollRun,
    RunError,
    RunProgress,
)
from paie_engine.models.policy import (
    LeaveAccrualPolicy,
    OvertimeRate,
    PayrollPolicy,
    RateDefinition,
)
from paie_engine.models.tenant import Tenant

__all__ = [
    "AcpPaymentRecord",
    "Base",
    "Employee",
    "EmployeeSalary",
    "LeaveAccrualPolicy",
    "OvertimeEntry",
    "OvertimeRate",
    "PayrollLineItem",
    "PayrollPolicy",
    "PayrollRun",
    "RateDefinition",
    "RunError",
    "RunProgress",
    "Tenant",
    "TimeOffRequest",
    "TimestampMixin",
    "UpdatedAtMixin",
]
