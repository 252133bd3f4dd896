"""Payroll engine for Côte d'Ivoire: statutory deductions, overtime, ACP and run orchestration."""

__version__ = "0.1.0"
