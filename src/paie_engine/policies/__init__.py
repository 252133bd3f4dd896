"""Default country policy tables."""

from paie_engine.policies.defaults import seed_country_policies

__all__ = ["seed_country_policies"]
