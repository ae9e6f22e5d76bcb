"""ClinicGuard: abuse prevention and session security gateway."""

__version__ = "1.0.0"
