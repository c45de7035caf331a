"""Exceptions raised before a run starts."""


class PlanValidationError(Exception):
    """Raised when a run plan is malformed. The run never begins."""


class ThresholdSyntaxError(PlanValidationError):
    """Raised when a threshold expression cannot be parsed."""
