"""Input validation package."""

from twealth.validation.validator import InputValidator, ValidationFailedError

__all__ = ["InputValidator", "ValidationFailedError"]
