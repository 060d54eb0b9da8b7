"""Validator agents for prqa."""

from prqa.agents.validators.test_validator import (
    BatchValidationResult,
    Severity,
    TestValidator,
    ValidationError,
    ValidationFailure,
    ValidationResult,
    ValidationTask,
    ValidationWarning,
    generate_fix_suggestions,
    validate_batch,
    validate_test,
)

__all__ = [
    "BatchValidationResult",
    "Severity",
    "TestValidator",
    "ValidationError",
    "ValidationFailure",
    "ValidationResult",
    "ValidationTask",
    "ValidationWarning",
    "generate_fix_suggestions",
    "validate_batch",
    "validate_test",
]
