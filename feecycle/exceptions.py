"""
Domain errors for the fee ledger
feecycle/exceptions.py

Every error carries the HTTP status the router answers with, so services
raise domain errors and only the router knows about HTTPException.

  Validation    → 400  (bad batch code, missing contact, incompatible batch)
  Not found     → 404
  Conflict      → 409  (duplicate fee month, duplicate identity)
  Configuration → 422  (no active course / level fee entry)
"""


class FeeLedgerError(Exception):
    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(FeeLedgerError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class InvalidBatchCodeFormat(ValidationError):
    error_code = "INVALID_BATCH_CODE_FORMAT"


class UnknownDayCode(ValidationError):
    error_code = "UNKNOWN_DAY_CODE"


class IncompatibleBatchError(ValidationError):
    error_code = "INCOMPATIBLE_BATCH"


class InsufficientCreditError(ValidationError):
    error_code = "INSUFFICIENT_CREDIT"


class NotFoundError(FeeLedgerError):
    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class DuplicateError(FeeLedgerError):
    status_code = 409
    error_code = "DUPLICATE_ERROR"


class ConfigurationError(FeeLedgerError):
    status_code = 422
    error_code = "CONFIGURATION_ERROR"


class CourseNotConfigured(ConfigurationError):
    error_code = "COURSE_NOT_CONFIGURED"

    def __init__(self, stage: str):
        super().__init__(f"No active course configuration found for stage: {stage}")
        self.stage = stage


class LevelNotConfigured(ConfigurationError):
    error_code = "LEVEL_NOT_CONFIGURED"

    def __init__(self, stage: str, level: int):
        super().__init__(f"Level {level} not found for course {stage}")
        self.stage = stage
        self.level = level
