from typing import Any, Dict, List, Optional


class RelayerError(RuntimeError):
    pass


class ChainConfigurationError(RelayerError):
    pass


class JobValidationError(RelayerError):
    """Raw job data that does not match any job variant. Never enters a queue."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []


class TransactionError(RelayerError):
    """A chain call could not be carried to completion."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class SubmissionError(TransactionError):
    pass


class ConfirmationTimeoutError(TransactionError):
    """The transaction was broadcast but no receipt arrived in time. It may still land."""

    def __init__(self, message: str, tx_hash: str, code: Optional[str] = "CONFIRMATION_TIMEOUT"):
        super().__init__(message, code=code)
        self.tx_hash = tx_hash


class UnknownJobTypeError(TransactionError):
    def __init__(self, job_type: Any):
        super().__init__(f"Unknown transaction type: {job_type}", code="UNKNOWN_JOB_TYPE")
        self.job_type = job_type


class RetryExhaustedError(TransactionError):
    def __init__(self, job_id: str, job_type: str, attempts: int, last_error: str, code: Optional[str] = None):
        super().__init__(
            f"Job {job_id} ({job_type}) failed permanently after {attempts} attempts: {last_error}",
            code=code,
        )
        self.job_id = job_id
        self.job_type = job_type
        self.attempts = attempts
        self.last_error = last_error


class ApiError(RelayerError):
    """Rendered by the app as ``{"success": false, "error": ..., "message": ...}``."""

    def __init__(self, status: int, error: str, message: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message or error)
        self.status = status
        self.error = error
        self.message = message
        self.code = code
