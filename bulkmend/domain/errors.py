from typing import Optional

class JobError(Exception):
    """Base exception for bulk job pipeline errors."""
    pass

class TriggerValidationError(JobError):
    pass

class MetafieldValueError(TriggerValidationError):
    def __init__(self, value_type: str, value: str):
        self.value_type = value_type
        super().__init__(f"Invalid {value_type} value: {value}")

class JobNotFoundError(JobError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")

class InvalidJobStateError(JobError):
    def __init__(self, current_status, target_status):
        super().__init__(f"Cannot transition from {current_status} to {target_status}")

class LeaseError(JobError):
    pass

class LeaseNotFoundError(LeaseError):
    pass

# Remote platform

class RemoteError(JobError):
    """Failure talking to the remote bulk operation API."""
    retryable = False

class RemoteRequestError(RemoteError):
    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)

class BulkOperationError(RemoteError):
    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)

class BulkOperationTimeout(RemoteError):
    pass

class StagedUploadError(RemoteError):
    pass

class StreamFetchError(RemoteError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
