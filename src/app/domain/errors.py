from __future__ import annotations


class KhutbahNotesError(Exception):
    pass


class QuotaExceededError(KhutbahNotesError):
    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or f"Quota exceeded: {reason}")
        self.reason = reason


class RateLimitExceededError(KhutbahNotesError):
    def __init__(self, reason: str, retry_after_ms: int | None = None, operation: str | None = None):
        super().__init__(f"Rate limit exceeded ({reason})" + (f" for {operation}" if operation else ""))
        self.reason = reason
        self.retry_after_ms = retry_after_ms
        self.operation = operation


class SummarizationError(KhutbahNotesError):
    pass


class TokenBudgetExceededError(SummarizationError):
    def __init__(self, stage: str, max_output_tokens: int):
        super().__init__(f"{stage}: model stopped early: max_output_tokens ({max_output_tokens})")
        self.stage = stage
        self.max_output_tokens = max_output_tokens


class SchemaInvalidError(SummarizationError):
    pass


class ProviderResponseError(SummarizationError):
    def __init__(self, stage: str, reason: str):
        super().__init__(f"{stage}: {reason}")
        self.stage = stage
        self.reason = reason


class UnsupportedLanguageError(KhutbahNotesError):
    def __init__(self, language: str):
        super().__init__(f"Unsupported language: {language}")
        self.language = language


class DocumentStoreError(KhutbahNotesError):
    def __init__(self, operation: str, reason: str):
        super().__init__(f"Document store error during {operation}: {reason}")
        self.operation = operation
        self.reason = reason


class TransactionConflictError(DocumentStoreError):
    def __init__(self, path: str, attempts: int):
        super().__init__("transaction", f"{path} still contended after {attempts} attempts")
        self.path = path
        self.attempts = attempts


class JobNotFoundError(KhutbahNotesError):
    def __init__(self, job_id: str):
        super().__init__(f"Lecture not found: {job_id}")
        self.job_id = job_id


class InvalidJobStateError(KhutbahNotesError):
    def __init__(self, job_id: str, status: str | None, action: str):
        super().__init__(f"Cannot {action} lecture {job_id} in status {status!r}")
        self.job_id = job_id
        self.status = status
        self.action = action


class StorageError(KhutbahNotesError):
    pass


class StorageDownloadError(StorageError):
    def __init__(self, object_key: str, reason: str = "Download failed"):
        super().__init__(f"Failed to download {object_key}: {reason}")
        self.object_key = object_key
        self.reason = reason


class InvalidObjectKeyError(KhutbahNotesError):
    def __init__(self, object_key: str, reason: str = "Invalid object key"):
        super().__init__(f"{reason}: {object_key}")
        self.object_key = object_key
        self.reason = reason


class TranscriptionProcessingError(KhutbahNotesError):
    pass


class InvalidMediaError(TranscriptionProcessingError):
    def __init__(self, message: str = "Invalid or unsupported media file"):
        super().__init__(message)


class NotificationDeliveryError(KhutbahNotesError):
    def __init__(self, job_id: str, reason: str, status_code: int | None = None):
        super().__init__(f"Failed to send notification for {job_id}: {reason}")
        self.job_id = job_id
        self.reason = reason
        self.status_code = status_code


class WebhookPayloadError(KhutbahNotesError):
    pass


class WorkerConfigurationError(KhutbahNotesError):
    def __init__(self, errors: list[str]):
        super().__init__(f"Worker configuration errors: {', '.join(errors)}")
        self.errors = errors
