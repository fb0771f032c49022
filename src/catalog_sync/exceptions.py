"""Custom exceptions for the catalog sync engine."""


class CatalogSyncError(Exception):
    """Base exception for catalog sync errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(CatalogSyncError):
    """Raised when a sync request is invalid (unknown provider, bad game slug)."""

    pass


class RecordValidationError(CatalogSyncError):
    """Raised when a provider record cannot be parsed into its typed view."""

    def __init__(self, kind: str, record_id: str | None, reason: str):
        super().__init__(f"Invalid {kind} record {record_id or '<no id>'}: {reason}")
        self.kind = kind
        self.record_id = record_id
        self.reason = reason


class ProviderError(CatalogSyncError):
    """Raised when the catalog provider cannot serve a page."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class TransientProviderError(ProviderError):
    """Rate limit, 5xx or network failure. Worth retrying."""

    def __init__(self, message: str, status: int | None = None, retry_after: float | None = None):
        super().__init__(message, status)
        self.retry_after = retry_after


class PermanentProviderError(ProviderError):
    """4xx other than 429. Retrying will not help."""

    pass


class InfrastructureError(CatalogSyncError):
    """Raised when a store the engine depends on for correctness is unavailable."""

    pass


class CheckpointStoreError(InfrastructureError):
    """Raised when a checkpoint cannot be loaded or saved."""

    def __init__(self, stream_key: str, reason: str):
        super().__init__(f"Checkpoint store failure for {stream_key}: {reason}")
        self.stream_key = stream_key


class UpsertGatewayError(InfrastructureError):
    """Raised when a batch cannot be written to the local catalog."""

    def __init__(self, kind: str, reason: str):
        super().__init__(f"Upsert of {kind} failed: {reason}")
        self.kind = kind


class GuardrailError(CatalogSyncError):
    """Raised when a guardrail pass cannot complete. Never fatal to a run."""

    pass


class SyncCancelledError(CatalogSyncError):
    """Raised when a run is cancelled between pages."""

    def __init__(self) -> None:
        super().__init__("cancelled")
