from __future__ import annotations


class MLPipelineError(Exception):
    pass


class ConfigError(MLPipelineError):
    pass


class InputError(MLPipelineError):
    """Malformed request. Rejected immediately, never retried."""


class DataInsufficientError(MLPipelineError):
    """Too few labeled samples to run a training job."""


class ModelUnavailableError(MLPipelineError):
    """Requested model kind has no loaded backend."""


class TransientPersistenceError(MLPipelineError):
    """Audit or bookkeeping write failed. Logged, never aborts the pipeline."""


class TrainingConflictError(MLPipelineError):
    """A training job is already running."""
