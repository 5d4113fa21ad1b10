"""Retry policy, failure taxonomy and bounded concurrency primitives."""

from .errors import (
    AuthenticationFailure,
    BackendUnavailable,
    BackendUnreachable,
    ConfigurationError,
    EmptyVectorReturned,
    ErrorCategory,
    FatalWriteFailure,
    MalformedInput,
    PartialFailureThresholdExceeded,
    PipelineError,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
    TaskTimeout,
    classify,
    to_problem,
)
from .policy import RetryPolicy
from .worker_pool import BoundedWorkerPool, PoolStats


__all__ = [
    "AuthenticationFailure",
    "BackendUnavailable",
    "BackendUnreachable",
    "BoundedWorkerPool",
    "ConfigurationError",
    "EmptyVectorReturned",
    "ErrorCategory",
    "FatalWriteFailure",
    "MalformedInput",
    "PartialFailureThresholdExceeded",
    "PipelineError",
    "PoolStats",
    "ProviderTimeout",
    "ProviderUnavailable",
    "RateLimited",
    "RetryPolicy",
    "TaskTimeout",
    "classify",
    "to_problem",
]
