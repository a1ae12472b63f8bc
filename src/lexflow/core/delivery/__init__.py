"""
Delivery of curated captures.

Modules:
    classifier: Failure taxonomy, classification and the bounded error log.
    retry: Exponential-backoff retry scheduling keyed by (context, error kind).
    client: One-shot submission to the remote collection endpoint.
"""

from lexflow.core.delivery.classifier import (
    ClassifiedError,
    DeliveryFailure,
    ErrorKind,
    ErrorLog,
    FailureCause,
    Severity,
    classify,
    failure_from_exception,
)
from lexflow.core.delivery.client import (
    EndpointConfig,
    SubmissionClient,
    SubmissionOutcome,
    submission_context,
    validate_endpoint,
)
from lexflow.core.delivery.retry import RetryCoordinator, RetryDecision, RetryHandle, RetryKey

__all__ = [
    # Classifier
    "ClassifiedError",
    "DeliveryFailure",
    "ErrorKind",
    "ErrorLog",
    "FailureCause",
    "Severity",
    "classify",
    "failure_from_exception",
    # Client
    "EndpointConfig",
    "SubmissionClient",
    "SubmissionOutcome",
    "submission_context",
    "validate_endpoint",
    # Retry
    "RetryCoordinator",
    "RetryDecision",
    "RetryHandle",
    "RetryKey",
]
