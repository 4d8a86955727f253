"""Expose commonly used dunning services."""

from .errors import DunningError, DunningNotFound, DunningUpstreamError, DunningValidationError
from .policy import DunningPolicy, PolicyRegistry, load_policy_registry
from .results import FailedPermanent, RecoveryResult, RecoverySuccess, RetryScheduled
from .orchestrator import DunningOrchestrator
from .runner import DunningBatchRunner
