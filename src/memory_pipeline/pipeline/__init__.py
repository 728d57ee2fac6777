"""
Pipeline orchestration: coordinator, retry policy, status aggregation and
the inbound memory service.
"""

from .aggregator import StatusAggregator, derive_processing_status
from .coordinator import CoordinatorConfig, CoordinatorMetrics, PipelineCoordinator
from .retry import RetryConfig, calculate_delay, next_attempt_at, should_retry
from .service import MemoryService

__all__ = [
    "CoordinatorConfig",
    "CoordinatorMetrics",
    "MemoryService",
    "PipelineCoordinator",
    "RetryConfig",
    "StatusAggregator",
    "calculate_delay",
    "derive_processing_status",
    "next_attempt_at",
    "should_retry",
]
