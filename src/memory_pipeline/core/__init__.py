"""
Core building blocks shared by every pipeline component: the explicit
status/result error model, exceptions for configuration errors, logging
utilities and small helpers.
"""

from .status import Status, StatusCode, StatusOr, StatusOrError
from .exceptions import PipelineError, PipelineConfigError, CredentialError

__all__ = [
    "Status",
    "StatusCode",
    "StatusOr",
    "StatusOrError",
    "PipelineError",
    "PipelineConfigError",
    "CredentialError",
]
