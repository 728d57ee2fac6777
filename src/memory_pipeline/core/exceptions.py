"""
Custom exceptions for the memory pipeline.

Expected failures travel as StatusOr values (see status.py). Exceptions are
reserved for startup and programming errors that should stop the process.
"""


class PipelineError(Exception):
    """Base exception for all memory pipeline errors."""
    pass


class PipelineConfigError(PipelineError):
    """
    Error in pipeline configuration.

    Raised when:
    - Configuration file is missing or invalid
    - Required configuration values are not set
    - Configuration values are out of valid range
    """
    pass


class CredentialError(PipelineError):
    """
    Error encrypting or decrypting embedder credentials.

    Raised when:
    - No encryption key is configured but credentials must be stored
    - Stored credentials cannot be decrypted with the configured key
    """
    pass
