"""
Error Taxonomy for MediTrust
============================
Exceptions raised by the analysis pipeline.

- ExtractionError: image is undecodable or too small (not retryable)
- AnalysisTimeoutError: pipeline exceeded its deadline (caller may retry)
- AnalysisFailedError: unexpected internal failure, carries stage + cause
- AnalysisCancelled: caller-initiated cancellation (not an error)
"""

import asyncio
from typing import Optional


class MediTrustError(Exception):
    """Base exception for MediTrust operations."""
    pass


class ExtractionError(MediTrustError):
    """Image could not be decoded or is below the minimum resolution."""
    pass


class AnalysisTimeoutError(MediTrustError):
    """Analysis pipeline exceeded the configured deadline."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Analysis exceeded {timeout_seconds:.2f}s deadline")


class AnalysisFailedError(MediTrustError):
    """Unexpected failure inside a pipeline stage."""

    def __init__(self, stage: str, cause: Optional[BaseException] = None):
        self.stage = stage
        self.cause = cause
        message = f"Analysis failed during '{stage}' stage"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class ReferenceDatabaseError(MediTrustError):
    """Reference catalogue could not be loaded or is malformed."""
    pass


class QRPayloadError(MediTrustError):
    """QR payload is not a recognised registry payload."""
    pass


class AnalysisCancelled(asyncio.CancelledError):
    """Analysis was cancelled by the caller before a verdict was produced."""
    pass
