"""
Medicine Analysis Service for MediTrust
=======================================
Single entry point of the authentication pipeline.

Stages (strictly sequential, each needs the previous stage's output):
    1. extract     - FeatureExtractor (runs in a worker thread)
    2. match       - ReferenceMatcher
    3. synthesize  - DiscrepancySynthesizer
    4. aggregate   - VerdictAggregator

Failure contract:
- ExtractionError propagates unchanged (bad image)
- AnalysisTimeoutError when the deadline passes
- AnalysisFailedError(stage, cause) for anything unexpected
- AnalysisCancelled when the caller cancels
No retries and no fallback verdict: a caller either gets a real
AnalysisResult or an exception.
"""

import asyncio
import functools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from meditrust.config import AnalysisConfig, FEATURE_KEYS
from meditrust.services.discrepancy import Discrepancy, DiscrepancySynthesizer
from meditrust.services.errors import (
    AnalysisCancelled, AnalysisFailedError, AnalysisTimeoutError, ExtractionError
)
from meditrust.services.extractor import FeatureExtractor
from meditrust.services.matcher import FeatureScore, ReferenceMatcher
from meditrust.services.reference import ReferenceDatabase, ReferenceMedicine, default_database
from meditrust.services.verdict import VerdictAggregator
from meditrust.utils import mask_sensitive_data

logger = logging.getLogger(__name__)


class AnalysisStage:
    """Pipeline stage names reported in AnalysisFailedError."""
    EXTRACT = "extract"
    MATCH = "match"
    SYNTHESIZE = "synthesize"
    AGGREGATE = "aggregate"


@dataclass(frozen=True)
class AnalysisResult:
    """The externally visible outcome of one analysis."""
    authentic: bool
    confidence: int
    features: Dict[str, FeatureScore]
    discrepancies: Tuple[Discrepancy, ...]
    recommendations: Tuple[str, ...]
    matched_medicine: Optional[ReferenceMedicine] = None
    image_sha256: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authentic": self.authentic,
            "confidence": self.confidence,
            "features": {key: self.features[key].to_dict() for key in FEATURE_KEYS},
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "recommendations": list(self.recommendations),
            "matchedMedicine": self.matched_medicine.summary() if self.matched_medicine else None,
            "imageSha256": self.image_sha256,
        }


class AnalysisService:
    """
    Orchestrates the medicine authentication pipeline.

    One instance can serve concurrent analyses: the reference database is
    read-only and every request owns its own vector and result.
    """

    def __init__(
        self,
        database: Optional[ReferenceDatabase] = None,
        config: Optional[AnalysisConfig] = None,
        extractor: Optional[FeatureExtractor] = None
    ):
        self.config = config or AnalysisConfig()
        self.database = database if database is not None else default_database()
        self.extractor = extractor or FeatureExtractor(self.config)
        self.matcher = ReferenceMatcher(self.database, self.config)
        self.synthesizer = DiscrepancySynthesizer(self.config)
        self.aggregator = VerdictAggregator(self.config)
        # Extraction threads belong to the service, never to the event loop's
        # default executor, so a stuck extractor cannot block loop shutdown
        self._executor = ThreadPoolExecutor(thread_name_prefix="meditrust-analysis")

    def close(self):
        """Releases the extraction threads without waiting for running ones."""
        self._executor.shutdown(wait=False)

    async def analyze(
        self,
        image_bytes: bytes,
        content_type: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> AnalysisResult:
        """
        Analyzes one medicine photo.

        Args:
            image_bytes: Raw encoded image
            content_type: Optional MIME type hint
            cancel_event: Set by the caller to abort the analysis

        Returns:
            AnalysisResult

        Raises:
            ExtractionError, AnalysisTimeoutError, AnalysisFailedError,
            AnalysisCancelled
        """
        if cancel_event is not None and cancel_event.is_set():
            raise AnalysisCancelled("Analysis cancelled before start")

        # Tells the extraction thread to stop at its next checkpoint
        stop = threading.Event()
        timeout = self.config.timeout_seconds

        pipeline = asyncio.ensure_future(self._run_pipeline(image_bytes, content_type, stop))
        waiters = {pipeline}
        canceller = None
        if cancel_event is not None:
            canceller = asyncio.ensure_future(cancel_event.wait())
            waiters.add(canceller)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )

            if pipeline in done:
                return pipeline.result()

            if canceller is not None and canceller in done:
                logger.info("Analysis cancelled by caller")
                raise AnalysisCancelled("Analysis cancelled by caller")

            logger.warning(f"Analysis exceeded {timeout:.2f}s deadline")
            raise AnalysisTimeoutError(timeout)

        finally:
            stop.set()
            pending = [task for task in waiters if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def _run_pipeline(
        self,
        image_bytes: bytes,
        content_type: Optional[str],
        stop: threading.Event
    ) -> AnalysisResult:
        start_time = time.time()
        loop = asyncio.get_running_loop()

        # Stage 1: feature extraction (CPU bound, off the event loop)
        try:
            vector = await loop.run_in_executor(
                self._executor,
                functools.partial(self.extractor.extract, image_bytes, content_type, stop)
            )
        except (ExtractionError, asyncio.CancelledError):
            raise
        except Exception as e:
            logger.error(f"Feature extraction failed: {e}")
            raise AnalysisFailedError(AnalysisStage.EXTRACT, e) from e

        self._check_stopped(stop)

        # Stage 2: reference matching
        match = self._run_stage(AnalysisStage.MATCH, self.matcher.match, vector)
        logger.debug(
            "Reference ranking: "
            + ", ".join(f"{medicine_id}={overall:.1f}" for medicine_id, overall in match.ranking)
        )
        self._check_stopped(stop)

        # Stage 3: discrepancy synthesis
        discrepancies = self._run_stage(
            AnalysisStage.SYNTHESIZE, self.synthesizer.synthesize, match.scored_features
        )
        self._check_stopped(stop)

        # Stage 4: verdict
        verdict = self._run_stage(
            AnalysisStage.AGGREGATE,
            self.aggregator.aggregate,
            match.scored_features,
            match.best_reference,
            discrepancies,
        )
        logger.debug(f"Confidence breakdown: {verdict.components}")

        result = AnalysisResult(
            authentic=verdict.authentic,
            confidence=verdict.confidence,
            features={key: match.scored_features[key] for key in FEATURE_KEYS},
            discrepancies=tuple(discrepancies),
            recommendations=verdict.recommendations,
            matched_medicine=match.best_reference,
            image_sha256=vector.image_sha256,
        )

        logger.info(
            f"Analyzed {vector.width}x{vector.height} image "
            f"{mask_sensitive_data(vector.image_sha256)}: "
            f"confidence {result.confidence}, authentic {result.authentic}, "
            f"{len(result.discrepancies)} discrepancies, "
            f"{(time.time() - start_time) * 1000:.1f}ms"
        )
        return result

    @staticmethod
    def _run_stage(stage: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except Exception as e:
            logger.error(f"Analysis stage '{stage}' failed: {e}")
            raise AnalysisFailedError(stage, e) from e

    @staticmethod
    def _check_stopped(stop: threading.Event):
        if stop.is_set():
            raise AnalysisCancelled("Analysis stopped")


# ============================================================
# Convenience function for quick analysis
# ============================================================

def analyze_medicine_image(
    image_bytes: bytes,
    content_type: Optional[str] = None,
    database: Optional[ReferenceDatabase] = None,
    config: Optional[AnalysisConfig] = None
) -> AnalysisResult:
    """
    Synchronous wrapper around AnalysisService.analyze.

    Args:
        image_bytes: Raw encoded image
        content_type: Optional MIME type hint
        database: Reference database (built-in catalogue by default)
        config: Analysis configuration

    Returns:
        AnalysisResult
    """
    service = AnalysisService(database=database, config=config)
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(service.analyze(image_bytes, content_type))
    finally:
        # A timed-out extraction thread is left to stop at its next checkpoint
        service.close()
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()
