"""
Request gate: the per-request allow/flag/reject decision pipeline

Order is fixed: blacklist, temporary block, lockout (authentication-class
endpoints only), threat score. Rejects are returned as ``GateDecision``
values carrying a ``PolicyViolation``; nothing in the pipeline raises for a
deliberate security decision.
"""

import time
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pitchguard.core.config import GateConfig
from pitchguard.core.events import SecurityEventType, Severity
from pitchguard.core.logging import get_logger
from pitchguard.core.patterns import RequestFingerprint, detector_table
from pitchguard.core.store import StateStore
from pitchguard.services.brute_force import BruteForceGuard
from pitchguard.services.event_log import SecurityEventLog
from pitchguard.services.geo_anomaly import GeoAnomalyDetector, GeoLocator, NullGeoLocator
from pitchguard.services.ip_reputation import IPReputationStore
from pitchguard.services.rate_counter import RateCounter
from pitchguard.services.threat_scorer import ThreatAssessment, ThreatScorer
from pitchguard.utils.exceptions import StoreUnavailable

logger = get_logger(__name__)


class DecisionOutcome(str, Enum):
    ALLOW = "allow"
    ADVISORY = "advisory"
    REJECT = "reject"


class ViolationReason(str, Enum):
    BLACKLISTED = "blacklisted"
    TEMPORARILY_BLOCKED = "temporarily_blocked"
    LOCKED_OUT = "locked_out"
    THREAT_SCORE = "threat_score"


@dataclass(frozen=True)
class PolicyViolation:
    """Structured description of a reject"""
    reason: ViolationReason
    status_hint: int
    message: str
    retry_after: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"reason": self.reason.value, "status": self.status_hint, "message": self.message}
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data


@dataclass(frozen=True)
class GateDecision:
    outcome: DecisionOutcome
    score: int = 0
    assessment: Optional[ThreatAssessment] = None
    violation: Optional[PolicyViolation] = None

    @classmethod
    def allow(cls, assessment: Optional[ThreatAssessment] = None) -> "GateDecision":
        return cls(DecisionOutcome.ALLOW, score=assessment.score if assessment else 0, assessment=assessment)

    @classmethod
    def advisory(cls, assessment: ThreatAssessment) -> "GateDecision":
        return cls(DecisionOutcome.ADVISORY, score=assessment.score, assessment=assessment)

    @classmethod
    def reject(cls, violation: PolicyViolation, assessment: Optional[ThreatAssessment] = None) -> "GateDecision":
        return cls(
            DecisionOutcome.REJECT,
            score=assessment.score if assessment else 0,
            assessment=assessment,
            violation=violation,
        )

    @property
    def allowed(self) -> bool:
        return self.outcome != DecisionOutcome.REJECT


class Gate:
    """Orchestrates reputation, brute force and scoring into one decision.

    The gate is the only component that performs the final side effects of
    a decision (temporary block, CRITICAL event, internal alert); the
    components it composes only answer questions and keep their own
    counters.
    """

    def __init__(
        self,
        config: GateConfig,
        reputation: IPReputationStore,
        brute_force: BruteForceGuard,
        scorer: ThreatScorer,
        event_log: SecurityEventLog,
    ):
        self.config = config
        self.reputation = reputation
        self.brute_force = brute_force
        self.scorer = scorer
        self.event_log = event_log
        self.stats = {
            "requests_evaluated": 0,
            "allowed": 0,
            "advisories": 0,
            "rejected": 0,
            "degraded": 0,
            "total_evaluation_time": 0.0,
            "rejects_by_reason": defaultdict(int),
            "signals": defaultdict(int),
        }

    @classmethod
    def build(
        cls,
        config: GateConfig,
        store: StateStore,
        event_log: SecurityEventLog,
        locator: Optional[GeoLocator] = None,
        clock: Callable[[], float] = time.time,
    ) -> "Gate":
        """Wire every gate component onto one shared store"""
        reputation = IPReputationStore(store, config, event_log, clock=clock)
        brute_force = BruteForceGuard(store, config, event_log, clock=clock)
        geo = GeoAnomalyDetector(store, locator or NullGeoLocator(), config, event_log, clock=clock)
        scorer = ThreatScorer(config, RateCounter(store), geo, brute_force)
        return cls(config, reputation, brute_force, scorer, event_log)

    async def evaluate(self, fingerprint: RequestFingerprint) -> GateDecision:
        start_time = time.time()
        try:
            decision = await self._evaluate(fingerprint)
        except StoreUnavailable as e:
            # Components fail open on their own; this covers anything that slipped through
            logger.warning(f"Gate store unavailable, allowing request: {e}")
            self.stats["degraded"] += 1
            decision = GateDecision.allow()
        self._update_stats(decision, time.time() - start_time)
        return decision

    async def _evaluate(self, fingerprint: RequestFingerprint) -> GateDecision:
        ip = fingerprint.client_ip

        if await self.reputation.is_blacklisted(ip):
            await self.event_log.emit(
                SecurityEventType.BLOCKED_REQUEST,
                Severity.CRITICAL,
                ip=ip,
                reason=ViolationReason.BLACKLISTED.value,
                path=fingerprint.path,
                method=fingerprint.method,
            )
            return GateDecision.reject(
                PolicyViolation(ViolationReason.BLACKLISTED, 403, "Access denied")
            )

        block_remaining = await self.reputation.block_remaining(ip)
        if block_remaining > 0:
            logger.info(f"Request from temporarily blocked IP: {ip}", retry_after=block_remaining)
            return GateDecision.reject(
                PolicyViolation(
                    ViolationReason.TEMPORARILY_BLOCKED,
                    403,
                    "Access temporarily restricted",
                    retry_after=block_remaining,
                )
            )

        if fingerprint.is_auth_endpoint and await self.brute_force.is_locked(ip):
            retry_after = await self.brute_force.lockout_remaining(ip) or 1
            await self.event_log.emit(
                SecurityEventType.BRUTE_FORCE_BLOCKED,
                Severity.HIGH,
                ip=ip,
                path=fingerprint.path,
                retry_after=retry_after,
            )
            return GateDecision.reject(
                PolicyViolation(
                    ViolationReason.LOCKED_OUT,
                    429,
                    "Too many failed attempts. Please try again later.",
                    retry_after=retry_after,
                )
            )

        assessment = await self.scorer.evaluate(fingerprint)

        if assessment.score >= self.config.threat_score_threshold:
            await self.reputation.temporary_block(ip)
            details = {
                "path": fingerprint.path,
                "method": fingerprint.method,
                "contributions": [c.to_dict() for c in assessment.contributions],
            }
            await self.event_log.emit(
                SecurityEventType.HIGH_THREAT_BLOCKED,
                Severity.CRITICAL,
                ip=ip,
                threat_score=assessment.score,
                **details,
            )
            await self.event_log.raise_alert("HIGH_THREAT", ip, assessment.score, details)
            return GateDecision.reject(
                PolicyViolation(
                    ViolationReason.THREAT_SCORE,
                    403,
                    "Request blocked by security policy",
                    retry_after=self.config.temporary_block_duration_seconds,
                ),
                assessment,
            )

        if assessment.score > self.config.advisory_score_threshold:
            await self.event_log.emit(
                SecurityEventType.SUSPICIOUS_REQUEST,
                Severity.MEDIUM,
                ip=ip,
                threat_score=assessment.score,
                path=fingerprint.path,
                signals=assessment.signals,
            )
            return GateDecision.advisory(assessment)

        return GateDecision.allow(assessment)

    def _update_stats(self, decision: GateDecision, evaluation_time: float) -> None:
        self.stats["requests_evaluated"] += 1
        self.stats["total_evaluation_time"] += evaluation_time
        if decision.outcome == DecisionOutcome.REJECT:
            self.stats["rejected"] += 1
            self.stats["rejects_by_reason"][decision.violation.reason.value] += 1
        elif decision.outcome == DecisionOutcome.ADVISORY:
            self.stats["advisories"] += 1
        else:
            self.stats["allowed"] += 1
        if decision.assessment is not None:
            for signal in decision.assessment.signals:
                self.stats["signals"][signal] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get gate statistics"""
        evaluated = self.stats["requests_evaluated"]
        avg_time = self.stats["total_evaluation_time"] / evaluated if evaluated > 0 else 0
        return {
            "requests_evaluated": evaluated,
            "allowed": self.stats["allowed"],
            "advisories": self.stats["advisories"],
            "rejected": self.stats["rejected"],
            "degraded": self.stats["degraded"],
            "avg_evaluation_time": avg_time,
            "rejects_by_reason": dict(self.stats["rejects_by_reason"]),
            "signals": dict(self.stats["signals"]),
            "event_log": dict(self.event_log.stats),
        }

    def describe_policy(self) -> Dict[str, Any]:
        """Thresholds and weights in effect, for operators"""
        config = self.config
        return {
            "threat_score_threshold": config.threat_score_threshold,
            "advisory_score_threshold": config.advisory_score_threshold,
            "max_score": config.max_score,
            "max_failed_attempts": config.max_failed_attempts,
            "lockout_duration_seconds": config.lockout_duration_seconds,
            "rate_limit_max": config.rate_limit_max,
            "rate_window_seconds": config.rate_window_seconds,
            "geo_anomaly_distance_km": config.geo_anomaly_distance_km,
            "geo_anomaly_window_seconds": config.geo_anomaly_window_seconds,
            "blacklist_duration_seconds": config.blacklist_duration_seconds,
            "temporary_block_duration_seconds": config.temporary_block_duration_seconds,
            "detectors": detector_table((*config.detectors, config.client_detector)),
            "weights": {
                "rate_overflow": config.rate_overflow_weight,
                "geo_anomaly": config.geo_anomaly_weight,
                "vpn_range": config.vpn_range_weight,
                "failed_attempt": config.failure_penalty_per_attempt,
            },
            "vpn_ranges_configured": len(config.vpn_ranges),
        }
