"""
Threat scoring

Aggregates the independent abuse signals of one request into a bounded
score. The scorer itself writes nothing; the only state changes are the ones
its sub-components already make (the rate counter increment and the geo
observation).
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple

from pitchguard.core.config import GateConfig
from pitchguard.core.logging import get_logger
from pitchguard.core.patterns import RequestFingerprint, run_detectors
from pitchguard.services.brute_force import BruteForceGuard
from pitchguard.services.geo_anomaly import GeoAnomalyDetector
from pitchguard.services.rate_counter import RateCounter

logger = get_logger(__name__)


@dataclass(frozen=True)
class ScoreContribution:
    """One signal's share of the score"""
    signal: str
    points: int
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"signal": self.signal, "points": self.points, "detail": self.detail}


@dataclass(frozen=True)
class ThreatAssessment:
    score: int
    contributions: Tuple[ScoreContribution, ...] = field(default_factory=tuple)

    @property
    def signals(self) -> List[str]:
        return [c.signal for c in self.contributions]

    def points_for(self, signal: str) -> int:
        return sum(c.points for c in self.contributions if c.signal == signal)

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "contributions": [c.to_dict() for c in self.contributions]}


def pattern_contributions(config: GateConfig, fingerprint: RequestFingerprint) -> List[ScoreContribution]:
    """Stateless signals: payload detectors and the client identifier"""
    contributions = [
        ScoreContribution(detector.name, detector.weight, "pattern matched in request")
        for detector in run_detectors(config.detectors, fingerprint.canonical_text())
    ]
    if fingerprint.client_identifier and config.client_detector.matches(fingerprint.client_identifier):
        contributions.append(
            ScoreContribution(
                config.client_detector.name,
                config.client_detector.weight,
                fingerprint.client_identifier[:100],
            )
        )
    return contributions


def failure_penalty(config: GateConfig, failures: int) -> int:
    return config.failure_penalty_per_attempt * max(0, failures - config.failure_penalty_threshold)


def combine_score(config: GateConfig, contributions: Iterable[ScoreContribution]) -> int:
    """Sum contributions and clamp to [0, max_score]"""
    total = sum(c.points for c in contributions)
    return max(0, min(config.max_score, total))


class ThreatScorer:
    """Composite threat score from detectors, rate, geo and failed logins"""

    def __init__(
        self,
        config: GateConfig,
        rate_counter: RateCounter,
        geo_detector: GeoAnomalyDetector,
        brute_force: BruteForceGuard,
    ):
        self.config = config
        self.rate_counter = rate_counter
        self.geo_detector = geo_detector
        self.brute_force = brute_force

    async def evaluate(self, fingerprint: RequestFingerprint) -> ThreatAssessment:
        ip = fingerprint.client_ip
        contributions = pattern_contributions(self.config, fingerprint)

        # Each sub-component fails open on its own
        rate, geo_points, failures = await asyncio.gather(
            self.rate_counter.allow(ip, self.config.rate_limit_max, self.config.rate_window_seconds),
            self.geo_detector.score(ip),
            self.brute_force.failed_attempts(ip),
        )

        if not rate.allowed:
            contributions.append(
                ScoreContribution(
                    "rate_overflow",
                    self.config.rate_overflow_weight,
                    f"{rate.count} requests in {rate.window_seconds}s (limit {rate.limit})",
                )
            )
        if geo_points:
            contributions.append(ScoreContribution("geo_anomaly", geo_points, "location jump"))

        vpn_points = self.geo_detector.vpn_score(ip)
        if vpn_points:
            contributions.append(ScoreContribution("vpn_range", vpn_points, "configured network range"))

        penalty = failure_penalty(self.config, failures)
        if penalty:
            contributions.append(ScoreContribution("failed_attempts", penalty, f"{failures} recent failures"))

        score = combine_score(self.config, contributions)
        if contributions:
            logger.debug(f"Threat score for {ip}: {score}", signals=[c.signal for c in contributions])
        return ThreatAssessment(score=score, contributions=tuple(contributions))
