"""Fraud heuristics for reported and materialized plays"""
from dataclasses import dataclass
from typing import List

from playledger.models.play import FraudReason, FraudVerdict, PlayContext

# Addresses only meaningful before the client IP is hashed
LOCAL_IP_ADDRESSES = frozenset({'127.0.0.1', '::1', '0.0.0.0'})
BOT_MARKER = 'bot'

@dataclass(frozen=True)
class FraudDetector:
    """
    Evaluates a play against the fixed rule set.

    The same evaluator runs at ingestion (duration hint, raw client IP) and at
    materialization (authoritative duration, track lookup, dedupe state).
    Rules that lack the facts they need simply do not fire.
    """
    min_listen_ms: int = 20000
    min_listen_fraction: float = 0.5
    dedupe_min_window_ms: int = 30000

    @classmethod
    def from_settings(cls, settings) -> 'FraudDetector':
        thresholds = settings.fraud_thresholds
        return cls(
            min_listen_ms=thresholds.min_listen_ms,
            min_listen_fraction=thresholds.min_listen_fraction,
            dedupe_min_window_ms=thresholds.dedupe_min_window_ms
        )

    def min_listen_duration_ms(self, track_full_duration_ms: float) -> float:
        """Listen floor: the absolute floor or the track fraction, whichever is smaller"""
        return min(self.min_listen_ms, track_full_duration_ms * self.min_listen_fraction)

    def dedupe_window_ms(self, track_full_duration_ms: float) -> float:
        """Span after a play during which a repeat is treated as a duplicate"""
        return max(self.dedupe_min_window_ms, track_full_duration_ms / 4)

    def evaluate(self, context: PlayContext) -> FraudVerdict:
        """Run every rule and collect the ones that match"""
        reasons: List[FraudReason] = []

        if context.duration_ms < self.min_listen_duration_ms(context.track_full_duration_ms):
            reasons.append(FraudReason.INSUFFICIENT_LISTEN_DURATION)

        # Substring match only; no maintained signature list
        if BOT_MARKER in (context.user_agent or '').lower():
            reasons.append(FraudReason.BOT_USER_AGENT)

        if context.client_ip is not None and context.client_ip.strip() in LOCAL_IP_ADDRESSES:
            reasons.append(FraudReason.LOCAL_IP_ADDRESS)

        if not context.track_found:
            reasons.append(FraudReason.TRACK_NOT_FOUND)

        if (context.previous_window_ends_at is not None and context.timestamp is not None
                and context.timestamp < context.previous_window_ends_at):
            reasons.append(FraudReason.DUPLICATE_PLAY_WITHIN_WINDOW)

        return _verdict(reasons)

def merge(*verdicts: FraudVerdict) -> FraudVerdict:
    """
    Union several verdicts for the same play.

    Reasons keep first-seen order, a flagged play stays flagged and the score
    is the max rather than the sum.
    """
    reasons: List[FraudReason] = []
    for verdict in verdicts:
        for reason in verdict.reasons:
            if reason not in reasons:
                reasons.append(reason)
    return FraudVerdict(
        suspicious=any(verdict.suspicious for verdict in verdicts) or bool(reasons),
        reasons=tuple(reasons),
        score=max([verdict.score for verdict in verdicts] + [1 if reasons else 0])
    )

def _verdict(reasons: List[FraudReason]) -> FraudVerdict:
    # Binary severity
    return FraudVerdict(suspicious=bool(reasons), reasons=tuple(reasons), score=1 if reasons else 0)

default_detector = FraudDetector()

def evaluate(context: PlayContext) -> FraudVerdict:
    """Evaluate a play with the default thresholds"""
    return default_detector.evaluate(context)
