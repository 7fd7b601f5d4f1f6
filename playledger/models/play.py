"""Domain models for play ingestion, materialization and payouts"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

class FraudReason(str, Enum):
    """Reasons a play can be flagged as suspicious"""
    INSUFFICIENT_LISTEN_DURATION = 'insufficient_listen_duration'
    BOT_USER_AGENT = 'bot_user_agent'
    LOCAL_IP_ADDRESS = 'local_ip_address'
    TRACK_NOT_FOUND = 'track_not_found'
    DUPLICATE_PLAY_WITHIN_WINDOW = 'duplicate_play_within_window'

class RawEventState(str, Enum):
    """
    Lifecycle of a raw play event.

    unprocessed -> processed (materialized or track missing)
    unprocessed -> failed (materialization raised)
    """
    UNPROCESSED = 'unprocessed'
    PROCESSED = 'processed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self is not RawEventState.UNPROCESSED

class PayoutStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    PAID = 'paid'
    FAILED = 'failed'

@dataclass(frozen=True)
class PlayContext:
    """
    Facts available to the fraud evaluator for a single play.

    Ingestion fills in the client-reported duration hint and the raw client IP.
    Materialization fills in the authoritative duration, the track lookup
    result and the dedupe window of the previous accepted play.
    """
    duration_ms: float
    track_full_duration_ms: float
    user_agent: str
    client_ip: Optional[str] = None
    track_found: bool = True
    timestamp: Optional[datetime] = None
    previous_window_ends_at: Optional[datetime] = None

@dataclass(frozen=True)
class FraudVerdict:
    """Outcome of a fraud evaluation"""
    suspicious: bool
    reasons: Tuple[FraudReason, ...]
    score: int

    @property
    def reason_values(self) -> List[str]:
        return [reason.value for reason in self.reasons]

    @classmethod
    def from_stored(cls, suspicious: Optional[bool], reasons: Optional[List[str]],
                    score: Optional[float]) -> 'FraudVerdict':
        """Rebuild a verdict from the annotations persisted on a raw event"""
        return cls(
            suspicious=bool(suspicious),
            reasons=tuple(FraudReason(reason) for reason in (reasons or [])),
            score=int(score or 0)
        )

@dataclass
class IngestionResult:
    """Summary of an accepted play batch"""
    processed: int
    written: int
    suspicious_play_ids: List[str] = field(default_factory=list)

    @property
    def suspicious(self) -> int:
        return len(self.suspicious_play_ids)

class MaterializationStatus(str, Enum):
    MATERIALIZED = 'materialized'
    TRACK_NOT_FOUND = 'track_not_found'
    SKIPPED = 'skipped'
    MISSING = 'missing'
    FAILED = 'failed'

@dataclass
class MaterializationOutcome:
    """Result of materializing a single raw event"""
    event_id: str
    status: MaterializationStatus
    verdict: Optional[FraudVerdict] = None
    error: Optional[str] = None

@dataclass
class SubscriberRevenue:
    """Allocatable revenue of one subscriber for a period"""
    user_id: str
    net_monthly: int

@dataclass
class QualifiedPlay:
    """A non-suspicious materialized play considered for revenue allocation"""
    play_id: str
    artist_ids: List[str]
    duration_seconds: float
    weight: Optional[float] = None

    @property
    def weighted_listen_ms(self) -> float:
        return (self.weight or 1) * (self.duration_seconds * 1000)

@dataclass
class PayoutRunSummary:
    """Outcome of a payout aggregation run"""
    period: str
    subscribers: int
    subscribers_allocated: int
    artist_totals: dict
    skipped_subscribers: List[str] = field(default_factory=list)
    finished_at: Optional[datetime] = None
