"""Database storage service for raw plays, materialized plays, aggregates and payouts"""
import logging
import datetime
from typing import Iterable, List, Optional, Set, Tuple
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from playledger.exceptions import StorageError
from playledger.models.db import (MaterializedPlay, Payout, RawPlayEvent, Subscription, Track,
                                  UserTrackAggregate)
from playledger.models.play import FraudVerdict, PayoutStatus, RawEventState

logger = logging.getLogger(__name__)

# Payouts in these states keep their status when a period is recomputed
SETTLING_PAYOUT_STATES = {PayoutStatus.PROCESSING.value, PayoutStatus.PAID.value}

def partition_for(timestamp: datetime.datetime) -> str:
    """yyyymm shard of a play timestamp, in UTC"""
    return timestamp.astimezone(datetime.UTC).strftime('%Y%m')

def payout_id(artist_id: str, period: str) -> str:
    return f"{artist_id}_{period}"

class PlayStorage:
    """Handles all database operations of the play pipeline"""

    def __init__(self, session: Session):
        self.session = session

    # --- Raw events ---

    def existing_event_ids(self, partition: str, event_ids: Iterable[str]) -> Set[str]:
        """Return the subset of event ids already stored in a partition"""
        event_ids = list(event_ids)
        if not event_ids:
            return set()
        try:
            rows = self.session.execute(
                select(RawPlayEvent.event_id).where(
                    RawPlayEvent.partition == partition,
                    RawPlayEvent.event_id.in_(event_ids)
                )
            ).scalars()
            return set(rows)
        except SQLAlchemyError as e:
            logger.error(f"Database error reading partition {partition}: {e}")
            raise StorageError(f"Failed to read raw partition {partition}") from e

    def add_raw_events(self, events: List[RawPlayEvent]) -> None:
        self.session.add_all(events)

    def get_raw_event(self, partition: str, event_id: str, for_update: bool = False) -> Optional[RawPlayEvent]:
        query = select(RawPlayEvent).where(
            RawPlayEvent.partition == partition,
            RawPlayEvent.event_id == event_id
        )
        if for_update:
            query = query.with_for_update()
        return self.session.execute(query).scalar_one_or_none()

    def list_unprocessed(self, limit: int) -> List[Tuple[str, str, str, str]]:
        """Oldest unprocessed raw events as (partition, event_id, user_id, track_id)"""
        rows = self.session.execute(
            select(RawPlayEvent.partition, RawPlayEvent.event_id, RawPlayEvent.user_id, RawPlayEvent.track_id)
            .where(RawPlayEvent.state == RawEventState.UNPROCESSED.value)
            .order_by(RawPlayEvent.timestamp, RawPlayEvent.event_id)
            .limit(limit)
        ).all()
        return [(row.partition, row.event_id, row.user_id, row.track_id) for row in rows]

    def mark_raw_processed(self, raw: RawPlayEvent, verdict: FraudVerdict) -> None:
        raw.suspicious = verdict.suspicious
        raw.fraud_reasons = verdict.reason_values
        raw.fraud_score = verdict.score
        raw.state = RawEventState.PROCESSED.value
        raw.materialization_error = None

    def mark_raw_failed(self, partition: str, event_id: str, message: str) -> None:
        self.session.execute(
            update(RawPlayEvent)
            .where(RawPlayEvent.partition == partition, RawPlayEvent.event_id == event_id)
            .values(state=RawEventState.FAILED.value, materialization_error=message,
                    updated_at=datetime.datetime.now(datetime.UTC))
        )

    def requeue_failed(self, partition: Optional[str] = None) -> int:
        """Move failed raw events back to unprocessed; returns the number moved"""
        query = (
            update(RawPlayEvent)
            .where(RawPlayEvent.state == RawEventState.FAILED.value)
            .values(state=RawEventState.UNPROCESSED.value, materialization_error=None,
                    updated_at=datetime.datetime.now(datetime.UTC))
        )
        if partition:
            query = query.where(RawPlayEvent.partition == partition)
        return self.session.execute(query).rowcount or 0

    # --- Catalogue ---

    def get_track(self, track_id: str) -> Optional[Track]:
        return self.session.get(Track, track_id)

    # --- Materialized plays and aggregates ---

    def get_aggregate(self, user_id: str, track_id: str, for_update: bool = True) -> Optional[UserTrackAggregate]:
        query = select(UserTrackAggregate).where(
            UserTrackAggregate.user_id == user_id,
            UserTrackAggregate.track_id == track_id
        )
        if for_update:
            query = query.with_for_update()
        return self.session.execute(query).scalar_one_or_none()

    def upsert_materialized_play(self, play: MaterializedPlay) -> MaterializedPlay:
        # merge() keys on the event id, so a retry overwrites rather than duplicates
        return self.session.merge(play)

    def upsert_aggregate(self, aggregate: Optional[UserTrackAggregate], user_id: str, track_id: str,
                         played_at: datetime.datetime, window_ms: float) -> UserTrackAggregate:
        window_ends_at = played_at + datetime.timedelta(milliseconds=window_ms)
        if aggregate is None:
            aggregate = UserTrackAggregate(
                user_id=user_id,
                track_id=track_id,
                last_play_at=played_at,
                window_ends_at=window_ends_at,
                play_count=1
            )
            self.session.add(aggregate)
        else:
            aggregate.last_play_at = played_at
            aggregate.window_ends_at = window_ends_at
            aggregate.play_count = (aggregate.play_count or 0) + 1
        return aggregate

    # --- Payout inputs ---

    def active_subscriptions(self, period_start: datetime.datetime) -> List[Subscription]:
        """Active subscriptions whose current period reaches into the target period"""
        return list(self.session.execute(
            select(Subscription).where(
                Subscription.status == 'active',
                Subscription.current_period_end >= period_start
            ).order_by(Subscription.user_id, Subscription.id)
        ).scalars())

    def qualified_plays(self, user_id: str, start: datetime.datetime,
                        end: datetime.datetime) -> List[MaterializedPlay]:
        """Non-suspicious plays of a user in [start, end)"""
        return list(self.session.execute(
            select(MaterializedPlay).where(
                MaterializedPlay.user_id == user_id,
                MaterializedPlay.suspicious.is_(False),
                MaterializedPlay.timestamp >= start,
                MaterializedPlay.timestamp < end
            ).order_by(MaterializedPlay.timestamp, MaterializedPlay.id)
        ).scalars())

    # --- Payouts ---

    def get_payout(self, artist_id: str, period: str, for_update: bool = False) -> Optional[Payout]:
        query = select(Payout).where(Payout.id == payout_id(artist_id, period))
        if for_update:
            query = query.with_for_update()
        return self.session.execute(query).scalar_one_or_none()

    def upsert_payout(self, artist_id: str, period: str, subscription_earnings: int) -> Payout:
        """
        Merge the subscription share of a payout.

        Tips, streams and direct sales recorded elsewhere are preserved and
        the total is recomputed from the breakdown.
        """
        payout = self.get_payout(artist_id, period, for_update=True)
        if payout is None:
            payout = Payout(
                id=payout_id(artist_id, period),
                artist_id=artist_id,
                period=period,
                breakdown_tips=0,
                breakdown_streams=0,
                breakdown_direct_sales=0,
                status=PayoutStatus.PENDING.value
            )
            self.session.add(payout)
        elif payout.status not in SETTLING_PAYOUT_STATES:
            payout.status = PayoutStatus.PENDING.value

        payout.breakdown_subscriptions = subscription_earnings
        payout.total_earnings = (
            subscription_earnings
            + (payout.breakdown_tips or 0)
            + (payout.breakdown_streams or 0)
            + (payout.breakdown_direct_sales or 0)
        )
        return payout
