"""SQLAlchemy database models for raw plays, materialized plays, aggregates and payouts"""
import datetime

from sqlalchemy import (Boolean, Column, DateTime, Float, Index, Integer, JSON, String,
                        TypeDecorator)
from sqlalchemy.orm import declarative_base

from playledger.models.play import PayoutStatus, RawEventState

Base = declarative_base()

def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)

class UTCDateTime(TypeDecorator):
    """Stores naive UTC, always hands back timezone-aware UTC"""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime {value!r} cannot be stored; attach a timezone")
        return value.astimezone(datetime.UTC).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=datetime.UTC)

class RawPlayEvent(Base):
    """
    Append-only log of client-reported listens.
    Partitioned by the yyyymm of the play timestamp; event ids are unique
    within a partition. Only the processing state and fraud annotations change
    after insert.
    """
    __tablename__ = 'plays_raw'

    partition = Column(String(6), primary_key=True)
    event_id = Column(String(36), primary_key=True)
    session_id = Column(String(36), nullable=False)
    track_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False, index=True)
    duration_ms = Column(Float, nullable=False)
    track_full_duration_ms = Column(Float, nullable=False) # Client hint, not authoritative
    completed = Column(Boolean, nullable=False)
    user_agent = Column(String, nullable=False)
    hashed_ip = Column(String(64), nullable=False)
    country = Column(String, nullable=True)
    timestamp = Column(UTCDateTime, nullable=False)
    suspicious = Column(Boolean, nullable=False, default=False)
    fraud_reasons = Column(JSON, nullable=False, default=list)
    fraud_score = Column(Integer, nullable=False, default=0)
    state = Column(String(16), nullable=False, default=RawEventState.UNPROCESSED.value, index=True)
    materialization_error = Column(String, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def processed(self) -> bool:
        return RawEventState(self.state).is_terminal

class MaterializedPlay(Base):
    """
    Authoritative play record used for analytics and payouts.
    Keyed by the raw event id and never mutated after creation.
    """
    __tablename__ = 'plays'

    id = Column(String(36), primary_key=True)
    track_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False)
    session_id = Column(String(36), nullable=False)
    duration_seconds = Column(Float, nullable=False)
    completed = Column(Boolean, nullable=False)
    suspicious = Column(Boolean, nullable=False)
    fraud_reasons = Column(JSON, nullable=False, default=list)
    fraud_score = Column(Integer, nullable=False, default=0)
    weight = Column(Float, nullable=True)
    artist_ids = Column(JSON, nullable=False, default=list)
    user_agent = Column(String, nullable=False)
    hashed_ip = Column(String(64), nullable=False)
    country = Column(String, nullable=True)
    timestamp = Column(UTCDateTime, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index('ix_plays_user_qualified', 'user_id', 'suspicious', 'timestamp'),
    )

class UserTrackAggregate(Base):
    """Per (user, track) dedupe window state"""
    __tablename__ = 'user_track_agg'

    user_id = Column(String, primary_key=True)
    track_id = Column(String, primary_key=True)
    last_play_at = Column(UTCDateTime, nullable=False)
    window_ends_at = Column(UTCDateTime, nullable=False)
    play_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

class Track(Base):
    """Catalogue track; owned by the catalogue, read-only here"""
    __tablename__ = 'tracks'

    id = Column(String, primary_key=True)
    artist_id = Column(String, nullable=False)
    title = Column(String, nullable=True)
    duration = Column(Float, nullable=False) # seconds
    collaborators = Column(JSON, nullable=False, default=list)

    @property
    def artist_ids(self) -> list:
        """Primary artist followed by collaborators, without repeats"""
        ids = [self.artist_id]
        for collaborator in self.collaborators or []:
            artist_id = collaborator.get('artistId') if isinstance(collaborator, dict) else None
            if artist_id and artist_id not in ids:
                ids.append(artist_id)
        return ids

class Subscription(Base):
    """Fan subscription; owned by billing, read-only here"""
    __tablename__ = 'subscriptions'

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    status = Column(String(16), nullable=False)
    current_period_end = Column(UTCDateTime, nullable=False)
    net_monthly = Column(Integer, nullable=True) # cents

class Payout(Base):
    """Per artist, per period earnings"""
    __tablename__ = 'payouts'

    id = Column(String, primary_key=True) # "{artist_id}_{period}"
    artist_id = Column(String, nullable=False, index=True)
    period = Column(String(7), nullable=False, index=True)
    total_earnings = Column(Integer, nullable=False, default=0)
    breakdown_subscriptions = Column(Integer, nullable=False, default=0)
    breakdown_tips = Column(Integer, nullable=False, default=0)
    breakdown_streams = Column(Integer, nullable=False, default=0)
    breakdown_direct_sales = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default=PayoutStatus.PENDING.value)
    stripe_payout_id = Column(String, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    paid_at = Column(UTCDateTime, nullable=True)

    @property
    def breakdown(self) -> dict:
        return {
            'subscriptions': self.breakdown_subscriptions,
            'tips': self.breakdown_tips,
            'streams': self.breakdown_streams,
            'directSales': self.breakdown_direct_sales
        }
