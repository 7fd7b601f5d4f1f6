import datetime
import uuid

import pytest

from playledger.config import Settings
from playledger.db import Database
from playledger.models.db import Subscription, Track


@pytest.fixture
def settings():
    return Settings(
        IP_HASH_SALT="test-salt",
        JWT_SECRET="test-jwt-secret",
        DATABASE_URL="sqlite://",
        _env_file=None,
    )


@pytest.fixture
def database(settings):
    database = Database()
    database.init(settings.DATABASE_URL)
    yield database
    database.dispose()


@pytest.fixture
def make_play():
    """Factory for a valid client play payload"""

    def _make_play(**overrides):
        play = {
            "eventId": str(uuid.uuid4()),
            "trackId": "track-1",
            "sessionId": "6f1c2a9e-7d55-4f0e-9a43-2b8a5c1d9e10",
            "durationMs": 90000,
            "trackFullDurationMs": 120000,
            "completed": False,
            "deviceInfo": {"userAgent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7)", "country": "US"},
            "timestamp": "2024-07-10T12:00:00Z",
        }
        play.update(overrides)
        return play

    return _make_play


@pytest.fixture
def seed_track(database):
    def _seed_track(track_id="track-1", artist_id="artist-1", duration=120, collaborators=None):
        with database.session() as session:
            session.add(
                Track(
                    id=track_id,
                    artist_id=artist_id,
                    title=f"Title {track_id}",
                    duration=duration,
                    collaborators=collaborators or [],
                )
            )

    return _seed_track


@pytest.fixture
def seed_subscription(database):
    def _seed_subscription(user_id="user-1", net_monthly=900, status="active", period_end=None, sub_id=None):
        with database.session() as session:
            session.add(
                Subscription(
                    id=sub_id or f"sub-{user_id}",
                    user_id=user_id,
                    status=status,
                    current_period_end=period_end
                    or datetime.datetime(2024, 8, 15, tzinfo=datetime.timezone.utc),
                    net_monthly=net_monthly,
                )
            )

    return _seed_subscription
