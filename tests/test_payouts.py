import datetime

import pytest

from playledger.exceptions import InvalidStatusTransition
from playledger.models.db import MaterializedPlay, Payout
from playledger.models.play import PayoutStatus, QualifiedPlay, SubscriberRevenue
from playledger.services.payouts import (PayoutAggregator, allocate, period_bounds, round_minor_units,
                                         target_period)

RUN_AT = datetime.datetime(2024, 8, 2, 3, 0, tzinfo=datetime.UTC)
IN_JULY = datetime.datetime(2024, 7, 10, 12, 0, tzinfo=datetime.UTC)


@pytest.fixture
def aggregator(database, settings):
    return PayoutAggregator(database, settings)


@pytest.fixture
def seed_play(database):
    counter = {"n": 0}

    def _seed_play(user_id="user-1", artist_ids=("artist-1",), duration_seconds=60.0, suspicious=False,
                   timestamp=IN_JULY, weight=None):
        counter["n"] += 1
        with database.session() as session:
            session.add(MaterializedPlay(
                id=f"play-{counter['n']}",
                track_id="track-1",
                user_id=user_id,
                session_id="session-1",
                duration_seconds=duration_seconds,
                completed=True,
                suspicious=suspicious,
                fraud_reasons=["bot_user_agent"] if suspicious else [],
                fraud_score=1 if suspicious else 0,
                weight=weight,
                artist_ids=list(artist_ids),
                user_agent="Mozilla/5.0",
                hashed_ip="0" * 64,
                timestamp=timestamp,
            ))

    return _seed_play


def _payout(database, artist_id, period="2024-07"):
    with database.session() as session:
        return session.get(Payout, f"{artist_id}_{period}")


def test_target_period_is_previous_calendar_month():
    assert target_period(RUN_AT) == "2024-07"
    assert target_period(datetime.datetime(2025, 1, 2, tzinfo=datetime.UTC)) == "2024-12"
    assert target_period(datetime.datetime(2024, 3, 31, 23, 59, tzinfo=datetime.UTC)) == "2024-02"


def test_period_bounds_are_half_open_month():
    assert period_bounds("2024-12") == (
        datetime.datetime(2024, 12, 1, tzinfo=datetime.UTC),
        datetime.datetime(2025, 1, 1, tzinfo=datetime.UTC),
    )
    with pytest.raises(ValueError):
        period_bounds("July")


def test_equal_listen_time_splits_revenue_evenly():
    totals = allocate(
        [SubscriberRevenue("user-1", 900)],
        {"user-1": [QualifiedPlay("p1", ["artist-1"], 60), QualifiedPlay("p2", ["artist-2"], 60)]},
    )

    assert totals == {"artist-1": 450.0, "artist-2": 450.0}


def test_revenue_follows_weighted_listen_time():
    totals = allocate(
        [SubscriberRevenue("user-1", 1000)],
        {"user-1": [
            QualifiedPlay("p1", ["artist-1"], 30),
            QualifiedPlay("p2", ["artist-2"], 30, weight=3),
        ]},
    )

    assert totals["artist-1"] == pytest.approx(250)
    assert totals["artist-2"] == pytest.approx(750)


def test_each_subscriber_only_funds_their_own_artists():
    totals = allocate(
        [SubscriberRevenue("user-1", 900), SubscriberRevenue("user-2", 300)],
        {
            "user-1": [QualifiedPlay("p1", ["artist-1"], 10)],
            "user-2": [QualifiedPlay("p2", ["artist-2"], 1000)],
        },
    )

    assert totals == {"artist-1": 900.0, "artist-2": 300.0}


def test_collaborators_split_a_play_evenly():
    totals = allocate(
        [SubscriberRevenue("user-1", 900)],
        {"user-1": [QualifiedPlay("p1", ["artist-1", "artist-2", "artist-3"], 60)]},
    )

    assert totals == pytest.approx({"artist-1": 300, "artist-2": 300, "artist-3": 300})


def test_subscribers_without_listening_are_skipped():
    totals = allocate(
        [SubscriberRevenue("user-1", 900), SubscriberRevenue("user-2", 900)],
        {"user-2": [QualifiedPlay("p1", ["artist-1"], 0)]},
    )

    assert totals == {}


def test_play_without_artists_keeps_its_share_unallocated():
    totals = allocate(
        [SubscriberRevenue("user-1", 900)],
        {"user-1": [QualifiedPlay("p1", [], 60), QualifiedPlay("p2", ["artist-1"], 60)]},
    )

    assert totals == {"artist-1": 450.0}


def test_round_minor_units_rounds_half_up():
    assert round_minor_units(450.0) == 450
    assert round_minor_units(0.5) == 1
    assert round_minor_units(2.5) == 3
    assert round_minor_units(299.49) == 299


def test_run_writes_pending_payouts_for_previous_month(database, aggregator, seed_subscription, seed_play):
    seed_subscription("user-1", net_monthly=900)
    seed_play(artist_ids=["artist-1"])
    seed_play(artist_ids=["artist-2"])

    summary = aggregator.run(run_at=RUN_AT)

    assert summary.period == "2024-07"
    assert summary.artist_totals == {"artist-1": 450, "artist-2": 450}
    assert summary.subscribers == 1
    assert summary.subscribers_allocated == 1
    payout = _payout(database, "artist-1")
    assert payout.total_earnings == 450
    assert payout.breakdown == {"subscriptions": 450, "tips": 0, "streams": 0, "directSales": 0}
    assert payout.status == PayoutStatus.PENDING.value
    assert payout.period == "2024-07"


def test_run_excludes_suspicious_and_out_of_period_plays(database, aggregator, seed_subscription, seed_play):
    seed_subscription("user-1", net_monthly=900)
    seed_play(artist_ids=["artist-1"])
    seed_play(artist_ids=["artist-2"], suspicious=True)
    seed_play(artist_ids=["artist-3"], timestamp=datetime.datetime(2024, 8, 1, tzinfo=datetime.UTC))
    seed_play(artist_ids=["artist-4"], timestamp=datetime.datetime(2024, 6, 30, 23, 59, tzinfo=datetime.UTC))

    summary = aggregator.run(run_at=RUN_AT)

    assert summary.artist_totals == {"artist-1": 900}
    assert _payout(database, "artist-2") is None


def test_run_ignores_inactive_and_expired_subscriptions(aggregator, seed_subscription, seed_play):
    seed_subscription("user-1", status="canceled")
    seed_subscription("user-2", period_end=datetime.datetime(2024, 6, 30, tzinfo=datetime.UTC))
    seed_subscription("user-3", net_monthly=None)
    seed_play(user_id="user-1", artist_ids=["artist-1"])
    seed_play(user_id="user-2", artist_ids=["artist-2"])
    seed_play(user_id="user-3", artist_ids=["artist-3"])
    seed_subscription("user-4")

    summary = aggregator.run(run_at=RUN_AT)

    assert summary.artist_totals == {"artist-3": 765}
    assert summary.subscribers == 2
    assert summary.skipped_subscribers == ["user-4"]


def test_rerunning_a_period_is_idempotent_and_keeps_settling_status(database, aggregator, seed_subscription,
                                                                    seed_play):
    seed_subscription("user-1", net_monthly=901)
    seed_play(artist_ids=["artist-1"])
    seed_play(artist_ids=["artist-2"])

    first = aggregator.run(run_at=RUN_AT)
    aggregator.update_payout_status("artist-1", "2024-07", PayoutStatus.PROCESSING)
    second = aggregator.run(run_at=RUN_AT)

    assert first.artist_totals == second.artist_totals == {"artist-1": 451, "artist-2": 451}
    assert _payout(database, "artist-1").status == PayoutStatus.PROCESSING.value
    assert _payout(database, "artist-2").status == PayoutStatus.PENDING.value


def test_rerun_preserves_other_revenue_streams(database, aggregator, seed_subscription, seed_play):
    seed_subscription("user-1", net_monthly=900)
    seed_play(artist_ids=["artist-1"])
    aggregator.run(run_at=RUN_AT)
    with database.session() as session:
        session.get(Payout, "artist-1_2024-07").breakdown_tips = 100

    aggregator.run(run_at=RUN_AT)

    payout = _payout(database, "artist-1")
    assert payout.breakdown_subscriptions == 900
    assert payout.total_earnings == 1000


def test_payout_status_lifecycle(database, aggregator, seed_subscription, seed_play):
    seed_subscription("user-1")
    seed_play()
    aggregator.run(run_at=RUN_AT)

    aggregator.update_payout_status("artist-1", "2024-07", PayoutStatus.PROCESSING)
    paid = aggregator.update_payout_status("artist-1", "2024-07", "paid", stripe_payout_id="po_123")

    assert paid.status == PayoutStatus.PAID.value
    assert paid.stripe_payout_id == "po_123"
    assert paid.paid_at is not None
    with pytest.raises(InvalidStatusTransition):
        aggregator.update_payout_status("artist-1", "2024-07", PayoutStatus.PENDING)
    with pytest.raises(LookupError):
        aggregator.update_payout_status("artist-9", "2024-07", PayoutStatus.PROCESSING)
