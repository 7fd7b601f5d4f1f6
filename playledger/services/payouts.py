"""Monthly User-Centric Payout System (UCPS) aggregation"""
import logging
import datetime
from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from playledger.config import Settings
from playledger.db import Database
from playledger.exceptions import InvalidStatusTransition, StorageError
from playledger.models.db import Payout
from playledger.models.play import PayoutRunSummary, PayoutStatus, QualifiedPlay, SubscriberRevenue
from playledger.services.storage import PlayStorage

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    PayoutStatus.PENDING: {PayoutStatus.PROCESSING, PayoutStatus.FAILED},
    PayoutStatus.PROCESSING: {PayoutStatus.PAID, PayoutStatus.FAILED},
    PayoutStatus.FAILED: {PayoutStatus.PROCESSING},
    PayoutStatus.PAID: set(),
}

def target_period(run_at: datetime.datetime) -> str:
    """The calendar month before run_at, as YYYY-MM in UTC"""
    run_at = run_at.astimezone(datetime.UTC)
    first_of_month = run_at.replace(day=1)
    previous = first_of_month - datetime.timedelta(days=1)
    return f"{previous.year}-{previous.month:02d}"

def period_bounds(period: str) -> Tuple[datetime.datetime, datetime.datetime]:
    """Half-open UTC range [start, end) covering a YYYY-MM period"""
    try:
        year, month = (int(part) for part in period.split('-'))
        start = datetime.datetime(year, month, 1, tzinfo=datetime.UTC)
    except ValueError as e:
        raise ValueError(f"Invalid period {period!r}, expected YYYY-MM") from e
    if month == 12:
        end = datetime.datetime(year + 1, 1, 1, tzinfo=datetime.UTC)
    else:
        end = datetime.datetime(year, month + 1, 1, tzinfo=datetime.UTC)
    return start, end

def round_minor_units(amount: float) -> int:
    """Nearest whole cent, halves rounded up"""
    return int(Decimal(repr(amount)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))

def allocate_subscriber(revenue: SubscriberRevenue, plays: Iterable[QualifiedPlay],
                        totals: Dict[str, float]) -> bool:
    """
    Spread one subscriber's revenue over the artists they listened to.

    Each play earns revenue in proportion to its weighted listen time; a play
    with several artists splits its amount evenly. Returns False when the
    subscriber had nothing to allocate.
    """
    plays = [play for play in plays if play.duration_seconds > 0]
    if not plays:
        logger.info(f"User {revenue.user_id} had no qualified plays.")
        return False

    total_weighted = sum(play.weighted_listen_ms for play in plays)
    if total_weighted <= 0:
        logger.info(f"User {revenue.user_id} had zero total weighted listen time.")
        return False

    for play in plays:
        share = play.weighted_listen_ms / total_weighted
        allocated = revenue.net_monthly * share
        if not play.artist_ids:
            logger.warning(f"Play {play.play_id} has no artistIds. Skipping revenue allocation for this play.")
            continue
        # Even split; collaborator percentages are not applied
        per_artist = allocated / len(play.artist_ids)
        for artist_id in play.artist_ids:
            totals[artist_id] += per_artist
    return True

def allocate(subscribers: Iterable[SubscriberRevenue],
             plays_by_user: Mapping[str, List[QualifiedPlay]]) -> Dict[str, float]:
    """UCPS reduction over all subscribers; amounts stay unrounded"""
    totals: Dict[str, float] = defaultdict(float)
    for revenue in subscribers:
        allocate_subscriber(revenue, plays_by_user.get(revenue.user_id, []), totals)
    return dict(totals)

class PayoutAggregator:
    """Computes and stores per-artist payouts for a period"""

    def __init__(self, database: Database, settings: Settings):
        self.db = database
        self.settings = settings

    def run(self, run_at: Optional[datetime.datetime] = None,
            period: Optional[str] = None) -> PayoutRunSummary:
        """
        Allocate the previous month's subscription revenue.

        One subscriber's bad data is logged and skipped; it never blocks the
        payouts of everyone else. Re-running a period recomputes the same
        totals from the same plays.
        """
        run_at = run_at or datetime.datetime.now(datetime.UTC)
        period = period or target_period(run_at)
        start, end = period_bounds(period)
        logger.info(f"Calculating UCPS for period: {period}")

        with self.db.session() as session:
            subscriptions = [
                (subscription.id, SubscriberRevenue(
                    user_id=subscription.user_id,
                    net_monthly=subscription.net_monthly or self.settings.DEFAULT_NET_MONTHLY
                ))
                for subscription in PlayStorage(session).active_subscriptions(start)
            ]

        totals: Dict[str, float] = defaultdict(float)
        allocated_users = 0
        skipped: List[str] = []
        for subscription_id, revenue in subscriptions:
            # Local accumulation first so a failure leaves totals untouched
            user_totals: Dict[str, float] = defaultdict(float)
            try:
                plays = self._qualified_plays(revenue.user_id, start, end)
                allocated = allocate_subscriber(revenue, plays, user_totals)
            except (SQLAlchemyError, ValueError, TypeError) as e:
                logger.error(f"Skipping subscription {subscription_id} of user {revenue.user_id}: {e}")
                skipped.append(revenue.user_id)
                continue
            if not allocated:
                skipped.append(revenue.user_id)
                continue
            allocated_users += 1
            for artist_id, amount in user_totals.items():
                totals[artist_id] += amount

        artist_totals = self._write(period, totals)
        logger.info(f"UCPS calculation for period {period} completed. {len(artist_totals)} artist payouts generated.")
        return PayoutRunSummary(
            period=period,
            subscribers=len(subscriptions),
            subscribers_allocated=allocated_users,
            artist_totals=artist_totals,
            skipped_subscribers=skipped,
            finished_at=datetime.datetime.now(datetime.UTC)
        )

    def _qualified_plays(self, user_id: str, start: datetime.datetime,
                         end: datetime.datetime) -> List[QualifiedPlay]:
        # Own session per subscriber so a failed read cannot poison the others
        with self.db.session() as session:
            return [
                QualifiedPlay(
                    play_id=play.id,
                    artist_ids=list(play.artist_ids or []),
                    duration_seconds=play.duration_seconds,
                    weight=play.weight
                )
                for play in PlayStorage(session).qualified_plays(user_id, start, end)
            ]

    def _write(self, period: str, totals: Mapping[str, float]) -> Dict[str, int]:
        # Round once per artist, at the point of writing
        rounded = {artist_id: round_minor_units(amount) for artist_id, amount in sorted(totals.items())}
        try:
            with self.db.session() as session:
                storage = PlayStorage(session)
                for artist_id, amount in rounded.items():
                    storage.upsert_payout(artist_id, period, amount)
        except SQLAlchemyError as e:
            logger.error(f"Database error writing payouts for period {period}: {e}")
            raise StorageError(f"Failed to write payouts for period {period}") from e
        return rounded

    def update_payout_status(self, artist_id: str, period: str, status: PayoutStatus,
                             stripe_payout_id: Optional[str] = None) -> Payout:
        """Move a payout through its lifecycle, e.g. from a payment-provider webhook"""
        status = PayoutStatus(status)
        with self.db.session() as session:
            payout = PlayStorage(session).get_payout(artist_id, period, for_update=True)
            if payout is None:
                raise LookupError(f"No payout for artist {artist_id} in period {period}")
            current = PayoutStatus(payout.status)
            if status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidStatusTransition(f"Payout {payout.id} cannot move from {current.value} to {status.value}")
            payout.status = status.value
            if stripe_payout_id:
                payout.stripe_payout_id = stripe_payout_id
            if status is PayoutStatus.PAID:
                payout.paid_at = datetime.datetime.now(datetime.UTC)
        logger.info(f"Payout {payout.id} moved from {current.value} to {status.value}")
        return payout
