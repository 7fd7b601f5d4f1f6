"""Materialization of raw play events into authoritative play records"""
import logging
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple

from playledger.config import Settings
from playledger.db import Database
from playledger.exceptions import StorageError
from playledger.fraud import FraudDetector, merge
from playledger.models.db import MaterializedPlay, RawPlayEvent, Track
from playledger.models.play import (FraudVerdict, MaterializationOutcome, MaterializationStatus,
                                    PlayContext)
from playledger.services.storage import PlayStorage
from playledger.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

class MaterializationWorker:
    """
    Turns one raw play event into a materialized play, exactly once.

    Plays of the same (user, track) are serialized so that two concurrent
    materializations cannot both read a stale dedupe window. The in-process
    lock covers a single node; the row lock taken on the aggregate covers
    databases that support SELECT ... FOR UPDATE.

    The materialized play, the aggregate update and the raw event's final
    state commit in one transaction. A failure is terminal for the event: it
    is recorded on the raw event and not retried here.
    """

    def __init__(self, database: Database, settings: Settings,
                 detector: Optional[FraudDetector] = None,
                 locks: Optional[KeyedLock] = None):
        self.db = database
        self.settings = settings
        self.detector = detector or FraudDetector.from_settings(settings)
        self.locks = locks or KeyedLock()

    def process(self, partition: str, event_id: str) -> MaterializationOutcome:
        """Materialize a single raw event identified by its partition and id"""
        with self.db.session() as session:
            raw = PlayStorage(session).get_raw_event(partition, event_id)
            if raw is None:
                logger.error(f"No raw play found for {partition}/{event_id}")
                return MaterializationOutcome(event_id, MaterializationStatus.MISSING)
            if raw.processed:
                logger.info(f"Raw play {event_id} already processed. Skipping.")
                return MaterializationOutcome(event_id, MaterializationStatus.SKIPPED)
            key = (raw.user_id, raw.track_id)

        try:
            with self.locks.hold(key):
                return self._materialize(partition, event_id)
        except Exception as e:
            logger.exception(f"Error materializing raw play {event_id}: {e}")
            self._record_failure(partition, event_id, str(e) or type(e).__name__)
            return MaterializationOutcome(event_id, MaterializationStatus.FAILED, error=str(e))

    def _materialize(self, partition: str, event_id: str) -> MaterializationOutcome:
        with self.db.session() as session:
            storage = PlayStorage(session)
            raw = storage.get_raw_event(partition, event_id, for_update=True)
            # Another worker may have finished it while we waited for the lock
            if raw is None or raw.processed:
                return MaterializationOutcome(event_id, MaterializationStatus.SKIPPED)

            stored = FraudVerdict.from_stored(raw.suspicious, raw.fraud_reasons, raw.fraud_score)

            track = storage.get_track(raw.track_id)
            if track is None:
                logger.warning(f"Track {raw.track_id} not found for raw play {event_id}. Marking as suspicious.")
                verdict = merge(stored, self.detector.evaluate(PlayContext(
                    duration_ms=raw.duration_ms,
                    track_full_duration_ms=raw.track_full_duration_ms,
                    user_agent=raw.user_agent,
                    track_found=False
                )))
                storage.mark_raw_processed(raw, verdict)
                return MaterializationOutcome(event_id, MaterializationStatus.TRACK_NOT_FOUND, verdict=verdict)

            track_full_duration_ms = track.duration * 1000
            aggregate = storage.get_aggregate(raw.user_id, raw.track_id, for_update=True)
            verdict = merge(stored, self.detector.evaluate(PlayContext(
                duration_ms=raw.duration_ms,
                track_full_duration_ms=track_full_duration_ms,
                user_agent=raw.user_agent,
                timestamp=raw.timestamp,
                previous_window_ends_at=aggregate.window_ends_at if aggregate else None
            )))

            storage.upsert_materialized_play(self._build_play(raw, track, verdict, track_full_duration_ms))
            storage.upsert_aggregate(
                aggregate,
                user_id=raw.user_id,
                track_id=raw.track_id,
                played_at=raw.timestamp,
                window_ms=self.detector.dedupe_window_ms(track_full_duration_ms)
            )
            storage.mark_raw_processed(raw, verdict)

        logger.info(f"Materialized play {event_id} (suspicious={verdict.suspicious})")
        return MaterializationOutcome(event_id, MaterializationStatus.MATERIALIZED, verdict=verdict)

    def _build_play(self, raw: RawPlayEvent, track: Track, verdict: FraudVerdict,
                    track_full_duration_ms: float) -> MaterializedPlay:
        completion_fraction = self.settings.fraud_thresholds.completion_fraction
        return MaterializedPlay(
            id=raw.event_id,
            track_id=raw.track_id,
            user_id=raw.user_id,
            session_id=raw.session_id,
            duration_seconds=raw.duration_ms / 1000,
            completed=raw.duration_ms >= track_full_duration_ms * completion_fraction,
            suspicious=verdict.suspicious,
            fraud_reasons=verdict.reason_values,
            fraud_score=verdict.score,
            artist_ids=track.artist_ids,
            user_agent=raw.user_agent,
            hashed_ip=raw.hashed_ip,
            country=raw.country,
            timestamp=raw.timestamp
        )

    def _record_failure(self, partition: str, event_id: str, message: str) -> None:
        try:
            with self.db.session() as session:
                PlayStorage(session).mark_raw_failed(partition, event_id, message)
        except Exception as e:
            logger.error(f"Could not record materialization error for {event_id}: {e}")
            raise StorageError(f"Failed to record materialization error for {event_id}") from e

    def run_pending(self, limit: Optional[int] = None,
                    max_workers: Optional[int] = None) -> List[MaterializationOutcome]:
        """
        Process the oldest unprocessed raw events once.

        Events are grouped by (user, track) and each group is processed in
        timestamp order by a single task, so a later play can never move the
        dedupe window past an earlier one. Different groups run concurrently
        when max_workers > 1.
        """
        limit = limit or self.settings.MATERIALIZE_BATCH_LIMIT
        max_workers = max_workers or self.settings.MATERIALIZE_MAX_WORKERS
        if max_workers > 1 and self.db.single_connection:
            logger.warning("In-memory database shares one connection; materializing on a single worker")
            max_workers = 1

        with self.db.session() as session:
            pending = PlayStorage(session).list_unprocessed(limit)

        if not pending:
            logger.info("No unprocessed raw plays")
            return []

        groups: Dict[Tuple[str, str], List[Tuple[str, str]]] = defaultdict(list)
        for partition, event_id, user_id, track_id in pending:
            groups[(user_id, track_id)].append((partition, event_id))

        def process_group(events: List[Tuple[str, str]]) -> List[MaterializationOutcome]:
            return [self.process(partition, event_id) for partition, event_id in events]

        if max_workers > 1 and len(groups) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                results = list(pool.map(process_group, groups.values()))
        else:
            results = [process_group(events) for events in groups.values()]

        by_event = {}
        for events, group_outcomes in zip(groups.values(), results):
            by_event.update(zip(events, group_outcomes))
        outcomes = [by_event[(partition, event_id)] for partition, event_id, _, _ in pending]

        counts = Counter(outcome.status.value for outcome in outcomes)
        logger.info(f"Materialization pass finished: {dict(counts)}")
        return outcomes

    def requeue_failed(self, partition: Optional[str] = None) -> int:
        """Operator path: make failed raw events eligible for another pass"""
        with self.db.session() as session:
            moved = PlayStorage(session).requeue_failed(partition)
        logger.info(f"Requeued {moved} failed raw plays" + (f" in partition {partition}" if partition else ""))
        return moved
