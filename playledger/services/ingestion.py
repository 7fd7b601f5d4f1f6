"""Batch ingestion of client-reported plays into the raw log"""
import logging
import datetime
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from playledger.config import Settings
from playledger.db import Database
from playledger.exceptions import BatchValidationError, StorageError
from playledger.fraud import FraudDetector
from playledger.models.api import PlayBatchPayload, PlayEventPayload
from playledger.models.db import RawPlayEvent
from playledger.models.play import IngestionResult, PlayContext, RawEventState
from playledger.services.storage import PlayStorage, partition_for
from playledger.utils.security import hash_ip_address

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT_IP = '0.0.0.0'
# A concurrent retry of the same batch can win the insert race once
MAX_WRITE_ATTEMPTS = 2

def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)

def _error_details(error: ValidationError) -> List[Dict[str, Any]]:
    """JSON-safe subset of pydantic error entries"""
    return [
        {'loc': list(entry['loc']), 'msg': entry['msg'], 'type': entry['type']}
        for entry in error.errors(include_url=False)
    ]

def _first_offending(details: List[Dict[str, Any]]):
    """(index, field, reason) of the lowest batch index among validation errors"""
    located = []
    for entry in details:
        loc = entry['loc']
        if len(loc) >= 2 and loc[0] == 'plays' and isinstance(loc[1], int):
            field = '.'.join(str(part) for part in loc[2:]) or None
            located.append((loc[1], field, entry['msg']))
    if located:
        return min(located, key=lambda item: item[0])
    first = details[0] if details else {'loc': [], 'msg': 'invalid payload'}
    return None, '.'.join(str(part) for part in first['loc']) or None, first['msg']

class IngestionService:
    """Validates a reported batch and appends it to the raw play log"""

    def __init__(self, database: Database, settings: Settings,
                 detector: Optional[FraudDetector] = None,
                 clock: Callable[[], datetime.datetime] = _utcnow):
        self.db = database
        self.settings = settings
        self.detector = detector or FraudDetector.from_settings(settings)
        self.clock = clock

    def validate(self, body: Any) -> List[PlayEventPayload]:
        """
        Validate a whole batch, failing closed on the first bad play.

        Raises:
            BatchValidationError: with the offending index, field and reason
        """
        if not isinstance(body, dict) or not isinstance(body.get('plays'), list):
            raise BatchValidationError("Body must be an object with a 'plays' array", field='plays')

        if len(body['plays']) > self.settings.MAX_BATCH_SIZE:
            raise BatchValidationError(
                f"Batch has {len(body['plays'])} plays, limit is {self.settings.MAX_BATCH_SIZE}",
                field='plays'
            )

        try:
            batch = PlayBatchPayload.model_validate(body)
        except ValidationError as e:
            details = _error_details(e)
            index, field, reason = _first_offending(details)
            raise BatchValidationError(reason, index=index, field=field, details=details) from e

        seen = set()
        latest_allowed = None
        if self.settings.MAX_CLOCK_SKEW_SECONDS is not None:
            latest_allowed = self.clock() + datetime.timedelta(seconds=self.settings.MAX_CLOCK_SKEW_SECONDS)

        for index, play in enumerate(batch.plays):
            event_id = play.event_id
            if event_id in seen:
                raise BatchValidationError(f"Duplicate eventId {event_id} in batch", index=index, field='eventId')
            seen.add(event_id)
            if latest_allowed is not None and play.timestamp > latest_allowed:
                raise BatchValidationError(
                    f"timestamp {play.timestamp.isoformat()} is ahead of server time",
                    index=index, field='timestamp'
                )

        return batch.plays

    def ingest(self, user_id: str, client_ip: Optional[str], body: Any) -> IngestionResult:
        """
        Validate, fraud-check and persist a batch for an authenticated caller.

        Writes are create-if-absent per (partition, eventId), so retrying a
        batch never resets the state of events already stored.
        """
        if not user_id:
            raise ValueError("user_id is required")

        plays = self.validate(body)
        client_ip = client_ip or UNKNOWN_CLIENT_IP
        # Hash once per request
        hashed_ip = hash_ip_address(client_ip, self.settings.IP_HASH_SALT)

        events: List[RawPlayEvent] = []
        suspicious_play_ids: List[str] = []
        for play in plays:
            # Local IP rule needs the raw address, so evaluate before it is discarded
            verdict = self.detector.evaluate(PlayContext(
                duration_ms=play.duration_ms,
                track_full_duration_ms=play.track_full_duration_ms,
                user_agent=play.device_info.user_agent,
                client_ip=client_ip
            ))
            event_id = play.event_id
            if verdict.suspicious:
                suspicious_play_ids.append(event_id)

            events.append(RawPlayEvent(
                partition=partition_for(play.timestamp),
                event_id=event_id,
                session_id=play.session_id,
                track_id=play.track_id,
                user_id=user_id,
                duration_ms=play.duration_ms,
                track_full_duration_ms=play.track_full_duration_ms,
                completed=play.completed,
                user_agent=play.device_info.user_agent,
                hashed_ip=hashed_ip,
                country=play.device_info.country,
                timestamp=play.timestamp,
                suspicious=verdict.suspicious,
                fraud_reasons=verdict.reason_values,
                fraud_score=verdict.score,
                state=RawEventState.UNPROCESSED.value
            ))

        written = self._write(events)
        logger.info(
            f"Ingested batch for user {user_id}: {len(plays)} plays, {written} new, "
            f"{len(suspicious_play_ids)} suspicious"
        )
        return IngestionResult(processed=len(plays), written=written, suspicious_play_ids=suspicious_play_ids)

    def _write(self, events: List[RawPlayEvent]) -> int:
        """Insert the events that are not yet stored, all in one transaction"""
        by_partition: Dict[str, List[RawPlayEvent]] = defaultdict(list)
        for event in events:
            by_partition[event.partition].append(event)

        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            try:
                with self.db.session() as session:
                    storage = PlayStorage(session)
                    fresh: List[RawPlayEvent] = []
                    for partition, partition_events in by_partition.items():
                        existing = storage.existing_event_ids(partition, [e.event_id for e in partition_events])
                        fresh.extend(e for e in partition_events if e.event_id not in existing)
                    storage.add_raw_events(fresh)
                return len(fresh)
            except IntegrityError as e:
                if attempt == MAX_WRITE_ATTEMPTS:
                    logger.error(f"Raw play insert kept conflicting: {e}")
                    raise StorageError("Failed to write play batch") from e
                logger.warning("Raw play insert conflicted with a concurrent write; re-checking existing events")
                # Detached copies are re-added on the next attempt
                events = [_copy_event(event) for event in events]
                by_partition = defaultdict(list)
                for event in events:
                    by_partition[event.partition].append(event)
            except SQLAlchemyError as e:
                logger.error(f"Database error writing play batch: {e}")
                raise StorageError("Failed to write play batch") from e

def _copy_event(event: RawPlayEvent) -> RawPlayEvent:
    columns = RawPlayEvent.__table__.columns.keys()
    return RawPlayEvent(**{name: getattr(event, name) for name in columns
                           if name not in ('created_at', 'updated_at')})
