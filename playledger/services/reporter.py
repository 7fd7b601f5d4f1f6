"""Client for reporting plays to the batch ingestion endpoint"""
import logging
import time
from typing import Any, Dict, Iterable, List, Optional

import requests

from playledger.exceptions import ReportError
from playledger.models.api import PlayEventPayload
from playledger.utils.security import generate_id

logger = logging.getLogger(__name__)

# --- Constants for Reporting Control ---
MAX_BATCH_SIZE = 1000
REQUEST_TIMEOUT_SECONDS = 15
# Base delay in seconds for retries on transient failures
RETRY_BASE_DELAY = 1
# ------------------------------------

class PlayReporter:
    """
    Posts batches of plays on behalf of a signed-in user.

    Each play gets a fresh eventId and every play of a batch shares one
    sessionId. Because ingestion is idempotent per eventId, a failed batch is
    retried with the same ids.
    """

    def __init__(self, endpoint: str, id_token: str, user_agent: Optional[str] = None,
                 session: Optional[requests.Session] = None, sleep=time.sleep):
        if not id_token:
            raise ValueError("Authentication required to report plays.")
        if not endpoint:
            raise ValueError("Ingestion endpoint is not configured.")
        self.endpoint = endpoint
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {id_token}',
            'Accept': 'application/json',
            'Content-Type': 'application/json'
        })
        if user_agent:
            self.session.headers['User-Agent'] = user_agent
        self.sleep = sleep

    def build_batch(self, plays: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Attach ids to plays and validate them against the ingestion schema"""
        session_id = generate_id()
        batch = []
        for play in plays:
            payload = PlayEventPayload.model_validate({**play, 'eventId': generate_id(), 'sessionId': session_id})
            batch.append(payload.model_dump(mode='json', by_alias=True, exclude_none=True))
        if len(batch) > MAX_BATCH_SIZE:
            raise ValueError(f"Batch has {len(batch)} plays, limit is {MAX_BATCH_SIZE}")
        return batch

    def report(self, plays: Iterable[Dict[str, Any]], retries: int = 3) -> Dict[str, Any]:
        """Build a batch and post it; returns the endpoint's JSON response"""
        return self.send(self.build_batch(plays), retries=retries)

    def send(self, batch: List[Dict[str, Any]], retries: int = 3) -> Dict[str, Any]:
        """Post an already-built batch, retrying connection errors and 5xx responses"""
        attempt = 0
        last_exception: Optional[Exception] = None

        while attempt < retries:
            attempt += 1
            try:
                logger.debug(f"Attempt {attempt}/{retries}: reporting {len(batch)} plays to {self.endpoint}")
                response = self.session.post(self.endpoint, json={'plays': batch}, timeout=REQUEST_TIMEOUT_SECONDS)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                logger.warning(f"Attempt {attempt}/{retries} failed to reach {self.endpoint}: {e}")
                last_exception = e
            else:
                if response.status_code == 200:
                    result = response.json()
                    logger.info(f"Play batch reported successfully: {result}")
                    return result
                body = _safe_json(response)
                if response.status_code < 500:
                    # Client errors will not improve on retry
                    logger.error(f"Error reporting play batch ({response.status_code}): {body}")
                    raise ReportError(f"Failed to report play batch: {response.status_code}",
                                      status_code=response.status_code, body=body)
                logger.warning(f"Attempt {attempt}/{retries} got {response.status_code} from {self.endpoint}")
                last_exception = ReportError(f"Failed to report play batch: {response.status_code}",
                                             status_code=response.status_code, body=body)

            if attempt < retries:
                self.sleep(RETRY_BASE_DELAY * (2 ** (attempt - 1)))

        logger.error(f"Giving up reporting play batch after {retries} attempts")
        if isinstance(last_exception, ReportError):
            raise last_exception
        raise ReportError(f"Failed to report play batch: {last_exception}") from last_exception

def _safe_json(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:200]
