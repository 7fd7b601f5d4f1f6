"""HTTP surface of the play ingestion service"""
import json
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from playledger.config import Settings, get_settings
from playledger.db import Database, db as default_db
from playledger.exceptions import AuthenticationError, BatchValidationError, StorageError
from playledger.models.api import ErrorResponse, PlayBatchResponse
from playledger.services.identity import JwtIdentityVerifier
from playledger.services.ingestion import IngestionService

logger = logging.getLogger(__name__)

def client_ip_from(request: Request) -> Optional[str]:
    """First hop of X-Forwarded-For, falling back to the socket peer"""
    forwarded = request.headers.get('x-forwarded-for')
    if forwarded:
        first = forwarded.split(',')[0].strip()
        if first:
            return first
    return request.client.host if request.client else None

def _error(status_code: int, message: str, **fields) -> JSONResponse:
    body = ErrorResponse(message=message, **fields).model_dump(exclude_none=True)
    return JSONResponse(status_code=status_code, content=body)

async def authenticated_user(request: Request, authorization: Optional[str] = Header(default=None)) -> str:
    """FastAPI dependency resolving the caller's user id"""
    verifier: JwtIdentityVerifier = request.app.state.verifier
    try:
        return verifier.verify_header(authorization)
    except AuthenticationError as e:
        logger.warning(f"reportPlayBatch: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Unauthorized: {e}",
            headers={'WWW-Authenticate': 'Bearer'}
        )

def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    """Build the ingestion app; the database must already be initialized"""
    settings = settings or get_settings()
    database = database or default_db

    app = FastAPI(title="playledger", version="1.0.0")
    app.state.settings = settings
    app.state.verifier = JwtIdentityVerifier(settings.JWT_SECRET, settings.JWT_AUDIENCE)
    app.state.ingestion = IngestionService(database, settings)

    @app.get('/health')
    async def health() -> dict:
        return {'status': 'ok'}

    @app.post('/plays/batch', response_model=PlayBatchResponse, response_model_by_alias=True)
    async def report_play_batch(request: Request, user_id: str = Depends(authenticated_user)):
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _error(status.HTTP_400_BAD_REQUEST, 'Invalid play data format.', details='Body is not valid JSON')

        service: IngestionService = request.app.state.ingestion
        try:
            result = await run_in_threadpool(service.ingest, user_id, client_ip_from(request), body)
        except BatchValidationError as e:
            logger.info(f"reportPlayBatch: rejected batch from {user_id}: {e}")
            return _error(
                status.HTTP_400_BAD_REQUEST,
                'Invalid play data format.',
                index=e.index,
                field=e.field,
                details=e.details or e.reason
            )
        except StorageError as e:
            logger.error(f"reportPlayBatch: Play batch error: {e}")
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, 'Failed to report play batch.', details=str(e))

        return PlayBatchResponse(
            processed=result.processed,
            suspicious=result.suspicious,
            suspicious_play_ids=result.suspicious_play_ids
        )

    return app
