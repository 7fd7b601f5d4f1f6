"""Request and response models of the play ingestion endpoint"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import (AliasChoices, AwareDatetime, BaseModel, ConfigDict, Field, StrictBool,
                      field_validator)

# Canonical 8-4-4-4-12 form; the client's spelling is stored as sent
UUID_PATTERN = r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$'

class DeviceInfoPayload(BaseModel):
    """Client device details; the IP address is determined server-side"""
    model_config = ConfigDict(populate_by_name=True)

    user_agent: str = Field(alias='userAgent', description="Client user agent")
    country: Optional[str] = Field(None, description="Client-reported country code")

class PlayEventPayload(BaseModel):
    """A single client-reported listen"""
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias='eventId', pattern=UUID_PATTERN, description="Client-generated UUID for this event")
    track_id: str = Field(alias='trackId', min_length=1)
    session_id: str = Field(alias='sessionId', pattern=UUID_PATTERN,
                            description="Client-generated UUID for the batch session")
    duration_ms: float = Field(
        validation_alias=AliasChoices('durationMs', 'duration', 'duration_ms'),
        serialization_alias='durationMs',
        ge=0,
        description="Listened time in ms"
    )
    track_full_duration_ms: float = Field(alias='trackFullDurationMs', ge=1,
                                          description="Full track duration in ms as known by the client")
    completed: StrictBool
    device_info: DeviceInfoPayload = Field(alias='deviceInfo')
    timestamp: AwareDatetime = Field(description="ISO-8601 event time with an explicit offset")

    @field_validator('duration_ms', 'track_full_duration_ms', mode='before')
    @classmethod
    def _require_number(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("must be a number")
        return value

    @field_validator('timestamp', mode='before')
    @classmethod
    def _require_iso_string(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return value
        if not isinstance(value, str):
            raise ValueError("must be an ISO-8601 datetime string")
        return value

class PlayBatchPayload(BaseModel):
    """Body of a batch report"""
    plays: List[PlayEventPayload]

class PlayBatchResponse(BaseModel):
    """Successful batch report"""
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    processed: int
    suspicious: int
    suspicious_play_ids: List[str] = Field(default_factory=list, alias='suspiciousPlayIds')

class ErrorResponse(BaseModel):
    """Structured error body returned by the ingestion endpoint"""
    status: str = 'error'
    message: str
    index: Optional[int] = None
    field: Optional[str] = None
    details: Optional[List[Dict[str, Any]] | str] = None
