from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ExportStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class AuditAction(str, Enum):
    EXPORT_CREATED = "export_created"
    EXPORT_READY = "export_ready"
    EXPORT_FAILED = "export_failed"
    EXPORT_URL_CREATED = "export_url_created"


class ExportJob(BaseModel):
    id: str
    client_id: str
    created_by: Optional[str] = None
    status: ExportStatus
    document_ids: List[str]
    storage_key: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class Document(BaseModel):
    id: str
    client_id: str
    storage_path: str
    name: str
    size_bytes: int = 0
    deleted_at: Optional[datetime] = None


class AuditEvent(BaseModel):
    client_id: Optional[str] = None
    actor_user_id: Optional[str] = None
    action: AuditAction
    entity_type: str = "document_export"
    entity_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExportCreateRequest(BaseModel):
    document_ids: List[str] = Field(..., min_length=1)

    @field_validator("document_ids")
    @classmethod
    def _unique_ids(cls, value: List[str]) -> List[str]:
        if len(set(value)) != len(value):
            raise ValueError("document_ids must not contain duplicates")
        if any(not item.strip() for item in value):
            raise ValueError("document_ids must not contain blank values")
        return value


class ExportCreated(BaseModel):
    export_id: str
    status: ExportStatus


class ExportStatusResponse(BaseModel):
    export_id: str
    status: ExportStatus
    url: Optional[str] = None
    expires_in: Optional[int] = None
    error: Optional[str] = None
