from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from omegaconf import DictConfig

from .audit import AuditLogService
from .configuration import ExportSettings, configure_logging, load_settings
from .database import JobDatabase
from .export_processor import BlobStore, ExportProcessor
from .models import (
    AuditAction,
    AuditEvent,
    ExportCreated,
    ExportCreateRequest,
    ExportStatus,
    ExportStatusResponse,
)
from .storage_service import ObjectStorage, create_s3_client
from .worker import ExportWorker


@asynccontextmanager
async def lifespan(app: FastAPI):
    worker: ExportWorker = app.state.worker
    if app.state.config.worker.enabled:
        worker.start()
    try:
        yield
    finally:
        await worker.stop()


def create_app(
    config: Optional[DictConfig] = None,
    database: Optional[JobDatabase] = None,
    storage: Optional[BlobStore] = None,
) -> FastAPI:
    """
    Assemble the application and its long-lived collaborators.

    Tests pass their own database and storage; in production both are built
    from config and owned by the app for its whole lifetime.
    """
    config = config if config is not None else load_settings()
    configure_logging(config.logging.level)

    database = database or JobDatabase(Path(config.database.path))
    if storage is None:
        storage = ObjectStorage(create_s3_client(config), config.storage.bucket)

    settings = ExportSettings.from_config(config)
    audit = AuditLogService(database)
    processor = ExportProcessor(database, storage, audit, settings)

    app = FastAPI(title="Advisory Backend API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.settings = settings
    app.state.database = database
    app.state.storage = storage
    app.state.audit = audit
    app.state.processor = processor
    app.state.worker = ExportWorker(processor, poll_interval=config.worker.poll_interval_seconds)

    _register_routes(app)
    return app


def get_database(request: Request) -> JobDatabase:
    return request.app.state.database


def get_audit(request: Request) -> AuditLogService:
    return request.app.state.audit


def _register_routes(app: FastAPI) -> None:
    @app.get("/healthz")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post(
        "/clients/{client_id}/documents/export",
        response_model=ExportCreated,
        status_code=202,
    )
    async def create_export(
        client_id: str,
        payload: ExportCreateRequest,
        request: Request,
        x_user_id: Optional[str] = Header(default=None),
        database: JobDatabase = Depends(get_database),
        audit: AuditLogService = Depends(get_audit),
    ) -> ExportCreated:
        settings: ExportSettings = request.app.state.settings
        document_ids = payload.document_ids

        if len(document_ids) > settings.max_documents_per_export:
            raise HTTPException(
                status_code=422,
                detail=f"document_ids must contain at most {settings.max_documents_per_export} items",
            )

        documents = await asyncio.to_thread(database.fetch_documents, client_id, document_ids)
        if not documents:
            raise HTTPException(status_code=422, detail="No valid documents found")
        if len(documents) != len(document_ids):
            raise HTTPException(
                status_code=422,
                detail="Some documents not found or do not belong to this client",
            )

        total_size = sum(document.size_bytes for document in documents)
        if total_size > settings.max_archive_bytes:
            raise HTTPException(
                status_code=422,
                detail=(
                    f"Total size exceeds limit of {settings.max_archive_bytes // (1024 * 1024)}MB "
                    f"(requested: {round(total_size / 1024 / 1024)}MB)"
                ),
            )

        job = await asyncio.to_thread(database.create_export_job, client_id, document_ids, x_user_id)

        await audit.log(
            AuditEvent(
                client_id=client_id,
                actor_user_id=x_user_id,
                action=AuditAction.EXPORT_CREATED,
                entity_id=job.id,
                metadata={
                    "document_count": len(document_ids),
                    "total_size_bytes": total_size,
                    "ip": request.client.host if request.client else None,
                    "user_agent": request.headers.get("user-agent"),
                },
            )
        )

        return ExportCreated(export_id=job.id, status=job.status)

    @app.get(
        "/clients/{client_id}/documents/export/{export_id}",
        response_model=ExportStatusResponse,
        response_model_exclude_none=True,
    )
    async def get_export(
        client_id: str,
        export_id: str,
        request: Request,
        x_user_id: Optional[str] = Header(default=None),
        database: JobDatabase = Depends(get_database),
        audit: AuditLogService = Depends(get_audit),
    ) -> ExportStatusResponse:
        job = await asyncio.to_thread(database.get_export_job, export_id)
        if job is None or job.client_id != client_id:
            raise HTTPException(status_code=404, detail="Export not found")

        response: Dict[str, Any] = {"export_id": job.id, "status": job.status}

        if job.status == ExportStatus.READY and job.storage_key:
            ttl_seconds = request.app.state.config.storage.signed_url_ttl_seconds
            url = request.app.state.storage.generate_presigned_url(job.storage_key, ttl_seconds)
            if not url:
                raise HTTPException(status_code=500, detail="Failed to generate signed URL")
            response["url"] = url
            response["expires_in"] = ttl_seconds

            await audit.log(
                AuditEvent(
                    client_id=client_id,
                    actor_user_id=x_user_id,
                    action=AuditAction.EXPORT_URL_CREATED,
                    entity_id=job.id,
                    metadata={
                        "storage_key": job.storage_key,
                        "ttl_seconds": ttl_seconds,
                    },
                )
            )
        elif job.status == ExportStatus.FAILED and job.error:
            response["error"] = job.error

        return ExportStatusResponse(**response)
