"""
Advisory Backend - document export service for the tax-advisory platform

This package provides the background pipeline that turns a client's export
request into a downloadable ZIP archive, plus the thin FastAPI surface used
to request an export and poll its status. It enables:

- Claiming pending export jobs safely across concurrent workers
- Tenant-scoped resolution of the requested documents
- Bundling downloaded blobs into a single ZIP under a byte budget
- Publishing the archive to object storage and recording audit events
- Failing jobs that time out, and reconciling jobs left stuck in processing

Key Components:
    - main: FastAPI application factory and HTTP endpoints
    - export_processor: Claim, archive, publish and failure handling
    - worker: Periodic driver for the export pipeline
    - database: SQLite job store, document catalog and audit log tables
    - storage_service: S3 object storage access via boto3
    - audit: Fire-and-forget audit logging with metadata redaction
    - configuration: OmegaConf settings loaded from defaults and environment
    - models: Pydantic models for jobs, documents and API payloads

Usage:
    Run the API server (and, with ENABLE_JOBS=true, the export worker) with:
        uvicorn advisory_backend.main:create_app --factory --host 0.0.0.0 --port 8000
"""
