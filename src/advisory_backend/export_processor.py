"""
Document export pipeline.

This module turns pending export requests into downloadable ZIP archives:
- Claiming the oldest pending job with a guarded status transition
- Resolving the job's documents within the owning tenant
- Downloading each blob and bundling the results into one archive
- Uploading the archive and marking the job ready
- Routing every failure (including the wall-clock timeout) to ``failed``

The ExportProcessor owns no global state. The job store, object storage and
audit service are handed to it by the host process, which also decides how
often ``process_document_exports`` runs.
"""

from __future__ import annotations

import asyncio
import io
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional, Protocol, Tuple

from .audit import AuditLogService
from .configuration import ExportSettings
from .database import JobDatabase
from .errors import (
    ArchiveFailure,
    ClaimFailure,
    DownloadFailure,
    ExportError,
    NoValidDocuments,
    StatusUpdateFailure,
    TimeoutFailure,
    UploadFailure,
)
from .models import AuditAction, AuditEvent, Document, ExportJob, ExportStatus
from .utils import safe_entry_name, truncate_error, unique_entry_name, utcnow

logger = logging.getLogger(__name__)

ARCHIVE_CONTENT_TYPE = "application/zip"
STALLED_MESSAGE = "Processing stalled; marked failed by reconciliation"


class BlobStore(Protocol):
    async def download(self, path: str) -> bytes: ...

    async def upload(
        self,
        key: str,
        data: bytes,
        content_type: str = ...,
        no_overwrite: bool = ...,
    ) -> None: ...

    def generate_presigned_url(self, key: str, expiration: int = ...) -> Optional[str]: ...


def export_storage_key(client_id: str, job_id: str) -> str:
    """Deterministic archive location for a job."""
    return f"clients/{client_id}/exports/{job_id}/export.zip"


@dataclass
class ArchiveResult:
    """
    A finished archive and what went into it.

    Attributes:
        data: Complete ZIP bytes, central directory included
        entries: Entry names in archive order
        resolved_count: Documents that passed tenant/soft-delete resolution
        skipped_document_ids: Resolved documents whose download failed
    """

    data: bytes
    entries: List[str]
    resolved_count: int
    skipped_document_ids: List[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def document_count(self) -> int:
        return len(self.entries)


class ExportProcessor:
    """
    Runs export jobs through claim, archive and publish.

    One call to ``process_document_exports`` handles at most one job.
    Several processors (in one process or many) may share a job store:
    the claim is a conditional update, so each job is processed once.
    """

    def __init__(
        self,
        database: JobDatabase,
        storage: BlobStore,
        audit: AuditLogService,
        settings: ExportSettings | None = None,
    ) -> None:
        self._db = database
        self._storage = storage
        self.audit = audit
        self.settings = settings or ExportSettings()

    async def process_document_exports(self) -> Optional[ExportJob]:
        """
        Claim the next pending job and process it.

        Never raises: an unexpected error is logged so a single bad cycle
        cannot take down the scheduler that calls this.

        Returns:
            The job that was claimed this cycle, or None
        """
        try:
            job = await self.claim_next_pending_job()
            if job is None:
                return None

            logger.info(
                f"Processing export job {job.id} for client {job.client_id} "
                f"({len(job.document_ids)} documents)"
            )

            try:
                await self.process_job(job)
                logger.info(f"Export job {job.id} completed successfully")
            except Exception as exc:
                await self.fail_job(job, exc)
            return job
        except Exception:
            logger.exception("Error in export job processor")
            return None

    async def claim_next_pending_job(self) -> Optional[ExportJob]:
        """
        Move the oldest pending job to ``processing`` and return it.

        Returns None when nothing is pending, when another worker won the
        claim, or when the job store errored. No retry happens here; the
        next poll picks up whatever is still pending.
        """
        try:
            return await self._claim()
        except ClaimFailure as e:
            logger.error(str(e))
            return None

    async def _claim(self) -> Optional[ExportJob]:
        try:
            jobs = await asyncio.to_thread(self._db.fetch_pending_jobs, 1)
        except Exception as e:
            raise ClaimFailure(f"Failed to fetch pending export jobs: {e}") from e

        if not jobs:
            return None

        job = jobs[0]
        try:
            claimed = await asyncio.to_thread(self._db.claim_job, job.id)
        except Exception as e:
            raise ClaimFailure(f"Failed to claim export job {job.id}: {e}") from e

        if not claimed:
            logger.info(f"Export job {job.id} already claimed by another worker")
            return None

        return job.model_copy(update={"status": ExportStatus.PROCESSING})

    async def process_job(self, job: ExportJob) -> ArchiveResult:
        """
        Archive and publish ``job`` under the configured deadline.

        The pipeline runs as a task that ``asyncio.wait_for`` cancels when
        the deadline passes. Blocking calls already handed to a thread are
        abandoned and their results discarded.

        Raises:
            TimeoutFailure: If the deadline passed first
            ExportError: If any pipeline step failed
        """
        try:
            return await asyncio.wait_for(
                self._run_pipeline(job),
                timeout=self.settings.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise TimeoutFailure() from e

    async def _run_pipeline(self, job: ExportJob) -> ArchiveResult:
        archive = await self.build_archive(job)
        await self.publish(job, archive)
        return archive

    async def resolve_documents(self, job: ExportJob) -> List[Document]:
        """
        Look up the job's documents within its tenant, in request order.

        Raises:
            NoValidDocuments: If none of the requested ids resolve
        """
        try:
            documents = await asyncio.to_thread(
                self._db.fetch_documents, job.client_id, job.document_ids
            )
        except Exception as e:
            raise ExportError(f"Failed to fetch documents: {e}") from e

        if not documents:
            raise NoValidDocuments()

        if len(documents) != len(job.document_ids):
            logger.warning(
                f"Some documents not found or deleted for export {job.id}: "
                f"requested {len(job.document_ids)}, found {len(documents)}"
            )

        order = {document_id: index for index, document_id in enumerate(job.document_ids)}
        return sorted(documents, key=lambda document: order[document.id])

    async def build_archive(self, job: ExportJob) -> ArchiveResult:
        """
        Download the job's documents and bundle them into one ZIP.

        A document whose download fails is skipped with a warning. Entry
        names come from the documents' display names, reduced to a bare file
        name and de-duplicated.

        Raises:
            NoValidDocuments: If nothing resolves, or every download failed
            ArchiveFailure: If the byte budget is exceeded or writing fails
        """
        documents = await self.resolve_documents(job)

        files: List[Tuple[str, bytes]] = []
        skipped: List[str] = []
        used_names: set[str] = set()
        total_bytes = 0

        for document in documents:
            try:
                data = await self._download(document)
            except DownloadFailure as e:
                logger.warning(f"Failed to download document {e.document_id}, skipping: {e}")
                skipped.append(document.id)
                continue

            total_bytes += len(data)
            if total_bytes > self.settings.max_archive_bytes:
                raise ArchiveFailure(
                    f"Export exceeds size limit of {self.settings.max_archive_bytes} bytes"
                )

            name = unique_entry_name(safe_entry_name(document.name, fallback=document.id), used_names)
            files.append((name, data))

        if not files:
            raise NoValidDocuments("No documents could be downloaded for export")

        try:
            data = await asyncio.to_thread(self._write_zip, files)
        except Exception as e:
            raise ArchiveFailure(f"Failed to build archive: {e}") from e

        return ArchiveResult(
            data=data,
            entries=[name for name, _ in files],
            resolved_count=len(documents),
            skipped_document_ids=skipped,
        )

    async def _download(self, document: Document) -> bytes:
        try:
            return await self._storage.download(document.storage_path)
        except Exception as e:
            raise DownloadFailure(document.id, f"{document.storage_path}: {e}") from e

    def _write_zip(self, files: List[Tuple[str, bytes]]) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(
            buffer,
            mode="w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=self.settings.compression_level,
        ) as archive:
            for name, data in files:
                archive.writestr(name, data)
        # Leaving the context writes the central directory; only now is the buffer a valid ZIP.
        return buffer.getvalue()

    async def publish(self, job: ExportJob, archive: ArchiveResult) -> str:
        """
        Upload the archive and mark the job ready.

        Returns:
            The storage key the archive was written to

        Raises:
            UploadFailure: If object storage rejected the archive
            StatusUpdateFailure: If the ready transition could not be written
        """
        key = export_storage_key(job.client_id, job.id)

        try:
            await self._storage.upload(
                key,
                archive.data,
                content_type=ARCHIVE_CONTENT_TYPE,
                no_overwrite=True,
            )
        except Exception as e:
            raise UploadFailure(f"Failed to upload ZIP: {e}") from e

        try:
            updated = await asyncio.to_thread(self._db.mark_ready, job.id, key)
        except Exception as e:
            raise StatusUpdateFailure(f"Failed to update export status: {e}") from e
        if not updated:
            raise StatusUpdateFailure(
                "Failed to update export status: job is no longer processing"
            )

        self.audit.log_async(
            AuditEvent(
                client_id=job.client_id,
                actor_user_id=job.created_by,
                action=AuditAction.EXPORT_READY,
                entity_id=job.id,
                metadata={
                    "storage_key": key,
                    "document_count": archive.document_count,
                    "zip_size": archive.size,
                },
            )
        )
        return key

    async def fail_job(self, job: ExportJob, exc: BaseException) -> bool:
        """
        Record ``exc`` on the job and move it to ``failed``.

        If the status write itself fails the job stays in ``processing``
        until ``reconcile_stale_jobs`` picks it up. If the job already left
        ``processing`` (finished or reconciled elsewhere) nothing is recorded
        and no audit event is sent, so the audit trail matches the stored
        status.

        Returns:
            True if the job row was moved to ``failed``
        """
        message = str(exc) or exc.__class__.__name__
        truncated = truncate_error(message, self.settings.error_max_length)

        logger.error(f"Export job {job.id} for client {job.client_id} failed: {message}")

        updated = False
        try:
            updated = await asyncio.to_thread(self._db.mark_failed, job.id, truncated)
        except Exception as e:
            logger.error(f"Failed to mark export job {job.id} as failed: {e}")
        else:
            if not updated:
                logger.warning(f"Export job {job.id} was not processing; failure not recorded")
                return False

        self.audit.log_async(
            AuditEvent(
                client_id=job.client_id,
                actor_user_id=job.created_by,
                action=AuditAction.EXPORT_FAILED,
                entity_id=job.id,
                metadata={
                    "error": truncated,
                    "document_count": len(job.document_ids),
                },
            )
        )
        return updated

    async def reconcile_stale_jobs(self) -> List[str]:
        """
        Fail jobs stuck in ``processing`` past the stale threshold.

        A job is stale once its last update is older than the timeout times
        ``stale_timeout_multiplier``. Any worker that owned it has long been
        cancelled by then.

        Returns:
            Ids of the jobs that were moved to ``failed``
        """
        threshold = utcnow() - timedelta(seconds=self.settings.stale_after_seconds)
        try:
            stale = await asyncio.to_thread(self._db.fetch_stale_processing_jobs, threshold)
        except Exception as e:
            logger.error(f"Failed to fetch stale export jobs: {e}")
            return []

        reconciled: List[str] = []
        for job in stale:
            if await self.fail_job(job, ExportError(STALLED_MESSAGE)):
                reconciled.append(job.id)
        if reconciled:
            logger.warning(f"Reconciled {len(reconciled)} stalled export job(s)")
        return reconciled
