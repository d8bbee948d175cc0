"""
Upload, Document and index models.

Uploads are raw payloads (a file or an archive). Ingestion discovers one
Document per file, identified by the sha256 of its bytes within an
(organization, tender). IndexArtifact tracks the packaged snapshot of an
upload's full index.
"""
import uuid
from django.db import models, transaction


class UploadKind(models.TextChoices):
    """What the uploaded payload is."""
    FILE = 'FILE', 'Single file'
    ARCHIVE = 'ARCHIVE', 'Zip archive'


class UploadStatus(models.TextChoices):
    """Lifecycle of an upload."""
    PENDING = 'PENDING', 'Pending'
    PROCESSING = 'PROCESSING', 'Processing'
    COMPLETED = 'COMPLETED', 'Completed'
    FAILED = 'FAILED', 'Failed'


class DocumentStatus(models.TextChoices):
    """Status of a document in the ingestion pipeline."""
    PENDING = 'PENDING', 'Pending'
    EXTRACTING = 'EXTRACTING', 'Extracting text'
    CHUNKING = 'CHUNKING', 'Chunking text'
    EMBEDDING = 'EMBEDDING', 'Generating embeddings'
    SUMMARIZING = 'SUMMARIZING', 'Summarizing'
    READY = 'READY', 'Ready'
    FAILED = 'FAILED', 'Failed'


# Forward order of the pipeline; FAILED sits outside it
STATUS_ORDER = [
    DocumentStatus.PENDING,
    DocumentStatus.EXTRACTING,
    DocumentStatus.CHUNKING,
    DocumentStatus.EMBEDDING,
    DocumentStatus.SUMMARIZING,
    DocumentStatus.READY,
]


class ArtifactStatus(models.TextChoices):
    """Lifecycle of a packaged index artifact."""
    BUILDING = 'BUILDING', 'Building'
    READY = 'READY', 'Ready'
    FAILED = 'FAILED', 'Failed'


class TenderReadiness(models.TextChoices):
    PENDING = 'PENDING', 'Pending'
    PARTIAL = 'PARTIAL', 'Partially ready'
    READY = 'READY', 'Ready'


class Upload(models.Model):
    """A raw payload submitted by a user, before ingestion."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    org_id = models.CharField(max_length=64, db_index=True, help_text="Owning organization")
    tender_id = models.CharField(max_length=64, db_index=True, help_text="Tender the upload belongs to")
    user_id = models.CharField(max_length=255, help_text="User who uploaded the payload")

    filename = models.CharField(max_length=255, help_text="Original filename")
    content_type = models.CharField(max_length=100, help_text="Declared MIME type")
    kind = models.CharField(max_length=10, choices=UploadKind.choices, default=UploadKind.FILE)
    size_bytes = models.PositiveBigIntegerField(help_text="Payload size in bytes")

    bucket = models.CharField(max_length=100, help_text="Blob store bucket")
    storage_key = models.CharField(max_length=500, help_text="Blob store key of the raw payload")

    status = models.CharField(
        max_length=20,
        choices=UploadStatus.choices,
        default=UploadStatus.PENDING,
        db_index=True,
    )
    error = models.TextField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'uploads'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['tender_id', 'created_at'], name='uploads_tender_created_idx'),
        ]

    def __str__(self):
        return f"{self.filename} ({self.status})"


class Document(models.Model):
    """
    One logical file discovered inside an Upload.

    Status only moves forward through STATUS_ORDER. FAILED can be entered
    from anywhere, and is only left through reset_for_retry().
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    org_id = models.CharField(max_length=64, db_index=True)
    tender_id = models.CharField(max_length=64, db_index=True)
    doc_hash = models.CharField(max_length=64, help_text="SHA-256 of the file bytes")

    title = models.CharField(max_length=255)
    filename = models.CharField(max_length=500, help_text="Path of the file inside its upload")
    content_type = models.CharField(max_length=100, blank=True, default='')
    size_bytes = models.PositiveBigIntegerField(default=0)
    page_count = models.PositiveIntegerField(null=True, blank=True)
    has_text = models.BooleanField(null=True, blank=True)

    bucket = models.CharField(max_length=100)
    raw_key = models.CharField(max_length=500, help_text="Blob key of the raw file")
    source_upload = models.ForeignKey(
        Upload,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name='documents',
    )

    status = models.CharField(
        max_length=20,
        choices=DocumentStatus.choices,
        default=DocumentStatus.PENDING,
        db_index=True,
    )
    last_error = models.CharField(max_length=500, null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'documents'
        ordering = ['filename']
        constraints = [
            models.UniqueConstraint(
                fields=['org_id', 'tender_id', 'doc_hash'],
                name='unique_document_per_tender'
            )
        ]
        indexes = [
            models.Index(fields=['tender_id', 'status'], name='documents_tender_status_idx'),
        ]

    def __str__(self):
        return f"{self.title} ({self.status})"

    @staticmethod
    def _rank(status: str) -> int:
        return STATUS_ORDER.index(status)

    def advance(self, status: str) -> bool:
        """
        Move forward to `status`. Never moves backwards or out of FAILED.

        Returns True if the row changed.
        """
        if status == DocumentStatus.FAILED:
            raise ValueError("Use mark_failed() to fail a document")

        with transaction.atomic():
            current = Document.objects.select_for_update().get(pk=self.pk)
            if current.status == DocumentStatus.FAILED:
                self.status = current.status
                return False
            if self._rank(status) <= self._rank(current.status):
                self.status = current.status
                return False
            Document.objects.filter(pk=self.pk).update(status=status, last_error=None)

        self.status = status
        self.last_error = None
        return True

    def mark_failed(self, error: str) -> None:
        message = (error or 'Unknown error')[:500]
        Document.objects.filter(pk=self.pk).update(status=DocumentStatus.FAILED, last_error=message)
        self.status = DocumentStatus.FAILED
        self.last_error = message

    def reset_for_retry(self, status: str) -> None:
        """Explicit retry: leave FAILED and resume at `status`."""
        updated = Document.objects.filter(pk=self.pk, status=DocumentStatus.FAILED).update(
            status=status, last_error=None
        )
        if updated:
            self.status = status
            self.last_error = None


class DocumentSummary(models.Model):
    """Short abstract of a ready document, built from its first sections."""
    document = models.OneToOneField(Document, on_delete=models.CASCADE, related_name='summary')
    abstract = models.TextField()
    section_count = models.PositiveIntegerField(default=0)
    storage_key = models.CharField(max_length=500)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'document_summaries'


class IndexArtifact(models.Model):
    """
    A packaged, versioned index snapshot of an upload.

    READY artifacts are never modified, only superseded by a new version.
    One row per (org, tender, docHash): identical bytes uploaded by two
    organizations get two independent artifacts.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    org_id = models.CharField(max_length=64, db_index=True)
    tender_id = models.CharField(max_length=64, db_index=True)
    doc_hash = models.CharField(max_length=64, db_index=True)
    upload = models.ForeignKey(Upload, null=True, blank=True, on_delete=models.SET_NULL, related_name='artifacts')

    version = models.PositiveIntegerField(default=1)
    storage_key = models.CharField(max_length=500, blank=True, default='')
    status = models.CharField(
        max_length=20,
        choices=ArtifactStatus.choices,
        default=ArtifactStatus.BUILDING,
        db_index=True,
    )

    total_chunks = models.PositiveIntegerField(default=0)
    total_pages = models.PositiveIntegerField(default=0)
    embedding_model = models.CharField(max_length=100, blank=True, default='')
    embedding_dimensions = models.PositiveIntegerField(default=0)
    checksum = models.CharField(max_length=64, blank=True, default='')
    bytes = models.PositiveBigIntegerField(default=0)
    error = models.CharField(max_length=500, null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'index_artifacts'
        constraints = [
            models.UniqueConstraint(
                fields=['org_id', 'tender_id', 'doc_hash'],
                name='unique_artifact_per_tender'
            )
        ]
        indexes = [
            models.Index(fields=['tender_id', 'status'], name='artifacts_tender_status_idx'),
        ]

    def __str__(self):
        return f"Artifact {self.doc_hash[:12]} v{self.version} ({self.status})"


class TenderIngestion(models.Model):
    """Per-tender rollup of how many documents are READY."""
    tender_id = models.CharField(max_length=64, primary_key=True)
    status = models.CharField(max_length=20, choices=TenderReadiness.choices, default=TenderReadiness.PENDING)
    ready_docs = models.PositiveIntegerField(default=0)
    total_docs = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'tender_ingestion'

    def to_dict(self) -> dict:
        return {
            'tenderId': self.tender_id,
            'status': self.status,
            'readyDocs': self.ready_docs,
            'totalDocs': self.total_docs,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }

