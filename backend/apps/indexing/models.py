"""
Section rows for the incremental retrieval path and the pipeline job queue.
"""
import uuid
from django.db import models
from django.db.models import Q
from django.utils import timezone
from pgvector.django import VectorField

from apps.docs.models import Document


class DocumentSection(models.Model):
    """
    A text chunk from a document with its embedding vector.

    Sections are replaced wholesale (delete then create) whenever the embed
    stage reruns for a document.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    document = models.ForeignKey(
        Document,
        on_delete=models.CASCADE,
        related_name='sections',
        help_text="The source document"
    )

    section_index = models.PositiveIntegerField(
        help_text="Index of this section within the document (0-based)"
    )
    page_start = models.PositiveIntegerField(help_text="First source page (1-based)")
    page_end = models.PositiveIntegerField(help_text="Last source page (1-based)")
    heading = models.CharField(max_length=500, null=True, blank=True)

    text = models.TextField(help_text="The text content of this section")

    # Dimension depends on the embedding model (1536 for OpenAI, 256 for the fallback)
    embedding = VectorField(
        null=True,
        blank=True,
        help_text="Embedding vector of the section text"
    )
    embedding_model = models.CharField(max_length=100, blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'document_sections'
        ordering = ['document', 'section_index']
        constraints = [
            models.UniqueConstraint(
                fields=['document', 'section_index'],
                name='unique_document_section'
            )
        ]
        indexes = [
            models.Index(fields=['document', 'page_start'], name='sections_doc_page_idx'),
        ]

    def __str__(self):
        preview = self.text[:50] + '...' if len(self.text) > 50 else self.text
        return f"Section {self.section_index} of {self.document.title}: {preview}"


class JobKind(models.TextChoices):
    """Pipeline stage a job belongs to."""
    MANIFEST = 'manifest', 'Manifest discovery'
    EXTRACT = 'extract', 'Text extraction'
    CHUNK = 'chunk', 'Chunking'
    EMBED = 'embed', 'Embedding'
    SUMMARY = 'summary', 'Summary'
    ARTIFACT = 'artifact', 'Artifact build'


class JobStatus(models.TextChoices):
    QUEUED = 'QUEUED', 'Queued'
    RUNNING = 'RUNNING', 'Running'
    COMPLETE = 'COMPLETE', 'Complete'
    FAILED = 'FAILED', 'Failed'


class PipelineJob(models.Model):
    """
    A durable unit of work for one pipeline stage.

    Jobs are claimed in (priority, created_at) order, lowest priority first.
    At most one QUEUED/RUNNING job exists per job_key.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    kind = models.CharField(max_length=20, choices=JobKind.choices, db_index=True)
    job_key = models.CharField(max_length=300, help_text="Idempotency key of the job")
    payload = models.JSONField(help_text="Tagged stage payload")
    priority = models.IntegerField(default=1000, help_text="Lower runs first")

    status = models.CharField(
        max_length=20,
        choices=JobStatus.choices,
        default=JobStatus.QUEUED,
        db_index=True,
    )
    attempts = models.PositiveSmallIntegerField(default=0)
    max_attempts = models.PositiveSmallIntegerField(default=3)
    available_at = models.DateTimeField(default=timezone.now, help_text="Not claimable before this time")
    locked_at = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'pipeline_jobs'
        ordering = ['priority', 'created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['job_key'],
                condition=Q(status__in=['QUEUED', 'RUNNING']),
                name='unique_active_job_key'
            )
        ]
        indexes = [
            models.Index(fields=['kind', 'status', 'priority', 'created_at'], name='jobs_claim_order_idx'),
        ]

    def __str__(self):
        return f"{self.kind} job {self.job_key} ({self.status}, attempt {self.attempts}/{self.max_attempts})"
