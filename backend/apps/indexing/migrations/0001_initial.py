# Generated migration for DocumentSection and PipelineJob models

from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone
import pgvector.django
import uuid


def create_vector_extension(apps, schema_editor):
    """pgvector only exists on PostgreSQL; other backends store vectors as text."""
    if schema_editor.connection.vendor == 'postgresql':
        schema_editor.execute('CREATE EXTENSION IF NOT EXISTS vector')


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('docs', '0001_initial'),
    ]

    operations = [
        migrations.RunPython(create_vector_extension, migrations.RunPython.noop),
        migrations.CreateModel(
            name='DocumentSection',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('section_index', models.PositiveIntegerField(help_text='Index of this section within the document (0-based)')),
                ('page_start', models.PositiveIntegerField(help_text='First source page (1-based)')),
                ('page_end', models.PositiveIntegerField(help_text='Last source page (1-based)')),
                ('heading', models.CharField(blank=True, max_length=500, null=True)),
                ('text', models.TextField(help_text='The text content of this section')),
                ('embedding', pgvector.django.VectorField(blank=True, help_text='Embedding vector of the section text', null=True)),
                ('embedding_model', models.CharField(blank=True, default='', max_length=100)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('document', models.ForeignKey(help_text='The source document', on_delete=django.db.models.deletion.CASCADE, related_name='sections', to='docs.document')),
            ],
            options={
                'db_table': 'document_sections',
                'ordering': ['document', 'section_index'],
                'indexes': [models.Index(fields=['document', 'page_start'], name='sections_doc_page_idx')],
                'constraints': [models.UniqueConstraint(fields=('document', 'section_index'), name='unique_document_section')],
            },
        ),
        migrations.CreateModel(
            name='PipelineJob',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('kind', models.CharField(choices=[('manifest', 'Manifest discovery'), ('extract', 'Text extraction'), ('chunk', 'Chunking'), ('embed', 'Embedding'), ('summary', 'Summary'), ('artifact', 'Artifact build')], db_index=True, max_length=20)),
                ('job_key', models.CharField(help_text='Idempotency key of the job', max_length=300)),
                ('payload', models.JSONField(help_text='Tagged stage payload')),
                ('priority', models.IntegerField(default=1000, help_text='Lower runs first')),
                ('status', models.CharField(choices=[('QUEUED', 'Queued'), ('RUNNING', 'Running'), ('COMPLETE', 'Complete'), ('FAILED', 'Failed')], db_index=True, default='QUEUED', max_length=20)),
                ('attempts', models.PositiveSmallIntegerField(default=0)),
                ('max_attempts', models.PositiveSmallIntegerField(default=3)),
                ('available_at', models.DateTimeField(default=django.utils.timezone.now, help_text='Not claimable before this time')),
                ('locked_at', models.DateTimeField(blank=True, null=True)),
                ('last_error', models.TextField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'pipeline_jobs',
                'ordering': ['priority', 'created_at'],
                'indexes': [models.Index(fields=['kind', 'status', 'priority', 'created_at'], name='jobs_claim_order_idx')],
                'constraints': [models.UniqueConstraint(condition=models.Q(('status__in', ['QUEUED', 'RUNNING'])), fields=('job_key',), name='unique_active_job_key')],
            },
        ),
    ]
