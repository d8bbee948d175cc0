# Generated migration for Upload, Document, DocumentSummary, IndexArtifact and TenderIngestion models

from django.db import migrations, models
import django.db.models.deletion
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Upload',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('org_id', models.CharField(db_index=True, help_text='Owning organization', max_length=64)),
                ('tender_id', models.CharField(db_index=True, help_text='Tender the upload belongs to', max_length=64)),
                ('user_id', models.CharField(help_text='User who uploaded the payload', max_length=255)),
                ('filename', models.CharField(help_text='Original filename', max_length=255)),
                ('content_type', models.CharField(help_text='Declared MIME type', max_length=100)),
                ('kind', models.CharField(choices=[('FILE', 'Single file'), ('ARCHIVE', 'Zip archive')], default='FILE', max_length=10)),
                ('size_bytes', models.PositiveBigIntegerField(help_text='Payload size in bytes')),
                ('bucket', models.CharField(help_text='Blob store bucket', max_length=100)),
                ('storage_key', models.CharField(help_text='Blob store key of the raw payload', max_length=500)),
                ('status', models.CharField(choices=[('PENDING', 'Pending'), ('PROCESSING', 'Processing'), ('COMPLETED', 'Completed'), ('FAILED', 'Failed')], db_index=True, default='PENDING', max_length=20)),
                ('error', models.TextField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'uploads',
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['tender_id', 'created_at'], name='uploads_tender_created_idx')],
            },
        ),
        migrations.CreateModel(
            name='Document',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('org_id', models.CharField(db_index=True, max_length=64)),
                ('tender_id', models.CharField(db_index=True, max_length=64)),
                ('doc_hash', models.CharField(help_text='SHA-256 of the file bytes', max_length=64)),
                ('title', models.CharField(max_length=255)),
                ('filename', models.CharField(help_text='Path of the file inside its upload', max_length=500)),
                ('content_type', models.CharField(blank=True, default='', max_length=100)),
                ('size_bytes', models.PositiveBigIntegerField(default=0)),
                ('page_count', models.PositiveIntegerField(blank=True, null=True)),
                ('has_text', models.BooleanField(blank=True, null=True)),
                ('bucket', models.CharField(max_length=100)),
                ('raw_key', models.CharField(help_text='Blob key of the raw file', max_length=500)),
                ('status', models.CharField(choices=[('PENDING', 'Pending'), ('EXTRACTING', 'Extracting text'), ('CHUNKING', 'Chunking text'), ('EMBEDDING', 'Generating embeddings'), ('SUMMARIZING', 'Summarizing'), ('READY', 'Ready'), ('FAILED', 'Failed')], db_index=True, default='PENDING', max_length=20)),
                ('last_error', models.CharField(blank=True, max_length=500, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('source_upload', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='documents', to='docs.upload')),
            ],
            options={
                'db_table': 'documents',
                'ordering': ['filename'],
                'indexes': [models.Index(fields=['tender_id', 'status'], name='documents_tender_status_idx')],
                'constraints': [models.UniqueConstraint(fields=('org_id', 'tender_id', 'doc_hash'), name='unique_document_per_tender')],
            },
        ),
        migrations.CreateModel(
            name='DocumentSummary',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('abstract', models.TextField()),
                ('section_count', models.PositiveIntegerField(default=0)),
                ('storage_key', models.CharField(max_length=500)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('document', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='summary', to='docs.document')),
            ],
            options={
                'db_table': 'document_summaries',
            },
        ),
        migrations.CreateModel(
            name='IndexArtifact',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('org_id', models.CharField(db_index=True, max_length=64)),
                ('tender_id', models.CharField(db_index=True, max_length=64)),
                ('doc_hash', models.CharField(max_length=64, unique=True)),
                ('version', models.PositiveIntegerField(default=1)),
                ('storage_key', models.CharField(blank=True, default='', max_length=500)),
                ('status', models.CharField(choices=[('BUILDING', 'Building'), ('READY', 'Ready'), ('FAILED', 'Failed')], db_index=True, default='BUILDING', max_length=20)),
                ('total_chunks', models.PositiveIntegerField(default=0)),
                ('total_pages', models.PositiveIntegerField(default=0)),
                ('embedding_model', models.CharField(blank=True, default='', max_length=100)),
                ('embedding_dimensions', models.PositiveIntegerField(default=0)),
                ('checksum', models.CharField(blank=True, default='', max_length=64)),
                ('bytes', models.PositiveBigIntegerField(default=0)),
                ('error', models.CharField(blank=True, max_length=500, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('upload', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='artifacts', to='docs.upload')),
            ],
            options={
                'db_table': 'index_artifacts',
                'indexes': [models.Index(fields=['tender_id', 'status'], name='artifacts_tender_status_idx')],
            },
        ),
        migrations.CreateModel(
            name='TenderIngestion',
            fields=[
                ('tender_id', models.CharField(max_length=64, primary_key=True, serialize=False)),
                ('status', models.CharField(choices=[('PENDING', 'Pending'), ('PARTIAL', 'Partially ready'), ('READY', 'Ready')], default='PENDING', max_length=20)),
                ('ready_docs', models.PositiveIntegerField(default=0)),
                ('total_docs', models.PositiveIntegerField(default=0)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'tender_ingestion',
            },
        ),
    ]
