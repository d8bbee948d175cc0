# Scope IndexArtifact uniqueness to (org_id, tender_id, doc_hash)

from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('docs', '0001_initial'),
    ]

    operations = [
        migrations.AlterField(
            model_name='indexartifact',
            name='doc_hash',
            field=models.CharField(db_index=True, max_length=64),
        ),
        migrations.AddConstraint(
            model_name='indexartifact',
            constraint=models.UniqueConstraint(fields=('org_id', 'tender_id', 'doc_hash'), name='unique_artifact_per_tender'),
        ),
    ]
