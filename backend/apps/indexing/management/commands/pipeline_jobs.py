"""
Django management command to inspect the pipeline job queue.

Usage:
    python manage.py pipeline_jobs
    python manage.py pipeline_jobs --failed
    python manage.py pipeline_jobs --clear [--stage KIND]
"""
from django.core.management.base import BaseCommand

from apps.indexing.models import JobKind, JobStatus, PipelineJob
from apps.indexing.queue import JobQueue


class Command(BaseCommand):
    help = 'Show pipeline job counts, list dead jobs, or clear them'

    def add_arguments(self, parser):
        parser.add_argument('--failed', action='store_true', help='List dead jobs with their last error')
        parser.add_argument('--clear', action='store_true', help='Delete dead jobs')
        parser.add_argument('--stage', choices=[k.value for k in JobKind], help='Limit to one job kind')

    def handle(self, *args, **options):
        queue = JobQueue()
        kind = options['stage']

        if options['clear']:
            deleted = queue.clear_failed(kind)
            self.stdout.write(self.style.SUCCESS(f'Deleted {deleted} failed job(s)'))
            return

        if options['failed']:
            jobs = PipelineJob.objects.filter(status=JobStatus.FAILED).order_by('-updated_at')
            if kind:
                jobs = jobs.filter(kind=kind)
            for job in jobs:
                self.stdout.write(f'{job.kind:9} {job.job_key}  attempts={job.attempts}  {job.last_error or ""}')
            return

        counts = queue.counts()
        if not counts:
            self.stdout.write('No jobs')
            return
        for job_kind in sorted(counts):
            if kind and job_kind != kind:
                continue
            summary = ', '.join(f'{status}={n}' for status, n in sorted(counts[job_kind].items()))
            self.stdout.write(f'{job_kind:9} {summary}')
