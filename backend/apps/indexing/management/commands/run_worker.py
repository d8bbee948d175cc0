"""
Django management command to run the pipeline workers.

Usage:
    python manage.py run_worker
    python manage.py run_worker --stage embed
    python manage.py run_worker --once
"""
from django.core.management.base import BaseCommand

from apps.indexing.models import JobKind
from apps.indexing.runtime import get_runtime
from apps.indexing.worker import StageWorkerPool


class Command(BaseCommand):
    help = 'Run the document pipeline workers'

    def add_arguments(self, parser):
        parser.add_argument(
            '--stage',
            choices=[k.value for k in JobKind],
            help='Only process jobs of this kind',
        )
        parser.add_argument(
            '--once',
            action='store_true',
            help='Process one job and exit (for testing)',
        )

    def handle(self, *args, **options):
        kinds = [options['stage']] if options['stage'] else None
        pool = StageWorkerPool(get_runtime(), kinds=kinds)

        if options['once']:
            self.stdout.write('Running worker once...')
            if pool.run_once():
                self.stdout.write(self.style.SUCCESS('Processed one job'))
            else:
                self.stdout.write('No jobs available')
        else:
            self.stdout.write(f"Starting workers for {', '.join(pool.kinds)}...")
            pool.run()
