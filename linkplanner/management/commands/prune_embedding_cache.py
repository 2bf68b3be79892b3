from django.conf import settings
from django.core.management.base import BaseCommand

from linkplanner.services import prune_embedding_cache


class Command(BaseCommand):
    help = 'Delete persistent embedding cache entries that have not been used recently.'

    def add_arguments(self, parser):
        parser.add_argument('--days', type=int, default=None, help='Maximum age in days since last use.')

    def handle(self, *args, **options):
        days = options['days']
        if days is None:
            days = getattr(settings, 'LINKPLANNER_EMBEDDING_CACHE_MAX_AGE_DAYS', 90)
        deleted = prune_embedding_cache(days)
        self.stdout.write(self.style.SUCCESS(f'Deleted {deleted} cache entries older than {days} days.'))
