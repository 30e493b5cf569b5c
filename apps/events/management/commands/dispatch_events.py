from django.core.management.base import BaseCommand

from apps.events.services import dispatch_pending


class Command(BaseCommand):
    help = "Deliver pending outbox events to their subscribers."

    def add_arguments(self, parser):
        parser.add_argument("--limit", type=int, default=100)

    def handle(self, *args, **options):
        delivered, total = dispatch_pending(limit=options["limit"])
        self.stdout.write(self.style.SUCCESS(f"Delivered events: {delivered}/{total}"))
