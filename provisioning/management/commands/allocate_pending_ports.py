from django.core.management.base import BaseCommand, CommandError

from provisioning.application import use_cases
from provisioning.domain.exceptions import StorageFatal, StorageTransient


class Command(BaseCommand):
    help = "Retry port allocation for subscriptions waiting in PENDING_ALLOCATION."

    def handle(self, *args, **options):
        try:
            allocated, pending = use_cases.allocate_pending_subscriptions()
        except (StorageTransient, StorageFatal) as exc:
            raise CommandError(f"{exc.code}: {exc}")

        for port in allocated:
            self.stdout.write(f"allocated {port.instance_url} to subscription {port.assigned_subscription_id}")

        self.stdout.write(
            self.style.SUCCESS(f"Allocated {len(allocated)} port(s), {len(pending)} subscription(s) still pending")
        )
