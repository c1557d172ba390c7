import time

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from Nakliye.constants import OFFER_SWEEP_WORKER_NAME
from Nakliye.offers import sweep_expired_offers
from Nakliye.scheduler import SchedulerLease, WorkerHeartbeat, get_lease_ttl_seconds


class Command(BaseCommand):
    help = "Marks pending assignment offers past their deadline as expired and releases their jobs."

    def add_arguments(self, parser):
        parser.add_argument("--loop", action="store_true", help="Keep sweeping every --interval seconds.")
        parser.add_argument(
            "--interval",
            type=int,
            default=None,
            help="Seconds between sweeps in --loop mode (default: OFFER_SWEEP_INTERVAL_SECONDS or 60).",
        )
        parser.add_argument("--max-runs", type=int, default=0, help="Stop --loop after this many sweeps (0 = never).")

    def handle(self, *args, **options):
        interval = options["interval"]
        if interval is None:
            interval = int(getattr(settings, "OFFER_SWEEP_INTERVAL_SECONDS", 60))
        max_runs = int(options["max_runs"])
        if interval < 1:
            raise CommandError("--interval must be >= 1")
        if max_runs < 0:
            raise CommandError("--max-runs must be >= 0")

        lease = SchedulerLease(OFFER_SWEEP_WORKER_NAME, get_lease_ttl_seconds(interval))
        heartbeat = WorkerHeartbeat(OFFER_SWEEP_WORKER_NAME)
        run_count = 0
        try:
            while True:
                if lease.acquire():
                    run_count += 1
                    expired_count = self.sweep_once(heartbeat)
                    self.stdout.write(
                        self.style.SUCCESS(
                            f"[{timezone.localtime().strftime('%Y-%m-%d %H:%M:%S')}] "
                            f"Offer sweep run #{run_count} completed: {expired_count} offer(s) expired."
                        )
                    )
                else:
                    self.stdout.write(
                        self.style.WARNING("Offer sweep skipped: another worker currently holds the lock.")
                    )

                if not options["loop"] or (max_runs and run_count >= max_runs):
                    break
                time.sleep(interval)
        except KeyboardInterrupt:
            self.stdout.write(self.style.WARNING("Offer sweep loop interrupted by user."))
        finally:
            lease.release()

    def sweep_once(self, heartbeat):
        heartbeat.started()
        try:
            expired_count = sweep_expired_offers()
        except Exception as exc:
            heartbeat.failed(exc)
            raise
        heartbeat.succeeded()
        return expired_count
