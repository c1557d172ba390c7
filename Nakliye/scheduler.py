"""Single-runner leases and heartbeats for background workers.

A worker holds a time-boxed ``SchedulerLock`` row while it runs; a crashed
holder stops blocking others once ``locked_until`` passes. The heartbeat
row is what the health endpoint reads.
"""

import logging
from datetime import timedelta
from uuid import uuid4

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from .models import SchedulerHeartbeat, SchedulerLock

logger = logging.getLogger(__name__)


def get_lease_ttl_seconds(interval_seconds):
    configured = int(getattr(settings, "LIFECYCLE_LOCK_TTL_SECONDS", max(interval_seconds * 3, 60)))
    return max(10, configured)


class SchedulerLease:
    def __init__(self, worker_name, ttl_seconds, owner=None):
        self.worker_name = worker_name
        self.ttl_seconds = ttl_seconds
        self.owner = owner or uuid4().hex

    def acquire(self, now=None):
        """Take or renew the lease; False while another owner's lease is live."""
        now = now or timezone.now()
        locked_until = now + timedelta(seconds=self.ttl_seconds)
        with transaction.atomic():
            lock, created = SchedulerLock.objects.select_for_update().get_or_create(
                worker_name=self.worker_name,
                defaults={"lock_owner": self.owner, "locked_until": locked_until, "last_acquired_at": now},
            )
            if created:
                return True
            if lock.lock_owner and lock.lock_owner != self.owner and lock.locked_until and lock.locked_until > now:
                return False
            if lock.lock_owner and lock.lock_owner != self.owner:
                logger.warning("%s: taking over lease left by %s", self.worker_name, lock.lock_owner)
            lock.lock_owner = self.owner
            lock.locked_until = locked_until
            lock.last_acquired_at = now
            lock.save(update_fields=["lock_owner", "locked_until", "last_acquired_at", "updated_at"])
            return True

    def release(self):
        with transaction.atomic():
            lock = SchedulerLock.objects.select_for_update().filter(worker_name=self.worker_name).first()
            if lock is None or lock.lock_owner != self.owner:
                return False
            lock.lock_owner = ""
            lock.locked_until = timezone.now() - timedelta(seconds=1)
            lock.save(update_fields=["lock_owner", "locked_until", "updated_at"])
            return True


class WorkerHeartbeat:
    def __init__(self, worker_name):
        self.worker_name = worker_name

    def started(self):
        now = timezone.now()
        SchedulerHeartbeat.objects.get_or_create(worker_name=self.worker_name)
        SchedulerHeartbeat.objects.filter(worker_name=self.worker_name).update(
            run_count=F("run_count") + 1,
            last_started_at=now,
            last_error="",
            updated_at=now,
        )
        return now

    def succeeded(self):
        now = timezone.now()
        SchedulerHeartbeat.objects.filter(worker_name=self.worker_name).update(
            last_success_at=now,
            last_error="",
            updated_at=now,
        )

    def failed(self, exc):
        now = timezone.now()
        SchedulerHeartbeat.objects.filter(worker_name=self.worker_name).update(
            last_error_at=now,
            last_error=str(exc)[:240],
            updated_at=now,
        )
        logger.error("%s run failed: %s", self.worker_name, exc)


def describe_heartbeat(worker_name, stale_after_seconds, now=None):
    """Health summary of a worker; ``status`` is missing, stale or healthy."""
    heartbeat = SchedulerHeartbeat.objects.filter(worker_name=worker_name).first()
    if heartbeat is None:
        return {
            "ok": False,
            "worker_name": worker_name,
            "status": "missing",
            "stale_after_seconds": stale_after_seconds,
        }

    reference_at = heartbeat.last_success_at or heartbeat.last_started_at or heartbeat.updated_at
    age_seconds = None
    is_stale = True
    if reference_at is not None:
        age_seconds = max(0, int(((now or timezone.now()) - reference_at).total_seconds()))
        is_stale = age_seconds > stale_after_seconds
    return {
        "ok": not is_stale,
        "worker_name": worker_name,
        "status": "stale" if is_stale else "healthy",
        "stale_after_seconds": stale_after_seconds,
        "age_seconds": age_seconds,
        "run_count": heartbeat.run_count,
        "last_success_at": heartbeat.last_success_at.isoformat() if heartbeat.last_success_at else None,
        "last_error": heartbeat.last_error,
    }
