"""Authoritative per-shipment state machine.

Listings, bids and assignment offers never write ``ShipmentJob.status`` or
the bound carrier themselves: they describe what happened as a
``LifecycleEvent`` and hand it to ``apply_lifecycle_event``. Callers run it
inside their own ``transaction.atomic()`` block, so an engine rejection
rolls their change back as well. Binding a carrier also closes the job's
open listings in the same transaction.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from . import realtime
from .constants import (
    EVENT_BID_WON,
    EVENT_CANCELLED,
    EVENT_OFFER_EXPIRED,
    EVENT_OFFER_ISSUED,
    EVENT_OFFER_REJECTED,
    EVENT_OFFER_WON,
    EVENT_WORK_COMPLETED,
    EVENT_WORK_STARTED,
    JOB_UNBOUND_STATUSES,
)
from .errors import AlreadyBound, Forbidden, NotBound, NotFound, OfferAlreadyActive, OfferAlreadyResolved
from .models import AssignmentOffer, Bid, ShipmentJob, WorkflowEvent

logger = logging.getLogger(__name__)


JOB_ALLOWED_TRANSITIONS = {
    "listed": {"accepted", "assignment_offered", "cancelled"},
    "assignment_offered": {"accepted", "listed", "cancelled"},
    "bid_accepted": set(),
    "accepted": {"in_progress"},
    "in_progress": {"completed"},
    "completed": set(),
    "cancelled": set(),
}

EVENT_TRANSITIONS = {
    (EVENT_BID_WON, "listed"): "accepted",
    (EVENT_OFFER_ISSUED, "listed"): "assignment_offered",
    (EVENT_OFFER_WON, "assignment_offered"): "accepted",
    (EVENT_OFFER_REJECTED, "assignment_offered"): "listed",
    (EVENT_OFFER_EXPIRED, "assignment_offered"): "listed",
}

# Releasing events arriving after the job moved on are not errors; the
# sweep and a late reject may both report the same offer.
RELEASE_EVENTS = {EVENT_OFFER_REJECTED, EVENT_OFFER_EXPIRED}

STATUS_TIMESTAMP_FIELDS = {
    "listed": "listed_at",
    "assignment_offered": "offered_at",
    "accepted": "accepted_at",
    "in_progress": "started_at",
    "completed": "completed_at",
    "cancelled": "cancelled_at",
}


@dataclass(frozen=True)
class LifecycleEvent:
    kind: str
    shipment_ref: str
    carrier: Optional[object] = None
    price: Optional[Decimal] = None
    note: str = ""


def create_workflow_event(
    job,
    *,
    from_status,
    to_status,
    event_kind="",
    actor_user=None,
    actor_role="system",
    source="system",
    note="",
):
    return WorkflowEvent.objects.create(
        job=job,
        event_kind=event_kind,
        from_status=from_status,
        to_status=to_status,
        actor_user=actor_user,
        actor_role=actor_role,
        source=source,
        note=(note or "")[:240],
    )


def transition_job_status(
    job,
    next_status,
    extra_update_fields=None,
    *,
    event_kind="",
    actor_user=None,
    actor_role="system",
    source="system",
    note="",
    now=None,
):
    current_status = job.status
    if current_status == next_status:
        return False
    if next_status not in JOB_ALLOWED_TRANSITIONS.get(current_status, set()):
        return False

    reference = now or timezone.now()
    job.status = next_status
    update_fields = ["status", "updated_at", *(extra_update_fields or [])]
    timestamp_field = STATUS_TIMESTAMP_FIELDS.get(next_status)
    if timestamp_field:
        setattr(job, timestamp_field, reference)
        update_fields.append(timestamp_field)
    job.save(update_fields=list(dict.fromkeys(update_fields)))

    create_workflow_event(
        job,
        from_status=current_status,
        to_status=next_status,
        event_kind=event_kind,
        actor_user=actor_user,
        actor_role=actor_role,
        source=source,
        note=note,
    )
    logger.info("Job %s: %s -> %s (%s)", job.shipment_ref, current_status, next_status, event_kind or "-")
    return True


def lock_job(shipment_ref):
    job = ShipmentJob.objects.select_for_update().filter(shipment_ref=shipment_ref).first()
    if job is None:
        raise NotFound("Gönderi bulunamadı.", shipment_ref=shipment_ref)
    return job


def lock_job_by_id(job_id):
    # Lock order for every writer: job, then listing, then bid or offer.
    return ShipmentJob.objects.select_for_update().get(id=job_id)


def create_job_row(shipment_ref, *, broker=None, pickup_city="", delivery_city="", initial_status="listed"):
    """Insert the job row; returns (job, created).

    A concurrent insert of the same ``shipment_ref`` loses on the unique
    index; the loser re-reads and locks the winner's row instead.
    """
    try:
        with transaction.atomic():
            job = ShipmentJob.objects.create(
                shipment_ref=shipment_ref,
                broker=broker,
                status=initial_status,
                pickup_city=pickup_city,
                delivery_city=delivery_city,
                **{STATUS_TIMESTAMP_FIELDS[initial_status]: timezone.now()},
            )
    except IntegrityError:
        logger.info("Job %s was created concurrently, using the existing row", shipment_ref)
        return lock_job(shipment_ref), False
    return job, True


def ensure_job(shipment_ref, *, broker=None, pickup_city="", delivery_city="", initial_status="listed", actor_user=None):
    """Return the locked job for ``shipment_ref``, creating it when missing."""
    job = ShipmentJob.objects.select_for_update().filter(shipment_ref=shipment_ref).first()
    created = False
    if job is None:
        job, created = create_job_row(
            shipment_ref,
            broker=broker,
            pickup_city=pickup_city,
            delivery_city=delivery_city,
            initial_status=initial_status,
        )
    if not created:
        if broker is not None and job.broker_id and job.broker_id != broker.id:
            raise Forbidden("Bu gönderi başka bir nakliyeciye ait.", shipment_ref=shipment_ref)
        if job.status not in JOB_UNBOUND_STATUSES:
            raise already_bound(job)
        return job, False

    create_workflow_event(
        job,
        from_status="",
        to_status=initial_status,
        event_kind=EVENT_OFFER_ISSUED if initial_status == "assignment_offered" else "",
        actor_user=actor_user,
        actor_role="broker" if broker else "system",
        source="user" if actor_user else "system",
        note="Gönderi oluşturuldu",
    )
    return job, True


def already_bound(job):
    return AlreadyBound(
        shipment_ref=job.shipment_ref,
        status=job.status,
        carrier_id=job.carrier_id,
    )


def reject_invalid_event(job):
    if job.status not in JOB_UNBOUND_STATUSES:
        return already_bound(job)
    if job.status == "assignment_offered":
        return OfferAlreadyActive(shipment_ref=job.shipment_ref)
    return OfferAlreadyResolved(
        "Gönderi için bekleyen atama teklifi yok.",
        shipment_ref=job.shipment_ref,
    )


def apply_lifecycle_event(event, *, actor_user=None, actor_role="system", source="system", now=None):
    job = lock_job(event.shipment_ref)
    next_status = EVENT_TRANSITIONS.get((event.kind, job.status))
    if next_status is None:
        if event.kind in RELEASE_EVENTS:
            return job
        raise reject_invalid_event(job)

    extra_fields = []
    withdrawn_carrier_ids = set()
    if event.kind in {EVENT_BID_WON, EVENT_OFFER_WON}:
        job.carrier = event.carrier
        job.price = event.price
        job.won_via = "bid" if event.kind == EVENT_BID_WON else "offer"
        extra_fields = ["carrier", "price", "won_via"]
        # A bound job keeps no open marketplace: whichever path won, the rest is withdrawn.
        withdrawn_carrier_ids = withdraw_open_listings(job, now or timezone.now())

    transition_job_status(
        job,
        next_status,
        extra_fields,
        event_kind=event.kind,
        actor_user=actor_user,
        actor_role=actor_role,
        source=source,
        note=event.note,
        now=now,
    )
    carrier_id = getattr(event.carrier, "id", None) or job.carrier_id
    if carrier_id:
        realtime.notify_carriers_on_commit([carrier_id], event.kind, job.shipment_ref)
    withdrawn_carrier_ids.discard(carrier_id)
    if withdrawn_carrier_ids:
        realtime.notify_carriers_on_commit(withdrawn_carrier_ids, "bid_rejected", job.shipment_ref)
    return job


def withdraw_open_listings(job, reference):
    """Close the job's open listings and reject their pending bids.

    Returns the ids of the carriers whose bids were rejected. The caller
    holds the job lock.
    """
    pending_bids = Bid.objects.filter(listing__job=job, status="pending")
    carrier_ids = set(pending_bids.values_list("carrier_id", flat=True))
    pending_bids.update(status="rejected", responded_at=reference)
    closed_count = job.listings.filter(status="open").update(status="closed", closed_at=reference)
    if closed_count or carrier_ids:
        logger.info(
            "Job %s: %s open listings closed, %s pending bids rejected",
            job.shipment_ref,
            closed_count,
            len(carrier_ids),
        )
    return carrier_ids


def start_work(shipment_ref, carrier, *, actor_user=None, now=None):
    with transaction.atomic():
        job = lock_job(shipment_ref)
        if job.carrier_id != carrier.id or job.status != "accepted":
            raise NotBound(
                "İşe başlamak için iş size atanmış ve kabul edilmiş olmalı.",
                shipment_ref=shipment_ref,
                status=job.status,
            )
        transition_job_status(
            job,
            "in_progress",
            event_kind=EVENT_WORK_STARTED,
            actor_user=actor_user,
            actor_role="carrier",
            source="user",
            note="Taşıyıcı işe başladı",
            now=now,
        )
    realtime.notify_carriers_on_commit([carrier.id], EVENT_WORK_STARTED, shipment_ref)
    return job


def complete_job(shipment_ref, carrier, *, actor_user=None, now=None):
    with transaction.atomic():
        job = lock_job(shipment_ref)
        if job.carrier_id != carrier.id or job.status != "in_progress":
            raise NotBound(
                "Sadece yoldaki işler, atanmış taşıyıcı tarafından tamamlanabilir.",
                shipment_ref=shipment_ref,
                status=job.status,
            )
        transition_job_status(
            job,
            "completed",
            event_kind=EVENT_WORK_COMPLETED,
            actor_user=actor_user,
            actor_role="carrier",
            source="user",
            note="Taşıyıcı teslimatı tamamladı",
            now=now,
        )
    realtime.notify_carriers_on_commit([carrier.id], EVENT_WORK_COMPLETED, shipment_ref)
    return job


def cancel_job(shipment_ref, *, broker=None, actor_user=None, note="", now=None):
    reference = now or timezone.now()
    with transaction.atomic():
        job = lock_job(shipment_ref)
        if broker is not None and job.broker_id and job.broker_id != broker.id:
            raise Forbidden("Bu gönderi başka bir nakliyeciye ait.", shipment_ref=shipment_ref)
        if job.status == "cancelled":
            return job
        if job.status not in JOB_UNBOUND_STATUSES:
            raise already_bound(job)

        affected_carrier_ids = withdraw_open_listings(job, reference)
        pending_offers = AssignmentOffer.objects.filter(job=job, status="pending")
        affected_carrier_ids.update(pending_offers.values_list("carrier_id", flat=True))
        pending_offers.update(status="expired", responded_at=reference)

        transition_job_status(
            job,
            "cancelled",
            event_kind=EVENT_CANCELLED,
            actor_user=actor_user,
            actor_role="broker" if broker else "system",
            source="user" if actor_user else "system",
            note=note or "Nakliyeci gönderiyi iptal etti",
            now=reference,
        )
    realtime.notify_carriers_on_commit(affected_carrier_ids, EVENT_CANCELLED, shipment_ref)
    return job
