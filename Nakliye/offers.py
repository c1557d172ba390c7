"""Broker-initiated assignment offers.

Expiry is always derived from the stored ``expires_at`` and the time of the
call; ``sweep_expired_offers`` only makes the flag visible to queries and
is never needed for correctness.
"""

import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from uuid import uuid4

from django.conf import settings
from django.core.cache import cache
from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from . import realtime
from .constants import EVENT_OFFER_EXPIRED, EVENT_OFFER_ISSUED, EVENT_OFFER_REJECTED, EVENT_OFFER_WON
from .eligibility import EligibilityContext, get_eligibility_checker
from .errors import Forbidden, NotFound, OfferAlreadyActive, OfferAlreadyResolved, OfferExpired
from .identity import get_carrier_registered_city
from .lifecycle import LifecycleEvent, apply_lifecycle_event, ensure_job, lock_job_by_id
from .models import AssignmentOffer
from .sequences import LiveSequence

logger = logging.getLogger(__name__)


def get_offer_expiry_minutes():
    return max(1, int(getattr(settings, "OFFER_EXPIRY_MINUTES", 30)))


def get_offer_sweep_web_refresh_seconds():
    return max(5, int(getattr(settings, "OFFER_SWEEP_WEB_REFRESH_SECONDS", 60)))


def parse_offer_price(value):
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError({"price": "Teklif tutarı sayı olmalıdır."})
    if not price.is_finite() or price <= 0:
        raise ValidationError({"price": "Teklif tutarı sıfırdan büyük olmalıdır."})
    return price


def is_offer_expired(offer, now=None):
    reference = now or timezone.now()
    return offer.expires_at is not None and reference >= offer.expires_at


def resolve_expiry(offer, now=None):
    if offer.status == "pending" and is_offer_expired(offer, now):
        return "expired"
    return offer.status


def issue_offer(shipment_ref, carrier, pickup_city, price, *, broker=None, delivery_city="", actor_user=None, now=None):
    shipment_ref = str(shipment_ref or "").strip()
    pickup_city = " ".join(str(pickup_city or "").split())
    if not shipment_ref:
        raise ValidationError({"shipmentId": "Gönderi numarası gerekli."})
    if not pickup_city:
        raise ValidationError({"pickupCity": "Yükleme şehri gerekli."})
    price = parse_offer_price(price)
    reference = now or timezone.now()

    with transaction.atomic():
        job, created = ensure_job(
            shipment_ref,
            broker=broker,
            pickup_city=pickup_city,
            delivery_city=delivery_city,
            initial_status="assignment_offered",
            actor_user=actor_user,
        )
        active_offer = (
            AssignmentOffer.objects.select_for_update()
            .select_related("job", "carrier")
            .filter(job=job, status="pending")
            .first()
        )
        if active_offer is not None:
            if not is_offer_expired(active_offer, reference):
                raise OfferAlreadyActive(shipment_ref=shipment_ref, offer_id=active_offer.id)
            expire_offer(active_offer, now=reference)

        try:
            with transaction.atomic():
                offer = AssignmentOffer.objects.create(
                    job=job,
                    broker=broker,
                    carrier=carrier,
                    pickup_city=pickup_city,
                    price=price,
                    status="pending",
                    issued_at=reference,
                    expires_at=reference + timedelta(minutes=get_offer_expiry_minutes()),
                )
        except IntegrityError:
            raise OfferAlreadyActive(shipment_ref=shipment_ref)

        if not created:
            apply_lifecycle_event(
                LifecycleEvent(
                    kind=EVENT_OFFER_ISSUED,
                    shipment_ref=shipment_ref,
                    carrier=carrier,
                    price=price,
                    note=f"{carrier.full_name} için atama teklifi",
                ),
                actor_user=actor_user,
                actor_role="broker" if broker else "system",
                source="user" if actor_user else "system",
                now=reference,
            )
        else:
            realtime.notify_carriers_on_commit([carrier.id], EVENT_OFFER_ISSUED, shipment_ref)

    logger.info("Offer %s issued for shipment %s to carrier %s", offer.id, shipment_ref, carrier.id)
    return offer


def lock_offer(offer_id):
    job_id = AssignmentOffer.objects.filter(id=offer_id).values_list("job_id", flat=True).first()
    if job_id is None:
        raise NotFound("Atama teklifi bulunamadı.", offer_id=offer_id)
    job = lock_job_by_id(job_id)
    offer = AssignmentOffer.objects.select_for_update().select_related("carrier").get(id=offer_id)
    offer.job = job
    return offer


def expire_offer(offer, *, now=None, source="system"):
    """Mark a locked pending offer expired and release its job. Idempotent."""
    if offer.status != "pending":
        return False
    reference = now or timezone.now()
    offer.status = "expired"
    offer.responded_at = reference
    offer.save(update_fields=["status", "responded_at"])
    apply_lifecycle_event(
        LifecycleEvent(
            kind=EVENT_OFFER_EXPIRED,
            shipment_ref=offer.job.shipment_ref,
            carrier=offer.carrier,
            note="Atama teklifinin süresi doldu",
        ),
        actor_role="system",
        source=source,
        now=reference,
    )
    return True


def offer_expired_error(offer):
    return OfferExpired(
        offer_id=offer.id,
        shipment_ref=offer.job.shipment_ref,
        expires_at=offer.expires_at.isoformat(),
    )


def lock_offer_for_response(offer_id, carrier, reference):
    """Run the shared guards of accept/reject; returns (offer, expired)."""
    offer = lock_offer(offer_id)
    if offer.carrier_id != carrier.id:
        raise Forbidden("Bu atama teklifi size gönderilmedi.", offer_id=offer.id)
    if is_offer_expired(offer, reference):
        expire_offer(offer, now=reference, source="user")
        return offer, True
    if offer.status != "pending":
        raise OfferAlreadyResolved(offer_id=offer.id, status=offer.status)
    return offer, False


def accept_offer(offer_id, carrier, requester_city=None, *, actor_user=None, now=None):
    reference = now or timezone.now()
    with transaction.atomic():
        offer, expired = lock_offer_for_response(offer_id, carrier, reference)
        if not expired:
            carrier_city = requester_city if requester_city is not None else get_carrier_registered_city(carrier)
            get_eligibility_checker().check(
                EligibilityContext(
                    pickup_city=offer.pickup_city,
                    carrier_city=carrier_city,
                    carrier=carrier,
                    offer=offer,
                )
            )

            offer.status = "accepted"
            offer.responded_at = reference
            offer.save(update_fields=["status", "responded_at"])
            apply_lifecycle_event(
                LifecycleEvent(
                    kind=EVENT_OFFER_WON,
                    shipment_ref=offer.job.shipment_ref,
                    carrier=carrier,
                    price=offer.price,
                    note="Taşıyıcı atama teklifini kabul etti",
                ),
                actor_user=actor_user,
                actor_role="carrier",
                source="user",
                now=reference,
            )
    # Raised after the block so the expiry marking above is committed.
    if expired:
        raise offer_expired_error(offer)

    logger.info("Offer %s accepted by carrier %s", offer.id, carrier.id)
    return offer


def reject_offer(offer_id, carrier, reason="", *, actor_user=None, now=None):
    reference = now or timezone.now()
    with transaction.atomic():
        offer, expired = lock_offer_for_response(offer_id, carrier, reference)
        if not expired:
            offer.status = "rejected"
            offer.reject_reason = (reason or "").strip()[:240]
            offer.responded_at = reference
            offer.save(update_fields=["status", "reject_reason", "responded_at"])
            apply_lifecycle_event(
                LifecycleEvent(
                    kind=EVENT_OFFER_REJECTED,
                    shipment_ref=offer.job.shipment_ref,
                    carrier=carrier,
                    note=offer.reject_reason or "Taşıyıcı atama teklifini reddetti",
                ),
                actor_user=actor_user,
                actor_role="carrier",
                source="user",
                now=reference,
            )
    if expired:
        raise offer_expired_error(offer)

    logger.info("Offer %s rejected by carrier %s", offer.id, carrier.id)
    return offer


def list_pending_offers_for_carrier(carrier):
    def build_queryset():
        return (
            AssignmentOffer.objects.filter(carrier=carrier, status="pending", expires_at__gt=timezone.now())
            .select_related("job", "broker")
            .order_by("expires_at", "id")
        )

    return LiveSequence(build_queryset)


def sweep_expired_offers(now=None):
    reference = now or timezone.now()
    candidate_ids = list(
        AssignmentOffer.objects.filter(status="pending", expires_at__lte=reference).values_list("id", flat=True)
    )
    expired_count = 0
    for offer_id in candidate_ids:
        with transaction.atomic():
            offer = lock_offer(offer_id)
            # Re-checked under the lock: an accept/reject may have committed since the scan.
            if offer.status == "pending" and is_offer_expired(offer, reference):
                expire_offer(offer, now=reference, source="scheduler")
                expired_count += 1
    if expired_count:
        logger.info("Offer sweep expired %s offers", expired_count)
    return expired_count


def maybe_sweep_expired_offers(*, force=False):
    if force:
        return sweep_expired_offers()

    min_interval_seconds = get_offer_sweep_web_refresh_seconds()
    cache_key = "offers:sweep:last-run"
    lock_key = "offers:sweep:lock"
    now_ts = int(timezone.now().timestamp())
    last_run_ts = cache.get(cache_key)
    if isinstance(last_run_ts, int) and now_ts - last_run_ts < min_interval_seconds:
        return None

    if not cache.add(lock_key, str(uuid4()), timeout=max(5, min_interval_seconds)):
        return None

    try:
        last_run_ts = cache.get(cache_key)
        if isinstance(last_run_ts, int) and now_ts - last_run_ts < min_interval_seconds:
            return None
        expired_count = sweep_expired_offers()
        cache.set(cache_key, now_ts, timeout=min_interval_seconds)
        return expired_count
    finally:
        cache.delete(lock_key)
