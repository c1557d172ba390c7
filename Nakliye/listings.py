import logging
from decimal import Decimal, InvalidOperation

from django.db import transaction
from django.utils import timezone

from . import realtime
from .bids import lock_listing
from .eligibility import normalize_city
from .errors import Forbidden, InvalidListing
from .lifecycle import ensure_job
from .models import Bid, Listing
from .sequences import LiveSequence

logger = logging.getLogger(__name__)


def clean_city(value):
    return " ".join(str(value or "").split())


def parse_budget_ceiling(value):
    if value in (None, ""):
        return None
    try:
        ceiling = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidListing("Bütçe tavanı sayı olmalıdır.", budget_ceiling=str(value))
    if not ceiling.is_finite() or ceiling <= 0:
        raise InvalidListing("Bütçe tavanı sıfırdan büyük olmalıdır.", budget_ceiling=str(value))
    return ceiling


def publish_listing(shipment_ref, pickup_city, delivery_city, budget_ceiling=None, *, broker=None, actor_user=None):
    shipment_ref = str(shipment_ref or "").strip()
    pickup_city = clean_city(pickup_city)
    delivery_city = clean_city(delivery_city)
    if not shipment_ref:
        raise InvalidListing("Gönderi numarası gerekli.")
    if not pickup_city or not delivery_city:
        raise InvalidListing(
            "Yükleme ve teslim şehri boş olamaz.",
            pickup_city=pickup_city,
            delivery_city=delivery_city,
        )
    ceiling = parse_budget_ceiling(budget_ceiling)

    with transaction.atomic():
        job, _created = ensure_job(
            shipment_ref,
            broker=broker,
            pickup_city=pickup_city,
            delivery_city=delivery_city,
            initial_status="listed",
            actor_user=actor_user,
        )
        if not job.pickup_city or not job.delivery_city:
            job.pickup_city = job.pickup_city or pickup_city
            job.delivery_city = job.delivery_city or delivery_city
            job.save(update_fields=["pickup_city", "delivery_city", "updated_at"])

        # One open listing per job; publishing again refreshes it.
        listing = Listing.objects.select_for_update().filter(job=job, status="open").first()
        if listing is not None:
            listing.pickup_city = pickup_city
            listing.delivery_city = delivery_city
            listing.budget_ceiling = ceiling
            listing.save(update_fields=["pickup_city", "delivery_city", "budget_ceiling"])
            logger.info("Listing %s refreshed for shipment %s (ceiling=%s)", listing.id, shipment_ref, ceiling)
            return listing

        listing = Listing.objects.create(
            job=job,
            broker=broker,
            pickup_city=pickup_city,
            delivery_city=delivery_city,
            budget_ceiling=ceiling,
            status="open",
        )

    logger.info("Listing %s published for shipment %s (ceiling=%s)", listing.id, shipment_ref, ceiling)
    return listing


def get_open_listings(from_city=None, to_city=None):
    from_key = normalize_city(from_city)
    to_key = normalize_city(to_city)

    def build_queryset():
        queryset = Listing.objects.filter(status="open").select_related("job").order_by("-created_at", "-id")
        if from_key:
            queryset = queryset.filter(pickup_city_key=from_key)
        if to_key:
            queryset = queryset.filter(delivery_city_key=to_key)
        return queryset

    return LiveSequence(build_queryset)


def close_listing(listing_id, *, broker=None, now=None):
    reference = now or timezone.now()
    with transaction.atomic():
        listing = lock_listing(listing_id)
        if broker is not None and listing.broker_id and listing.broker_id != broker.id:
            raise Forbidden("Bu ilan için işlem yapamazsınız.", listing_id=listing_id)
        if listing.status == "closed":
            return listing

        rejected_carrier_ids = list(listing.bids.filter(status="pending").values_list("carrier_id", flat=True))
        Bid.objects.filter(listing=listing, status="pending").update(status="rejected", responded_at=reference)
        listing.status = "closed"
        listing.closed_at = reference
        listing.save(update_fields=["status", "closed_at"])

    realtime.notify_carriers_on_commit(rejected_carrier_ids, "listing_closed", listing.job.shipment_ref)
    logger.info("Listing %s withdrawn, %s pending bids rejected", listing.id, len(rejected_carrier_ids))
    return listing
