import logging
from decimal import Decimal, InvalidOperation

from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from . import realtime
from .constants import BID_OPEN_STATUSES, EVENT_BID_WON, JOB_UNBOUND_STATUSES
from .errors import BudgetExceeded, DuplicateBid, Forbidden, InvalidBidState, ListingClosed, NotFound
from .lifecycle import LifecycleEvent, apply_lifecycle_event, lock_job_by_id
from .models import Bid, Listing
from .sequences import LiveSequence

logger = logging.getLogger(__name__)


def parse_bid_price(value):
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError({"bid_price": "Teklif tutarı sayı olmalıdır."})
    if not price.is_finite() or price <= 0:
        raise ValidationError({"bid_price": "Teklif tutarı sıfırdan büyük olmalıdır."})
    return price


def lock_listing(listing_id):
    # Job row first, then the listing: the same order the engine and the offer flow use.
    job_id = Listing.objects.filter(id=listing_id).values_list("job_id", flat=True).first()
    if job_id is None:
        raise NotFound("İlan bulunamadı.", listing_id=listing_id)
    job = lock_job_by_id(job_id)
    listing = Listing.objects.select_for_update().get(id=listing_id)
    listing.job = job
    return listing


def lock_bid(bid_id):
    listing_id = Bid.objects.filter(id=bid_id).values_list("listing_id", flat=True).first()
    if listing_id is None:
        raise NotFound("Teklif bulunamadı.", bid_id=bid_id)
    listing = lock_listing(listing_id)
    bid = Bid.objects.select_for_update().select_related("carrier").get(id=bid_id)
    return listing, bid


def submit_bid(listing_id, carrier, price, eta_hours=None, note=""):
    price = parse_bid_price(price)
    with transaction.atomic():
        listing = lock_listing(listing_id)
        if listing.status != "open" or listing.job.status not in JOB_UNBOUND_STATUSES:
            raise ListingClosed(listing_id=listing.id)
        if listing.budget_ceiling is not None and price > listing.budget_ceiling:
            raise BudgetExceeded(
                f"Teklif ilanın bütçe tavanını ({listing.budget_ceiling} TL) aşıyor.",
                budget_ceiling=str(listing.budget_ceiling),
                bid_price=str(price),
            )
        if listing.bids.filter(carrier=carrier, status__in=BID_OPEN_STATUSES).exists():
            raise DuplicateBid(listing_id=listing.id)

        try:
            with transaction.atomic():
                bid = Bid.objects.create(
                    listing=listing,
                    carrier=carrier,
                    price=price,
                    eta_hours=eta_hours,
                    note=(note or "").strip()[:240],
                    status="pending",
                )
        except IntegrityError:
            raise DuplicateBid(listing_id=listing.id)

    logger.info("Bid %s submitted on listing %s by carrier %s", bid.id, listing.id, carrier.id)
    return bid


def accept_bid(bid_id, *, broker=None, actor_user=None, now=None):
    reference = now or timezone.now()
    with transaction.atomic():
        listing, bid = lock_bid(bid_id)
        if broker is not None and listing.broker_id and listing.broker_id != broker.id:
            raise Forbidden("Bu ilan için işlem yapamazsınız.", listing_id=listing.id)
        if bid.status != "pending":
            raise InvalidBidState(bid_id=bid.id, status=bid.status)
        if listing.status != "open":
            raise ListingClosed(listing_id=listing.id)

        bid.status = "accepted"
        bid.responded_at = reference
        bid.save(update_fields=["status", "responded_at"])

        losers = listing.bids.filter(status="pending").exclude(id=bid.id)
        rejected_carrier_ids = list(losers.values_list("carrier_id", flat=True))
        losers.update(status="rejected", responded_at=reference)

        listing.status = "closed"
        listing.closed_at = reference
        listing.save(update_fields=["status", "closed_at"])

        # Engine acceptance is the commit point; its error unwinds the ledger changes above.
        apply_lifecycle_event(
            LifecycleEvent(
                kind=EVENT_BID_WON,
                shipment_ref=listing.job.shipment_ref,
                carrier=bid.carrier,
                price=bid.price,
                note=f"İlan #{listing.id} teklifi kabul edildi",
            ),
            actor_user=actor_user,
            actor_role="broker" if broker else "system",
            source="user" if actor_user else "system",
            now=reference,
        )
        realtime.notify_carriers_on_commit(rejected_carrier_ids, "bid_rejected", listing.job.shipment_ref)

    logger.info(
        "Bid %s won listing %s; %s competing bids rejected",
        bid.id,
        listing.id,
        len(rejected_carrier_ids),
    )
    return bid


def reject_bid(bid_id, *, broker=None, now=None):
    with transaction.atomic():
        listing, bid = lock_bid(bid_id)
        if broker is not None and listing.broker_id and listing.broker_id != broker.id:
            raise Forbidden("Bu ilan için işlem yapamazsınız.", listing_id=listing.id)
        finish_pending_bid(bid, "rejected", now=now)
    realtime.notify_carriers_on_commit([bid.carrier_id], "bid_rejected", listing.job.shipment_ref)
    return bid


def cancel_bid(bid_id, *, carrier=None, now=None):
    with transaction.atomic():
        _listing, bid = lock_bid(bid_id)
        if carrier is not None and bid.carrier_id != carrier.id:
            raise Forbidden("Bu teklif size ait değil.", bid_id=bid.id)
        finish_pending_bid(bid, "cancelled", now=now)
    return bid


def finish_pending_bid(bid, next_status, *, now=None):
    if bid.status != "pending":
        raise InvalidBidState(bid_id=bid.id, status=bid.status)
    bid.status = next_status
    bid.responded_at = now or timezone.now()
    bid.save(update_fields=["status", "responded_at"])
    return bid


def list_bids_for_carrier(carrier, status=None):
    def build_queryset():
        queryset = (
            Bid.objects.filter(carrier=carrier)
            .select_related("listing", "listing__job")
            .order_by("-created_at", "-id")
        )
        if status:
            queryset = queryset.filter(status=status)
        return queryset

    return LiveSequence(build_queryset)
