from django.utils import timezone

from .constants import (
    CARRIER_VIEW_TABS,
    JOB_ACTIVE_STATUSES,
    TAB_ACCEPTED_BIDS,
    TAB_ACTIVE_JOBS,
    TAB_ASSIGNMENT_OFFERS,
    TAB_COMPLETED_JOBS,
    TAB_PENDING_BIDS,
)
from .bids import list_bids_for_carrier
from .models import ShipmentJob
from .offers import list_pending_offers_for_carrier
from .sequences import LiveSequence

DEFAULT_TAB_PRIORITY = (TAB_ASSIGNMENT_OFFERS, TAB_ACCEPTED_BIDS, TAB_PENDING_BIDS)


def get_carrier_view(carrier):
    """Everything a carrier has to act on, one lazily evaluated sequence per tab.

    Nothing here locks or writes; each sequence re-queries on iteration, so
    the tabs are only eventually consistent with each other.
    """
    return {
        TAB_ASSIGNMENT_OFFERS: list_pending_offers_for_carrier(carrier),
        TAB_PENDING_BIDS: list_bids_for_carrier(carrier, status="pending"),
        TAB_ACCEPTED_BIDS: list_bids_for_carrier(carrier, status="accepted"),
        TAB_ACTIVE_JOBS: LiveSequence(
            lambda: ShipmentJob.objects.filter(carrier=carrier, status__in=JOB_ACTIVE_STATUSES).order_by(
                "-accepted_at", "-id"
            )
        ),
        TAB_COMPLETED_JOBS: LiveSequence(
            lambda: ShipmentJob.objects.filter(carrier=carrier, status="completed").order_by("-completed_at", "-id")
        ),
    }


def default_tab(view):
    for tab in DEFAULT_TAB_PRIORITY:
        if view.get(tab):
            return tab
    return TAB_ACTIVE_JOBS


def serialize_offer(offer, now=None):
    reference = now or timezone.now()
    return {
        "id": offer.id,
        "shipment_ref": offer.job.shipment_ref,
        "pickup_city": offer.pickup_city,
        "delivery_city": offer.job.delivery_city,
        "price": str(offer.price),
        "status": offer.status,
        "issued_at": offer.issued_at.isoformat(),
        "expires_at": offer.expires_at.isoformat(),
        "seconds_left": max(0, int((offer.expires_at - reference).total_seconds())),
    }


def serialize_bid(bid):
    return {
        "id": bid.id,
        "listing_id": bid.listing_id,
        "shipment_ref": bid.listing.job.shipment_ref,
        "pickup_city": bid.listing.pickup_city,
        "delivery_city": bid.listing.delivery_city,
        "price": str(bid.price),
        "eta_hours": bid.eta_hours,
        "status": bid.status,
        "created_at": bid.created_at.isoformat(),
    }


def serialize_job(job):
    return {
        "shipment_ref": job.shipment_ref,
        "status": job.status,
        "won_via": job.won_via,
        "pickup_city": job.pickup_city,
        "delivery_city": job.delivery_city,
        "price": str(job.price) if job.price is not None else None,
        "accepted_at": job.accepted_at.isoformat() if job.accepted_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


TAB_SERIALIZERS = {
    TAB_ASSIGNMENT_OFFERS: serialize_offer,
    TAB_PENDING_BIDS: serialize_bid,
    TAB_ACCEPTED_BIDS: serialize_bid,
    TAB_ACTIVE_JOBS: serialize_job,
    TAB_COMPLETED_JOBS: serialize_job,
}


def build_carrier_view_payload(carrier):
    view = get_carrier_view(carrier)
    tabs = {tab: [TAB_SERIALIZERS[tab](item) for item in view[tab]] for tab in CARRIER_VIEW_TABS}
    return {
        "carrier_id": carrier.id,
        "default_tab": default_tab(tabs),
        "counts": {tab: len(items) for tab, items in tabs.items()},
        **tabs,
    }
