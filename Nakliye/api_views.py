from django.conf import settings
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework_simplejwt.tokens import RefreshToken

from . import bids as bid_ledger
from . import lifecycle
from . import listings as listing_store
from . import offers as offer_manager
from .api_serializers import (
    AssignmentOfferSerializer,
    BidSerializer,
    IssueOfferSerializer,
    ListingSerializer,
    LoginSerializer,
    PublishListingSerializer,
    RejectOfferSerializer,
    ShipmentJobSerializer,
    SubmitBidSerializer,
)
from .carrier_view import build_carrier_view_payload
from .constants import OFFER_SWEEP_WORKER_NAME
from .errors import Forbidden, NotFound
from .identity import get_broker_for_user, get_carrier_for_user
from .models import CarrierProfile, ShipmentJob
from .scheduler import describe_heartbeat


def get_lifecycle_heartbeat_stale_seconds():
    return max(30, int(getattr(settings, "LIFECYCLE_HEARTBEAT_STALE_SECONDS", 300)))


def get_lifecycle_health_token():
    return (getattr(settings, "LIFECYCLE_HEALTH_TOKEN", "") or "").strip()


def require_broker(request):
    broker = get_broker_for_user(request.user)
    if broker is None:
        raise Forbidden("Bu alan sadece nakliyeci hesapları içindir.")
    return broker


def require_carrier(request):
    carrier = get_carrier_for_user(request.user)
    if carrier is None:
        raise Forbidden("Bu alan sadece taşıyıcı hesapları içindir.")
    if not carrier.is_verified:
        raise Forbidden("Taşıyıcı hesabınız admin onayı bekliyor.", reason="pending-approval")
    return carrier


def build_identity_payload(user):
    carrier = get_carrier_for_user(user)
    broker = get_broker_for_user(user)
    payload = {
        "id": user.id,
        "username": user.username,
        "role": "broker" if broker else "carrier" if carrier else "guest",
        "carrier": None,
        "broker": None,
    }
    if carrier:
        payload["carrier"] = {
            "id": carrier.id,
            "full_name": carrier.full_name,
            "city": carrier.city,
            "is_verified": bool(carrier.is_verified),
        }
    if broker:
        payload["broker"] = {"id": broker.id, "company_name": broker.company_name}
    return payload


class LoginView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        serializer = LoginSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        user = serializer.validated_data["user"]

        refresh = RefreshToken.for_user(user)
        return Response(
            {
                "access": str(refresh.access_token),
                "refresh": str(refresh),
                "user": build_identity_payload(user),
            },
            status=status.HTTP_200_OK,
        )


class ListingCollectionView(APIView):
    def get(self, request):
        open_listings = listing_store.get_open_listings(
            from_city=(request.GET.get("fromCity") or "").strip() or None,
            to_city=(request.GET.get("toCity") or "").strip() or None,
        )
        items = list(open_listings)
        return Response(
            {"count": len(items), "results": ListingSerializer(items, many=True).data},
            status=status.HTTP_200_OK,
        )

    def post(self, request):
        broker = require_broker(request)
        serializer = PublishListingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        validated = serializer.validated_data

        listing = listing_store.publish_listing(
            validated["shipmentId"],
            validated["pickupCity"],
            validated["deliveryCity"],
            validated.get("budgetCeiling"),
            broker=broker,
            actor_user=request.user,
        )
        return Response(ListingSerializer(listing).data, status=status.HTTP_201_CREATED)


class ListingCloseView(APIView):
    def post(self, request, listing_id):
        broker = require_broker(request)
        listing = listing_store.close_listing(listing_id, broker=broker)
        return Response(ListingSerializer(listing).data, status=status.HTTP_200_OK)


class BidCollectionView(APIView):
    def get(self, request):
        carrier = require_carrier(request)
        status_filter = (request.GET.get("status") or "").strip() or None
        items = list(bid_ledger.list_bids_for_carrier(carrier, status=status_filter))
        return Response(
            {"count": len(items), "results": BidSerializer(items, many=True).data},
            status=status.HTTP_200_OK,
        )

    def post(self, request):
        carrier = require_carrier(request)
        serializer = SubmitBidSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        validated = serializer.validated_data

        bid = bid_ledger.submit_bid(
            validated["listingId"],
            carrier,
            validated["bidPrice"],
            eta_hours=validated.get("etaHours"),
            note=validated.get("note", ""),
        )
        return Response(BidSerializer(bid).data, status=status.HTTP_201_CREATED)


class BidAcceptView(APIView):
    def post(self, request, bid_id):
        broker = require_broker(request)
        bid = bid_ledger.accept_bid(bid_id, broker=broker, actor_user=request.user)
        return Response(BidSerializer(bid).data, status=status.HTTP_200_OK)


class BidRejectView(APIView):
    def post(self, request, bid_id):
        broker = require_broker(request)
        bid = bid_ledger.reject_bid(bid_id, broker=broker)
        return Response(BidSerializer(bid).data, status=status.HTTP_200_OK)


class BidCancelView(APIView):
    def post(self, request, bid_id):
        carrier = require_carrier(request)
        bid = bid_ledger.cancel_bid(bid_id, carrier=carrier)
        return Response(BidSerializer(bid).data, status=status.HTTP_200_OK)


class OfferCollectionView(APIView):
    def get(self, request):
        carrier = require_carrier(request)
        items = list(offer_manager.list_pending_offers_for_carrier(carrier))
        return Response(
            {"count": len(items), "results": AssignmentOfferSerializer(items, many=True).data},
            status=status.HTTP_200_OK,
        )

    def post(self, request):
        broker = require_broker(request)
        serializer = IssueOfferSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        validated = serializer.validated_data

        carrier = CarrierProfile.objects.filter(id=validated["carrierId"]).first()
        if carrier is None:
            raise NotFound("Taşıyıcı bulunamadı.", carrier_id=validated["carrierId"])
        pickup_city = (validated.get("pickupCity") or "").strip()
        delivery_city = (validated.get("deliveryCity") or "").strip()
        if not pickup_city or not delivery_city:
            existing_job = ShipmentJob.objects.filter(shipment_ref=validated["shipmentId"].strip()).first()
            if existing_job:
                pickup_city = pickup_city or existing_job.pickup_city
                delivery_city = delivery_city or existing_job.delivery_city

        offer = offer_manager.issue_offer(
            validated["shipmentId"],
            carrier,
            pickup_city,
            validated["price"],
            broker=broker,
            delivery_city=delivery_city,
            actor_user=request.user,
        )
        return Response(AssignmentOfferSerializer(offer).data, status=status.HTTP_201_CREATED)


class OfferAcceptView(APIView):
    def post(self, request, offer_id):
        carrier = require_carrier(request)
        offer = offer_manager.accept_offer(offer_id, carrier, actor_user=request.user)
        return Response(AssignmentOfferSerializer(offer).data, status=status.HTTP_200_OK)


class OfferRejectView(APIView):
    def post(self, request, offer_id):
        carrier = require_carrier(request)
        serializer = RejectOfferSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        offer = offer_manager.reject_offer(
            offer_id,
            carrier,
            serializer.validated_data.get("reason", ""),
            actor_user=request.user,
        )
        return Response(AssignmentOfferSerializer(offer).data, status=status.HTTP_200_OK)


class CarrierJobsView(APIView):
    def get(self, request, carrier_id):
        carrier = require_carrier(request)
        if carrier.id != carrier_id:
            raise Forbidden("Sadece kendi işlerinizi görüntüleyebilirsiniz.")
        offer_manager.maybe_sweep_expired_offers()
        return Response(build_carrier_view_payload(carrier), status=status.HTTP_200_OK)


class JobDetailView(APIView):
    def get(self, request, shipment_ref):
        job = ShipmentJob.objects.filter(shipment_ref=shipment_ref).first()
        if job is None:
            raise NotFound("Gönderi bulunamadı.", shipment_ref=shipment_ref)
        broker = get_broker_for_user(request.user)
        carrier = get_carrier_for_user(request.user)
        is_owner = broker is not None and job.broker_id == broker.id
        is_bound_carrier = carrier is not None and job.carrier_id == carrier.id
        if not (is_owner or is_bound_carrier):
            raise Forbidden("Bu gönderiyi görüntüleme yetkiniz yok.")
        return Response(ShipmentJobSerializer(job).data, status=status.HTTP_200_OK)


class JobStartView(APIView):
    def post(self, request, shipment_ref):
        carrier = require_carrier(request)
        job = lifecycle.start_work(shipment_ref, carrier, actor_user=request.user)
        return Response(ShipmentJobSerializer(job).data, status=status.HTTP_200_OK)


class JobCompleteView(APIView):
    def post(self, request, shipment_ref):
        carrier = require_carrier(request)
        job = lifecycle.complete_job(shipment_ref, carrier, actor_user=request.user)
        return Response(ShipmentJobSerializer(job).data, status=status.HTTP_200_OK)


class JobCancelView(APIView):
    def post(self, request, shipment_ref):
        broker = require_broker(request)
        note = (request.data.get("reason") or "").strip()[:240]
        job = lifecycle.cancel_job(shipment_ref, broker=broker, actor_user=request.user, note=note)
        return Response(ShipmentJobSerializer(job).data, status=status.HTTP_200_OK)


class OfferSweepHealthView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]

    def get(self, request):
        expected_token = get_lifecycle_health_token()
        if expected_token:
            provided_token = (request.headers.get("X-Health-Token") or request.GET.get("token") or "").strip()
            if provided_token != expected_token:
                return Response({"ok": False, "detail": "forbidden"}, status=status.HTTP_403_FORBIDDEN)

        payload = describe_heartbeat(OFFER_SWEEP_WORKER_NAME, get_lifecycle_heartbeat_stale_seconds())
        return Response(
            payload,
            status=status.HTTP_200_OK if payload["ok"] else status.HTTP_503_SERVICE_UNAVAILABLE,
        )
