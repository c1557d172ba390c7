from decimal import Decimal

from django.contrib.auth import authenticate
from rest_framework import serializers

from .models import AssignmentOffer, Bid, Listing, ShipmentJob
from .offers import resolve_expiry


class LoginSerializer(serializers.Serializer):
    username = serializers.CharField(max_length=150)
    password = serializers.CharField(write_only=True, trim_whitespace=False, style={"input_type": "password"})

    def validate(self, attrs):
        request = self.context.get("request")
        username = (attrs.get("username") or "").strip()
        password = attrs.get("password") or ""

        user = authenticate(request=request, username=username, password=password)
        if user is None:
            raise serializers.ValidationError("Kullanici adi veya sifre hatali.")
        if not user.is_active:
            raise serializers.ValidationError("Bu hesap pasif durumda.")

        attrs["user"] = user
        attrs["username"] = username
        return attrs


class PublishListingSerializer(serializers.Serializer):
    shipmentId = serializers.CharField(max_length=64)
    pickupCity = serializers.CharField(max_length=80, allow_blank=True)
    deliveryCity = serializers.CharField(max_length=80, allow_blank=True)
    budgetCeiling = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)


class SubmitBidSerializer(serializers.Serializer):
    listingId = serializers.IntegerField(min_value=1)
    bidPrice = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    etaHours = serializers.IntegerField(min_value=1, max_value=720, required=False, allow_null=True)
    note = serializers.CharField(max_length=240, required=False, allow_blank=True)


class IssueOfferSerializer(serializers.Serializer):
    shipmentId = serializers.CharField(max_length=64)
    carrierId = serializers.IntegerField(min_value=1)
    price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    pickupCity = serializers.CharField(max_length=80, required=False, allow_blank=True)
    deliveryCity = serializers.CharField(max_length=80, required=False, allow_blank=True)


class RejectOfferSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=240, required=False, allow_blank=True)


class ListingSerializer(serializers.ModelSerializer):
    shipment_ref = serializers.CharField(source="job.shipment_ref", read_only=True)
    bid_count = serializers.SerializerMethodField()

    class Meta:
        model = Listing
        fields = (
            "id",
            "shipment_ref",
            "pickup_city",
            "delivery_city",
            "budget_ceiling",
            "status",
            "created_at",
            "closed_at",
            "bid_count",
        )

    def get_bid_count(self, obj):
        return obj.bids.filter(status="pending").count()


class BidSerializer(serializers.ModelSerializer):
    shipment_ref = serializers.CharField(source="listing.job.shipment_ref", read_only=True)

    class Meta:
        model = Bid
        fields = (
            "id",
            "listing",
            "shipment_ref",
            "carrier",
            "price",
            "eta_hours",
            "note",
            "status",
            "created_at",
            "responded_at",
        )


class AssignmentOfferSerializer(serializers.ModelSerializer):
    shipment_ref = serializers.CharField(source="job.shipment_ref", read_only=True)
    effective_status = serializers.SerializerMethodField()

    class Meta:
        model = AssignmentOffer
        fields = (
            "id",
            "shipment_ref",
            "carrier",
            "pickup_city",
            "price",
            "status",
            "effective_status",
            "reject_reason",
            "issued_at",
            "expires_at",
            "responded_at",
        )

    def get_effective_status(self, obj):
        return resolve_expiry(obj)


class ShipmentJobSerializer(serializers.ModelSerializer):
    class Meta:
        model = ShipmentJob
        fields = (
            "shipment_ref",
            "status",
            "carrier",
            "won_via",
            "pickup_city",
            "delivery_city",
            "price",
            "listed_at",
            "offered_at",
            "accepted_at",
            "started_at",
            "completed_at",
            "cancelled_at",
        )
