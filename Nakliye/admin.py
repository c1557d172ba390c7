from django.conf import settings
from django.contrib import admin
from django.contrib import messages
from django.utils import timezone

from .models import (
    AssignmentOffer,
    Bid,
    BrokerProfile,
    CarrierProfile,
    ErrorLog,
    Listing,
    SchedulerHeartbeat,
    ShipmentJob,
    WorkflowEvent,
)


@admin.register(CarrierProfile)
class CarrierProfileAdmin(admin.ModelAdmin):
    list_display = ("full_name", "user", "city", "phone", "is_verified", "verified_at", "created_at")
    list_filter = ("is_verified", "city")
    search_fields = ("full_name", "user__username", "city", "phone")
    actions = ("mark_verified",)

    @admin.action(description="Seçilen taşıyıcıları onayla")
    def mark_verified(self, request, queryset):
        updated_count = 0
        for carrier in queryset.filter(is_verified=False):
            carrier.is_verified = True
            carrier.save(update_fields=["is_verified", "verified_at"])
            updated_count += 1
        self.message_user(request, f"{updated_count} taşıyıcı onaylandı.", level=messages.SUCCESS)


@admin.register(BrokerProfile)
class BrokerProfileAdmin(admin.ModelAdmin):
    list_display = ("company_name", "user", "phone", "created_at")
    search_fields = ("company_name", "user__username", "phone")


class ListingInline(admin.TabularInline):
    model = Listing
    extra = 0
    fields = ("pickup_city", "delivery_city", "budget_ceiling", "status", "created_at", "closed_at")
    readonly_fields = fields


class AssignmentOfferInline(admin.TabularInline):
    model = AssignmentOffer
    extra = 0
    fields = ("carrier", "price", "status", "issued_at", "expires_at", "responded_at")
    readonly_fields = fields


@admin.register(ShipmentJob)
class ShipmentJobAdmin(admin.ModelAdmin):
    list_display = (
        "shipment_ref",
        "status",
        "broker",
        "carrier",
        "won_via",
        "pickup_city",
        "delivery_city",
        "price",
        "accepted_at",
        "updated_at",
    )
    list_filter = ("status", "won_via", "created_at")
    search_fields = ("shipment_ref", "broker__company_name", "carrier__full_name", "pickup_city", "delivery_city")
    list_select_related = ("broker", "carrier")
    inlines = (ListingInline, AssignmentOfferInline)
    # Status moves only through the lifecycle functions.
    readonly_fields = (
        "status",
        "carrier",
        "won_via",
        "price",
        "listed_at",
        "offered_at",
        "accepted_at",
        "started_at",
        "completed_at",
        "cancelled_at",
        "created_at",
        "updated_at",
    )


@admin.register(Listing)
class ListingAdmin(admin.ModelAdmin):
    list_display = ("id", "shipment_ref", "pickup_city", "delivery_city", "budget_ceiling", "status", "created_at")
    list_filter = ("status", "created_at")
    search_fields = ("job__shipment_ref", "pickup_city", "delivery_city")
    list_select_related = ("job",)


@admin.register(Bid)
class BidAdmin(admin.ModelAdmin):
    list_display = ("id", "listing", "carrier", "price", "eta_hours", "status", "created_at", "responded_at")
    list_filter = ("status", "created_at")
    search_fields = ("listing__job__shipment_ref", "carrier__full_name", "note")
    list_select_related = ("listing", "carrier")


@admin.register(AssignmentOffer)
class AssignmentOfferAdmin(admin.ModelAdmin):
    list_display = ("id", "shipment_ref", "carrier", "pickup_city", "price", "status", "issued_at", "expires_at")
    list_filter = ("status", "issued_at")
    search_fields = ("job__shipment_ref", "carrier__full_name", "pickup_city")
    list_select_related = ("job", "carrier")


@admin.register(WorkflowEvent)
class WorkflowEventAdmin(admin.ModelAdmin):
    list_display = (
        "created_at",
        "job",
        "event_kind",
        "from_status",
        "to_status",
        "actor_role",
        "actor_user",
        "source",
        "note",
    )
    list_filter = ("event_kind", "actor_role", "source", "to_status", "created_at")
    search_fields = ("job__shipment_ref", "actor_user__username", "note")
    list_select_related = ("job", "actor_user")
    date_hierarchy = "created_at"
    ordering = ("-created_at", "-id")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(SchedulerHeartbeat)
class SchedulerHeartbeatAdmin(admin.ModelAdmin):
    list_display = (
        "worker_name",
        "run_count",
        "last_started_at",
        "last_success_at",
        "last_error_at",
        "healthy",
        "updated_at",
    )
    search_fields = ("worker_name", "last_error")
    ordering = ("worker_name",)

    @admin.display(boolean=True, description="Sağlıklı")
    def healthy(self, obj):
        stale_after = max(30, int(getattr(settings, "LIFECYCLE_HEARTBEAT_STALE_SECONDS", 300)))
        reference_at = obj.last_success_at or obj.last_started_at or obj.updated_at
        if not reference_at:
            return False
        return (timezone.now() - reference_at).total_seconds() <= stale_after

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(ErrorLog)
class ErrorLogAdmin(admin.ModelAdmin):
    list_display = ("created_at", "status_code", "method", "path", "user", "request_id", "is_resolved")
    list_filter = ("status_code", "method", "resolved_at", "created_at")
    search_fields = ("path", "message", "request_id", "user__username", "ip_address")
    ordering = ("-created_at", "-id")
    actions = ("mark_resolved", "mark_unresolved")

    @admin.action(description="Seçilen kayıtları çözüldü olarak işaretle")
    def mark_resolved(self, request, queryset):
        updated_count = queryset.filter(resolved_at__isnull=True).update(resolved_at=timezone.now())
        self.message_user(request, f"{updated_count} kayıt çözüldü olarak işaretlendi.", level=messages.SUCCESS)

    @admin.action(description="Seçilen kayıtları tekrar açık yap")
    def mark_unresolved(self, request, queryset):
        updated_count = queryset.filter(resolved_at__isnull=False).update(resolved_at=None)
        self.message_user(request, f"{updated_count} kayıt tekrar açık duruma alındı.", level=messages.SUCCESS)

    def has_add_permission(self, request):
        return False
