from django.contrib.auth.models import User
from django.db import models
from django.db.models import Q
from django.utils import timezone

from .eligibility import normalize_city


class CarrierProfile(models.Model):
    user = models.OneToOneField(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="carrier_profile",
    )
    full_name = models.CharField(max_length=120)
    phone = models.CharField(max_length=20, blank=True)
    city = models.CharField(max_length=80)
    is_verified = models.BooleanField(default=False)
    verified_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["full_name"]

    def __str__(self):
        return self.full_name

    def save(self, *args, **kwargs):
        if self.is_verified and self.verified_at is None:
            self.verified_at = timezone.now()
        if not self.is_verified and self.verified_at is not None:
            self.verified_at = None
        super().save(*args, **kwargs)


class BrokerProfile(models.Model):
    user = models.OneToOneField(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="broker_profile",
    )
    company_name = models.CharField(max_length=160)
    phone = models.CharField(max_length=20, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["company_name"]

    def __str__(self):
        return self.company_name


class ShipmentJob(models.Model):
    STATUS_CHOICES = (
        ("listed", "İlanda"),
        ("assignment_offered", "Atama Teklifi Gönderildi"),
        ("bid_accepted", "Teklif Kabul Edildi"),
        ("accepted", "Taşıyıcı Atandı"),
        ("in_progress", "Yolda"),
        ("completed", "Tamamlandı"),
        ("cancelled", "İptal Edildi"),
    )
    WON_VIA_CHOICES = (
        ("", "-"),
        ("bid", "Pazar Teklifi"),
        ("offer", "Atama Teklifi"),
    )

    shipment_ref = models.CharField(max_length=64, unique=True)
    broker = models.ForeignKey(
        BrokerProfile,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="jobs",
    )
    carrier = models.ForeignKey(
        CarrierProfile,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="jobs",
    )
    won_via = models.CharField(max_length=10, choices=WON_VIA_CHOICES, blank=True, default="")
    status = models.CharField(max_length=24, choices=STATUS_CHOICES, default="listed")
    pickup_city = models.CharField(max_length=80, blank=True)
    delivery_city = models.CharField(max_length=80, blank=True)
    price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    listed_at = models.DateTimeField(null=True, blank=True)
    offered_at = models.DateTimeField(null=True, blank=True)
    accepted_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self):
        return f"Gönderi {self.shipment_ref} ({self.status})"


class Listing(models.Model):
    STATUS_CHOICES = (
        ("open", "Açık"),
        ("closed", "Kapalı"),
    )

    job = models.ForeignKey(ShipmentJob, on_delete=models.CASCADE, related_name="listings")
    broker = models.ForeignKey(
        BrokerProfile,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="listings",
    )
    pickup_city = models.CharField(max_length=80)
    delivery_city = models.CharField(max_length=80)
    pickup_city_key = models.CharField(max_length=80, blank=True, db_index=True, editable=False)
    delivery_city_key = models.CharField(max_length=80, blank=True, db_index=True, editable=False)
    budget_ceiling = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default="open")
    created_at = models.DateTimeField(auto_now_add=True)
    closed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="Nakliye_lis_status_8f1c2a_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["job"],
                condition=Q(status="open"),
                name="listing_one_open_per_job",
            ),
        ]

    def __str__(self):
        return f"İlan #{self.id} {self.pickup_city} -> {self.delivery_city} ({self.status})"

    def save(self, *args, **kwargs):
        self.pickup_city_key = normalize_city(self.pickup_city)
        self.delivery_city_key = normalize_city(self.delivery_city)
        update_fields = kwargs.get("update_fields")
        if update_fields is not None:
            update_fields = set(update_fields)
            if "pickup_city" in update_fields:
                update_fields.add("pickup_city_key")
            if "delivery_city" in update_fields:
                update_fields.add("delivery_city_key")
            kwargs["update_fields"] = update_fields
        super().save(*args, **kwargs)

    @property
    def shipment_ref(self):
        return self.job.shipment_ref


class Bid(models.Model):
    STATUS_CHOICES = (
        ("pending", "Beklemede"),
        ("accepted", "Kabul"),
        ("rejected", "Red"),
        ("cancelled", "İptal"),
    )

    listing = models.ForeignKey(Listing, on_delete=models.CASCADE, related_name="bids")
    carrier = models.ForeignKey(CarrierProfile, on_delete=models.CASCADE, related_name="bids")
    price = models.DecimalField(max_digits=12, decimal_places=2)
    eta_hours = models.PositiveIntegerField(null=True, blank=True)
    note = models.CharField(max_length=240, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    created_at = models.DateTimeField(auto_now_add=True)
    responded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["listing", "carrier"],
                condition=Q(status__in=["pending", "accepted"]),
                name="bid_one_open_per_carrier_listing",
            ),
        ]

    def __str__(self):
        return f"İlan {self.listing_id} -> {self.carrier.full_name} {self.price} ({self.status})"


class AssignmentOffer(models.Model):
    STATUS_CHOICES = (
        ("pending", "Beklemede"),
        ("accepted", "Kabul"),
        ("rejected", "Red"),
        ("expired", "Süre Doldu"),
    )

    job = models.ForeignKey(ShipmentJob, on_delete=models.CASCADE, related_name="offers")
    broker = models.ForeignKey(
        BrokerProfile,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="offers",
    )
    carrier = models.ForeignKey(CarrierProfile, on_delete=models.CASCADE, related_name="offers")
    pickup_city = models.CharField(max_length=80)
    price = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    reject_reason = models.CharField(max_length=240, blank=True)
    issued_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField()
    responded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-issued_at", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["job"],
                condition=Q(status="pending"),
                name="offer_one_pending_per_job",
            ),
        ]

    def __str__(self):
        return f"Gönderi {self.job_id} -> {self.carrier.full_name} ({self.status})"

    @property
    def shipment_ref(self):
        return self.job.shipment_ref


class WorkflowEvent(models.Model):
    ACTOR_ROLE_CHOICES = (
        ("broker", "Nakliyeci"),
        ("carrier", "Taşıyıcı"),
        ("system", "Sistem"),
    )
    SOURCE_CHOICES = (
        ("user", "Kullanıcı"),
        ("scheduler", "Zamanlayıcı"),
        ("system", "Sistem"),
    )

    job = models.ForeignKey(
        ShipmentJob,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="workflow_events",
    )
    event_kind = models.CharField(max_length=30, blank=True)
    from_status = models.CharField(max_length=30)
    to_status = models.CharField(max_length=30)
    actor_user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="workflow_events",
    )
    actor_role = models.CharField(max_length=20, choices=ACTOR_ROLE_CHOICES, default="system")
    source = models.CharField(max_length=20, choices=SOURCE_CHOICES, default="system")
    note = models.CharField(max_length=240, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["job", "created_at"], name="Nakliye_wor_job_id_3d7e91_idx"),
        ]

    def __str__(self):
        return f"{self.job_id} {self.from_status} -> {self.to_status}"


class SchedulerHeartbeat(models.Model):
    worker_name = models.CharField(max_length=80, unique=True)
    run_count = models.PositiveIntegerField(default=0)
    last_started_at = models.DateTimeField(null=True, blank=True)
    last_success_at = models.DateTimeField(null=True, blank=True)
    last_error_at = models.DateTimeField(null=True, blank=True)
    last_error = models.CharField(max_length=240, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["worker_name"]

    def __str__(self):
        return f"{self.worker_name} ({self.run_count})"


class SchedulerLock(models.Model):
    worker_name = models.CharField(max_length=80, unique=True)
    lock_owner = models.CharField(max_length=64, blank=True)
    locked_until = models.DateTimeField(null=True, blank=True)
    last_acquired_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["worker_name"]

    def __str__(self):
        return f"{self.worker_name} lock"


class ErrorLog(models.Model):
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    path = models.CharField(max_length=300, blank=True)
    method = models.CharField(max_length=10, blank=True)
    status_code = models.PositiveSmallIntegerField(default=500)
    message = models.CharField(max_length=500)
    traceback = models.TextField(blank=True)
    request_id = models.CharField(max_length=120, blank=True, db_index=True)
    ip_address = models.CharField(max_length=64, blank=True)
    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="error_logs",
    )

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self):
        return f"{self.status_code} {self.message[:80]}"

    @property
    def is_resolved(self):
        return self.resolved_at is not None
