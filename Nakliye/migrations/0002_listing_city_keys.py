from django.db import migrations, models
from django.db.models import Q
from django.utils import timezone

from Nakliye.eligibility import normalize_city


def backfill_city_keys(apps, schema_editor):
    Listing = apps.get_model("Nakliye", "Listing")
    for listing in Listing.objects.all().only("id", "pickup_city", "delivery_city"):
        Listing.objects.filter(pk=listing.pk).update(
            pickup_city_key=normalize_city(listing.pickup_city),
            delivery_city_key=normalize_city(listing.delivery_city),
        )


def close_duplicate_open_listings(apps, schema_editor):
    Listing = apps.get_model("Nakliye", "Listing")
    Bid = apps.get_model("Nakliye", "Bid")
    now = timezone.now()
    kept_by_job = {}
    for listing_id, job_id in Listing.objects.filter(status="open").order_by("-created_at", "-id").values_list(
        "id", "job_id"
    ):
        if job_id not in kept_by_job:
            kept_by_job[job_id] = listing_id
            continue
        Bid.objects.filter(listing_id=listing_id, status="pending").update(status="rejected", responded_at=now)
        Listing.objects.filter(pk=listing_id).update(status="closed", closed_at=now)


class Migration(migrations.Migration):
    dependencies = [
        ("Nakliye", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="listing",
            name="pickup_city_key",
            field=models.CharField(blank=True, db_index=True, editable=False, max_length=80),
        ),
        migrations.AddField(
            model_name="listing",
            name="delivery_city_key",
            field=models.CharField(blank=True, db_index=True, editable=False, max_length=80),
        ),
        migrations.RunPython(backfill_city_keys, migrations.RunPython.noop),
        migrations.RunPython(close_duplicate_open_listings, migrations.RunPython.noop),
        migrations.AddConstraint(
            model_name="listing",
            constraint=models.UniqueConstraint(
                condition=Q(status="open"),
                fields=("job",),
                name="listing_one_open_per_job",
            ),
        ),
    ]
