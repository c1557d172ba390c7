import re
from datetime import timedelta
from decimal import Decimal
from io import StringIO

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from channels.testing import WebsocketCommunicator
from django.contrib.auth.models import AnonymousUser, User
from django.core.cache import cache
from django.core.management import call_command
from django.db import connection
from django.test import TestCase, override_settings
from django.test.utils import CaptureQueriesContext
from django.urls import reverse
from django.utils import timezone
from rest_framework.exceptions import ValidationError
from rest_framework.test import APIClient

from .bids import accept_bid, cancel_bid, list_bids_for_carrier, lock_bid, reject_bid, submit_bid
from .carrier_view import build_carrier_view_payload, default_tab, get_carrier_view
from .consumers import CarrierJobsConsumer
from .eligibility import EligibilityContext, EligibilityRule, city_matches, get_eligibility_checker, normalize_city
from .errors import (
    AlreadyBound,
    BudgetExceeded,
    CityMismatch,
    DuplicateBid,
    Forbidden,
    InvalidBidState,
    InvalidListing,
    ListingClosed,
    NotBound,
    NotFound,
    OfferAlreadyActive,
    OfferAlreadyResolved,
    OfferExpired,
)
from .lifecycle import cancel_job, complete_job, create_job_row, start_work, transition_job_status
from .listings import close_listing, get_open_listings, publish_listing
from .models import (
    AssignmentOffer,
    Bid,
    BrokerProfile,
    CarrierProfile,
    Listing,
    SchedulerHeartbeat,
    SchedulerLock,
    ShipmentJob,
    WorkflowEvent,
)
from .offers import (
    accept_offer,
    issue_offer,
    list_pending_offers_for_carrier,
    lock_offer,
    maybe_sweep_expired_offers,
    reject_offer,
    sweep_expired_offers,
)
from .realtime import carrier_jobs_group_name, publish_carrier_change
from .scheduler import SchedulerLease, WorkerHeartbeat, describe_heartbeat

FROM_TABLE_RE = re.compile(r'FROM "(\w+)"')


def queried_tables(captured):
    return [FROM_TABLE_RE.search(query["sql"]).group(1).lower() for query in captured.captured_queries]


def build_phone_required_rule():
    return EligibilityRule(
        name="phone-required",
        predicate=lambda context: bool(context.carrier and context.carrier.phone),
        error_class=Forbidden,
        message="Telefon numarası olmayan taşıyıcı iş alamaz.",
    )


class MarketplaceLifecycleTests(TestCase):
    def setUp(self):
        cache.clear()
        self.broker_user = User.objects.create_user(username="egelojistik", password="GucluSifre123!")
        self.broker = BrokerProfile.objects.create(user=self.broker_user, company_name="Ege Lojistik")
        self.other_broker_user = User.objects.create_user(username="marmaranakliye", password="GucluSifre123!")
        self.other_broker = BrokerProfile.objects.create(user=self.other_broker_user, company_name="Marmara Nakliye")

        self.carrier_user_ahmet = User.objects.create_user(username="ahmetkaptan", password="GucluSifre123!")
        self.carrier_ahmet = CarrierProfile.objects.create(
            user=self.carrier_user_ahmet,
            full_name="Ahmet Kaptan",
            city="İstanbul",
            phone="05550000000",
            is_verified=True,
        )
        self.carrier_user_burak = User.objects.create_user(username="buraktir", password="GucluSifre123!")
        self.carrier_burak = CarrierProfile.objects.create(
            user=self.carrier_user_burak,
            full_name="Burak Tır",
            city="Ankara",
            phone="05551111111",
            is_verified=True,
        )
        self.carrier_user_cem = User.objects.create_user(username="cemnakliyat", password="GucluSifre123!")
        self.carrier_cem = CarrierProfile.objects.create(
            user=self.carrier_user_cem,
            full_name="Cem Nakliyat",
            city="Ankara",
            is_verified=True,
        )

    def _publish(self, shipment_ref="SHP-1001", ceiling="3000", pickup="İzmir", delivery="Ankara"):
        return publish_listing(shipment_ref, pickup, delivery, ceiling, broker=self.broker, actor_user=self.broker_user)

    def test_bid_over_ceiling_is_rejected_and_lower_bid_wins(self):
        listing = self._publish()

        with self.assertRaises(BudgetExceeded) as raised:
            submit_bid(listing.id, self.carrier_ahmet, "3500")
        self.assertEqual(Decimal(raised.exception.context["budget_ceiling"]), Decimal("3000"))
        self.assertEqual(Decimal(raised.exception.context["bid_price"]), Decimal("3500"))
        self.assertFalse(Bid.objects.filter(carrier=self.carrier_ahmet).exists())

        bid = submit_bid(listing.id, self.carrier_burak, "2800")
        self.assertEqual(bid.status, "pending")

        accept_bid(bid.id, broker=self.broker, actor_user=self.broker_user)

        bid.refresh_from_db()
        listing.refresh_from_db()
        job = ShipmentJob.objects.get(shipment_ref="SHP-1001")
        self.assertEqual(bid.status, "accepted")
        self.assertEqual(listing.status, "closed")
        self.assertEqual(job.status, "accepted")
        self.assertEqual(job.carrier_id, self.carrier_burak.id)
        self.assertEqual(job.won_via, "bid")
        self.assertEqual(job.price, Decimal("2800"))
        self.assertIsNotNone(job.accepted_at)

    def test_bid_equal_to_ceiling_is_accepted(self):
        listing = self._publish(ceiling="3000")
        bid = submit_bid(listing.id, self.carrier_ahmet, "3000.00")
        self.assertEqual(bid.status, "pending")

    def test_listing_without_ceiling_accepts_any_positive_bid(self):
        listing = self._publish(ceiling=None)
        bid = submit_bid(listing.id, self.carrier_ahmet, "99999")
        self.assertEqual(bid.status, "pending")

    def test_non_positive_bid_price_is_rejected(self):
        listing = self._publish()
        with self.assertRaises(ValidationError):
            submit_bid(listing.id, self.carrier_ahmet, "0")
        with self.assertRaises(ValidationError):
            submit_bid(listing.id, self.carrier_ahmet, "abc")

    def test_single_winner_rejects_competing_bids(self):
        listing = self._publish()
        bid_ahmet = submit_bid(listing.id, self.carrier_ahmet, "2900")
        bid_burak = submit_bid(listing.id, self.carrier_burak, "2700")
        bid_cem = submit_bid(listing.id, self.carrier_cem, "2750")

        accept_bid(bid_burak.id, broker=self.broker)

        statuses = dict(Bid.objects.filter(listing=listing).values_list("id", "status"))
        self.assertEqual(statuses[bid_burak.id], "accepted")
        self.assertEqual(statuses[bid_ahmet.id], "rejected")
        self.assertEqual(statuses[bid_cem.id], "rejected")
        self.assertEqual(Bid.objects.filter(listing=listing, status="accepted").count(), 1)

        with self.assertRaises(ListingClosed):
            submit_bid(listing.id, self.carrier_ahmet, "2500")

    def test_second_accept_on_same_listing_fails_invalid_bid_state(self):
        listing = self._publish()
        first = submit_bid(listing.id, self.carrier_ahmet, "2900")
        second = submit_bid(listing.id, self.carrier_burak, "2700")

        accept_bid(first.id, broker=self.broker)
        with self.assertRaises(InvalidBidState):
            accept_bid(second.id, broker=self.broker)

        job = ShipmentJob.objects.get(shipment_ref="SHP-1001")
        self.assertEqual(job.carrier_id, self.carrier_ahmet.id)
        self.assertEqual(Bid.objects.filter(listing=listing, status="accepted").count(), 1)

    def test_duplicate_open_bid_is_rejected_but_cancelled_bid_can_be_replaced(self):
        listing = self._publish()
        bid = submit_bid(listing.id, self.carrier_ahmet, "2900")
        with self.assertRaises(DuplicateBid):
            submit_bid(listing.id, self.carrier_ahmet, "2800")

        cancel_bid(bid.id, carrier=self.carrier_ahmet)
        replacement = submit_bid(listing.id, self.carrier_ahmet, "2800")
        self.assertEqual(replacement.status, "pending")
        self.assertEqual(Bid.objects.filter(listing=listing, carrier=self.carrier_ahmet).count(), 2)

    def test_carrier_cannot_cancel_someone_elses_bid(self):
        listing = self._publish()
        bid = submit_bid(listing.id, self.carrier_ahmet, "2900")
        with self.assertRaises(Forbidden):
            cancel_bid(bid.id, carrier=self.carrier_burak)

    def test_broker_can_reject_single_bid_and_listing_stays_open(self):
        listing = self._publish()
        bid = submit_bid(listing.id, self.carrier_ahmet, "2900")
        reject_bid(bid.id, broker=self.broker)

        bid.refresh_from_db()
        listing.refresh_from_db()
        self.assertEqual(bid.status, "rejected")
        self.assertEqual(listing.status, "open")
        with self.assertRaises(InvalidBidState):
            accept_bid(bid.id, broker=self.broker)

    def test_foreign_broker_cannot_accept_bid(self):
        listing = self._publish()
        bid = submit_bid(listing.id, self.carrier_ahmet, "2900")
        with self.assertRaises(Forbidden):
            accept_bid(bid.id, broker=self.other_broker)
        bid.refresh_from_db()
        self.assertEqual(bid.status, "pending")

    def test_unknown_listing_and_bid_raise_not_found(self):
        with self.assertRaises(NotFound):
            submit_bid(999999, self.carrier_ahmet, "100")
        with self.assertRaises(NotFound):
            accept_bid(999999, broker=self.broker)

    def test_publish_listing_validates_input(self):
        with self.assertRaises(InvalidListing):
            publish_listing("SHP-2000", "", "Ankara", broker=self.broker)
        with self.assertRaises(InvalidListing):
            publish_listing("SHP-2000", "İzmir", "Ankara", "0", broker=self.broker)
        with self.assertRaises(InvalidListing):
            publish_listing("SHP-2000", "İzmir", "Ankara", "abc", broker=self.broker)
        self.assertFalse(ShipmentJob.objects.filter(shipment_ref="SHP-2000").exists())

    def test_open_listings_filter_by_normalized_city(self):
        self._publish("SHP-1001", pickup="İzmir", delivery="Ankara")
        self._publish("SHP-1002", pickup="Çanakkale", delivery="İstanbul")

        refs = [listing.shipment_ref for listing in get_open_listings(from_city="canakkale")]
        self.assertEqual(refs, ["SHP-1002"])
        refs = [listing.shipment_ref for listing in get_open_listings(to_city="ANKARA")]
        self.assertEqual(refs, ["SHP-1001"])
        self.assertEqual(len(list(get_open_listings())), 2)

    def test_open_listings_sequence_is_restartable(self):
        self._publish("SHP-1001")
        open_listings = get_open_listings()
        self.assertEqual(len(list(open_listings)), 1)

        self._publish("SHP-1002")
        self.assertEqual(len(list(open_listings)), 2)
        self.assertEqual(open_listings.count(), 2)
        self.assertTrue(open_listings)

    def test_close_listing_rejects_pending_bids_and_is_idempotent(self):
        listing = self._publish()
        bid = submit_bid(listing.id, self.carrier_ahmet, "2900")

        close_listing(listing.id, broker=self.broker)
        close_listing(listing.id, broker=self.broker)

        listing.refresh_from_db()
        bid.refresh_from_db()
        self.assertEqual(listing.status, "closed")
        self.assertEqual(bid.status, "rejected")
        self.assertEqual(len(list(get_open_listings())), 0)
        with self.assertRaises(ListingClosed):
            submit_bid(listing.id, self.carrier_burak, "2500")

    def test_foreign_broker_cannot_close_listing(self):
        listing = self._publish()
        with self.assertRaises(Forbidden):
            close_listing(listing.id, broker=self.other_broker)

    def test_city_mismatch_blocks_accept_but_reject_succeeds(self):
        offer = issue_offer("SHP-3001", self.carrier_burak, "İstanbul", "4200", broker=self.broker)

        with self.assertRaises(CityMismatch) as raised:
            accept_offer(offer.id, self.carrier_burak)
        self.assertEqual(raised.exception.context["required_city"], "İstanbul")
        self.assertEqual(raised.exception.context["registered_city"], "Ankara")
        offer.refresh_from_db()
        self.assertEqual(offer.status, "pending")

        reject_offer(offer.id, self.carrier_burak, "Bölgem dışında", actor_user=self.carrier_user_burak)

        offer.refresh_from_db()
        job = ShipmentJob.objects.get(shipment_ref="SHP-3001")
        self.assertEqual(offer.status, "rejected")
        self.assertEqual(offer.reject_reason, "Bölgem dışında")
        self.assertEqual(job.status, "listed")
        self.assertIsNone(job.carrier_id)
        self.assertTrue(WorkflowEvent.objects.filter(job=job, event_kind="offer_rejected").exists())

    def test_city_match_accept_binds_carrier(self):
        offer = issue_offer("SHP-3002", self.carrier_ahmet, "ISTANBUL", "4200", broker=self.broker)
        accept_offer(offer.id, self.carrier_ahmet, actor_user=self.carrier_user_ahmet)

        offer.refresh_from_db()
        job = ShipmentJob.objects.get(shipment_ref="SHP-3002")
        self.assertEqual(offer.status, "accepted")
        self.assertEqual(job.status, "accepted")
        self.assertEqual(job.carrier_id, self.carrier_ahmet.id)
        self.assertEqual(job.won_via, "offer")
        self.assertEqual(job.price, Decimal("4200"))

    def test_requester_city_overrides_registered_city(self):
        offer = issue_offer("SHP-3003", self.carrier_burak, "İstanbul", "4200", broker=self.broker)
        accept_offer(offer.id, self.carrier_burak, requester_city="  istanbul ")
        offer.refresh_from_db()
        self.assertEqual(offer.status, "accepted")

    def test_city_normalization_handles_turkish_letters(self):
        self.assertTrue(city_matches("İstanbul", "ISTANBUL"))
        self.assertTrue(city_matches("Çanakkale", "canakkale"))
        self.assertTrue(city_matches("Iğdır", "igdir"))
        self.assertTrue(city_matches("  Şanlı   Urfa ", "sanli urfa"))
        self.assertFalse(city_matches("İstanbul", "Ankara"))
        self.assertFalse(city_matches("", ""))
        self.assertFalse(city_matches("İstanbul", None))
        self.assertEqual(normalize_city("İZMİR"), "izmir")

    def test_checker_accepts_added_rules(self):
        checker = get_eligibility_checker()
        context = EligibilityContext(pickup_city="İstanbul", carrier_city="istanbul", carrier=self.carrier_cem)
        self.assertTrue(checker.is_eligible(context))

        checker.add_rule(build_phone_required_rule())
        self.assertFalse(checker.is_eligible(context))
        self.assertEqual(checker.failing_rule(context).name, "phone-required")

    def test_offer_accept_after_deadline_fails_without_sweep(self):
        issued_at = timezone.now()
        offer = issue_offer("SHP-4001", self.carrier_ahmet, "İstanbul", "3900", broker=self.broker, now=issued_at)

        with self.assertRaises(OfferExpired) as raised:
            accept_offer(offer.id, self.carrier_ahmet, now=issued_at + timedelta(minutes=31))
        self.assertIn("expires_at", raised.exception.context)

        offer.refresh_from_db()
        job = ShipmentJob.objects.get(shipment_ref="SHP-4001")
        self.assertEqual(offer.status, "expired")
        self.assertEqual(job.status, "listed")
        self.assertIsNone(job.carrier_id)

    def test_offer_expires_exactly_at_deadline(self):
        issued_at = timezone.now()
        offer = issue_offer("SHP-4002", self.carrier_ahmet, "İstanbul", "3900", broker=self.broker, now=issued_at)
        with self.assertRaises(OfferExpired):
            reject_offer(offer.id, self.carrier_ahmet, now=issued_at + timedelta(minutes=30))

    @override_settings(OFFER_EXPIRY_MINUTES=5)
    def test_offer_expiry_follows_setting(self):
        issued_at = timezone.now()
        offer = issue_offer("SHP-4003", self.carrier_ahmet, "İstanbul", "3900", broker=self.broker, now=issued_at)
        self.assertEqual(offer.expires_at, issued_at + timedelta(minutes=5))

    def test_second_offer_while_active_fails_offer_already_active(self):
        offer = issue_offer("SHP-5001", self.carrier_ahmet, "İstanbul", "3900", broker=self.broker)
        with self.assertRaises(OfferAlreadyActive):
            issue_offer("SHP-5001", self.carrier_burak, "İstanbul", "3800", broker=self.broker)
        self.assertEqual(AssignmentOffer.objects.filter(job=offer.job, status="pending").count(), 1)

    def test_new_offer_allowed_after_rejection(self):
        first = issue_offer("SHP-5002", self.carrier_burak, "İstanbul", "3900", broker=self.broker)
        reject_offer(first.id, self.carrier_burak)

        second = issue_offer("SHP-5002", self.carrier_ahmet, "İstanbul", "3900", broker=self.broker)
        job = ShipmentJob.objects.get(shipment_ref="SHP-5002")
        self.assertEqual(second.status, "pending")
        self.assertEqual(job.status, "assignment_offered")

    def test_stale_unswept_offer_is_replaced_by_new_offer(self):
        stale_at = timezone.now() - timedelta(minutes=45)
        stale = issue_offer("SHP-5003", self.carrier_burak, "İstanbul", "3900", broker=self.broker, now=stale_at)

        fresh = issue_offer("SHP-5003", self.carrier_ahmet, "İstanbul", "3950", broker=self.broker)

        stale.refresh_from_db()
        self.assertEqual(stale.status, "expired")
        self.assertEqual(fresh.status, "pending")
        self.assertEqual(ShipmentJob.objects.get(shipment_ref="SHP-5003").status, "assignment_offered")

    def test_offer_response_guards(self):
        offer = issue_offer("SHP-5004", self.carrier_ahmet, "İstanbul", "3900", broker=self.broker)
        with self.assertRaises(Forbidden):
            accept_offer(offer.id, self.carrier_burak)
        with self.assertRaises(NotFound):
            accept_offer(999999, self.carrier_ahmet)

        reject_offer(offer.id, self.carrier_ahmet)
        with self.assertRaises(OfferAlreadyResolved):
            accept_offer(offer.id, self.carrier_ahmet)

    def test_offer_issued_on_listed_job_moves_it_to_assignment_offered(self):
        self._publish("SHP-5005", pickup="İstanbul")
        issue_offer("SHP-5005", self.carrier_ahmet, "İstanbul", "2500", broker=self.broker)
        self.assertEqual(ShipmentJob.objects.get(shipment_ref="SHP-5005").status, "assignment_offered")

    def test_foreign_broker_cannot_offer_existing_shipment(self):
        self._publish("SHP-5006")
        with self.assertRaises(Forbidden):
            issue_offer("SHP-5006", self.carrier_ahmet, "İstanbul", "2500", broker=self.other_broker)

    def test_engine_rejection_rolls_back_bid_acceptance(self):
        listing = self._publish("SHP-6001", pickup="İstanbul")
        bid = submit_bid(listing.id, self.carrier_burak, "2500")
        issue_offer("SHP-6001", self.carrier_ahmet, "İstanbul", "2600", broker=self.broker)

        with self.assertRaises(OfferAlreadyActive):
            accept_bid(bid.id, broker=self.broker)

        bid.refresh_from_db()
        listing.refresh_from_db()
        self.assertEqual(bid.status, "pending")
        self.assertEqual(listing.status, "open")
        self.assertEqual(ShipmentJob.objects.get(shipment_ref="SHP-6001").status, "assignment_offered")

    def test_bound_job_rejects_new_listing_and_offer(self):
        listing = self._publish("SHP-6002")
        bid = submit_bid(listing.id, self.carrier_burak, "2500")
        accept_bid(bid.id, broker=self.broker)

        with self.assertRaises(AlreadyBound):
            issue_offer("SHP-6002", self.carrier_ahmet, "İzmir", "2600", broker=self.broker)
        with self.assertRaises(AlreadyBound):
            self._publish("SHP-6002")
        self.assertEqual(ShipmentJob.objects.get(shipment_ref="SHP-6002").status, "accepted")

    def test_offer_win_closes_open_listing_and_rejects_pending_bids(self):
        listing = self._publish("SHP-6101", pickup="İstanbul")
        bid = submit_bid(listing.id, self.carrier_burak, "2500")
        offer = issue_offer("SHP-6101", self.carrier_ahmet, "İstanbul", "2600", broker=self.broker)

        with self.captureOnCommitCallbacks() as callbacks:
            accept_offer(offer.id, self.carrier_ahmet)
        self.assertEqual(len(callbacks), 2)

        bid.refresh_from_db()
        listing.refresh_from_db()
        job = ShipmentJob.objects.get(shipment_ref="SHP-6101")
        self.assertEqual(job.status, "accepted")
        self.assertEqual(job.carrier_id, self.carrier_ahmet.id)
        self.assertEqual(bid.status, "rejected")
        self.assertEqual(listing.status, "closed")
        self.assertIsNotNone(listing.closed_at)
        self.assertEqual(list(get_open_listings()), [])
        with self.assertRaises(ListingClosed):
            submit_bid(listing.id, self.carrier_cem, "2400")

    def test_bid_on_open_listing_of_bound_job_raises_listing_closed(self):
        listing = self._publish("SHP-6102")
        accept_bid(submit_bid(listing.id, self.carrier_burak, "2500").id, broker=self.broker)
        stray = Listing.objects.create(job=listing.job, pickup_city="İzmir", delivery_city="Ankara", status="open")

        with self.assertRaises(ListingClosed):
            submit_bid(stray.id, self.carrier_cem, "2400")
        self.assertFalse(Bid.objects.filter(listing=stray).exists())

    def test_republishing_shipment_refreshes_its_open_listing(self):
        first = self._publish("SHP-6103", ceiling="3000", delivery="Ankara")
        second = self._publish("SHP-6103", ceiling="2500", delivery="Bursa")

        self.assertEqual(second.id, first.id)
        self.assertEqual(Listing.objects.filter(job__shipment_ref="SHP-6103", status="open").count(), 1)
        first.refresh_from_db()
        self.assertEqual(first.budget_ceiling, Decimal("2500"))
        self.assertEqual(first.delivery_city, "Bursa")
        self.assertEqual([item.id for item in get_open_listings(to_city="BURSA")], [first.id])
        self.assertEqual(list(get_open_listings(to_city="ankara")), [])

    def test_listing_city_keys_are_stored_normalized(self):
        listing = self._publish("SHP-6104", pickup="  Çanakkale ", delivery="İSTANBUL")
        listing.refresh_from_db()
        self.assertEqual(listing.pickup_city, "Çanakkale")
        self.assertEqual(listing.pickup_city_key, "canakkale")
        self.assertEqual(listing.delivery_city_key, "istanbul")

    def test_bid_and_listing_locks_take_the_job_row_first(self):
        listing = self._publish("SHP-6105")
        bid = submit_bid(listing.id, self.carrier_burak, "2500")

        with CaptureQueriesContext(connection) as captured:
            locked_listing, locked_bid = lock_bid(bid.id)
        self.assertEqual(locked_listing.id, listing.id)
        self.assertEqual(locked_bid.id, bid.id)
        self.assertEqual(
            queried_tables(captured),
            ["nakliye_bid", "nakliye_listing", "nakliye_shipmentjob", "nakliye_listing", "nakliye_bid"],
        )
        with self.assertRaises(NotFound):
            lock_bid(999999)

    def test_offer_lock_takes_the_job_row_first(self):
        offer = issue_offer("SHP-6106", self.carrier_ahmet, "İstanbul", "2600", broker=self.broker)

        with CaptureQueriesContext(connection) as captured:
            locked = lock_offer(offer.id)
        self.assertEqual(locked.job.shipment_ref, "SHP-6106")
        self.assertEqual(
            queried_tables(captured),
            ["nakliye_assignmentoffer", "nakliye_shipmentjob", "nakliye_assignmentoffer"],
        )
        with self.assertRaises(NotFound):
            lock_offer(999999)

    def test_concurrent_job_insert_falls_back_to_existing_row(self):
        offer = issue_offer("SHP-6201", self.carrier_ahmet, "İstanbul", "2600", broker=self.broker)

        job, created = create_job_row("SHP-6201", broker=self.broker, initial_status="assignment_offered")

        self.assertFalse(created)
        self.assertEqual(job.id, offer.job_id)
        self.assertEqual(ShipmentJob.objects.filter(shipment_ref="SHP-6201").count(), 1)
        with self.assertRaises(OfferAlreadyActive):
            issue_offer("SHP-6201", self.carrier_burak, "İstanbul", "2500", broker=self.broker)

    def test_accepted_offer_is_not_released_by_late_sweep(self):
        issued_at = timezone.now() - timedelta(minutes=10)
        offer = issue_offer("SHP-6003", self.carrier_ahmet, "İstanbul", "3000", broker=self.broker, now=issued_at)
        accept_offer(offer.id, self.carrier_ahmet)

        self.assertEqual(sweep_expired_offers(now=timezone.now() + timedelta(hours=1)), 0)
        self.assertEqual(ShipmentJob.objects.get(shipment_ref="SHP-6003").status, "accepted")

    def test_complete_before_start_fails_not_bound(self):
        listing = self._publish("SHP-7001")
        bid = submit_bid(listing.id, self.carrier_burak, "2500")
        accept_bid(bid.id, broker=self.broker)

        with self.assertRaises(NotBound):
            complete_job("SHP-7001", self.carrier_burak)
        self.assertEqual(ShipmentJob.objects.get(shipment_ref="SHP-7001").status, "accepted")

    def test_only_bound_carrier_can_start_and_complete(self):
        listing = self._publish("SHP-7002")
        bid = submit_bid(listing.id, self.carrier_burak, "2500")
        accept_bid(bid.id, broker=self.broker)

        with self.assertRaises(NotBound):
            start_work("SHP-7002", self.carrier_ahmet)

        start_work("SHP-7002", self.carrier_burak, actor_user=self.carrier_user_burak)
        with self.assertRaises(NotBound):
            start_work("SHP-7002", self.carrier_burak)
        complete_job("SHP-7002", self.carrier_burak, actor_user=self.carrier_user_burak)

        job = ShipmentJob.objects.get(shipment_ref="SHP-7002")
        self.assertEqual(job.status, "completed")
        self.assertIsNotNone(job.started_at)
        self.assertIsNotNone(job.completed_at)
        transitions = list(
            WorkflowEvent.objects.filter(job=job).order_by("id").values_list("from_status", "to_status")
        )
        self.assertEqual(
            transitions,
            [("", "listed"), ("listed", "accepted"), ("accepted", "in_progress"), ("in_progress", "completed")],
        )

    def test_start_work_on_unknown_job_raises_not_found(self):
        with self.assertRaises(NotFound):
            start_work("SHP-YOK", self.carrier_ahmet)

    def test_invalid_transition_is_ignored(self):
        listing = self._publish("SHP-7003")
        job = listing.job
        self.assertFalse(transition_job_status(job, "completed"))
        job.refresh_from_db()
        self.assertEqual(job.status, "listed")

    def test_transition_records_workflow_event_with_actor_metadata(self):
        listing = self._publish("SHP-7004")
        job = listing.job
        transitioned = transition_job_status(
            job,
            "cancelled",
            actor_user=self.broker_user,
            actor_role="broker",
            source="user",
            note="Event metadata",
        )
        self.assertTrue(transitioned)
        event = WorkflowEvent.objects.filter(job=job).latest("id")
        self.assertEqual(event.from_status, "listed")
        self.assertEqual(event.to_status, "cancelled")
        self.assertEqual(event.actor_user_id, self.broker_user.id)
        self.assertEqual(event.actor_role, "broker")
        self.assertEqual(event.source, "user")

    def test_cancel_job_withdraws_listing_bids_and_offer(self):
        listing = self._publish("SHP-8001", pickup="İstanbul")
        bid = submit_bid(listing.id, self.carrier_burak, "2500")

        cancel_job("SHP-8001", broker=self.broker, actor_user=self.broker_user)
        cancel_job("SHP-8001", broker=self.broker, actor_user=self.broker_user)

        bid.refresh_from_db()
        listing.refresh_from_db()
        job = ShipmentJob.objects.get(shipment_ref="SHP-8001")
        self.assertEqual(job.status, "cancelled")
        self.assertEqual(bid.status, "rejected")
        self.assertEqual(listing.status, "closed")
        self.assertEqual(WorkflowEvent.objects.filter(job=job, to_status="cancelled").count(), 1)

    def test_cancel_job_expires_pending_offer(self):
        offer = issue_offer("SHP-8002", self.carrier_ahmet, "İstanbul", "3900", broker=self.broker)
        cancel_job("SHP-8002", broker=self.broker)
        offer.refresh_from_db()
        self.assertEqual(offer.status, "expired")

    def test_cancel_bound_job_fails(self):
        listing = self._publish("SHP-8003")
        bid = submit_bid(listing.id, self.carrier_burak, "2500")
        accept_bid(bid.id, broker=self.broker)
        with self.assertRaises(AlreadyBound):
            cancel_job("SHP-8003", broker=self.broker)
        with self.assertRaises(Forbidden):
            cancel_job("SHP-8003", broker=self.other_broker)

    @override_settings(ELIGIBILITY_EXTRA_RULES=["Nakliye.tests.build_phone_required_rule"])
    def test_extra_eligibility_rule_from_settings_is_enforced(self):
        checker = get_eligibility_checker()
        self.assertEqual([rule.name for rule in checker.rules], ["city-match", "phone-required"])

        CarrierProfile.objects.filter(pk=self.carrier_ahmet.pk).update(phone="")
        self.carrier_ahmet.refresh_from_db()
        offer = issue_offer("SHP-9001", self.carrier_ahmet, "İstanbul", "3900", broker=self.broker)
        with self.assertRaises(Forbidden):
            accept_offer(offer.id, self.carrier_ahmet)
        offer.refresh_from_db()
        self.assertEqual(offer.status, "pending")

    def test_carrier_view_groups_work_and_picks_default_tab(self):
        view = get_carrier_view(self.carrier_ahmet)
        self.assertEqual(default_tab(view), "active_jobs")

        listing = self._publish("SHP-9101")
        submit_bid(listing.id, self.carrier_ahmet, "2500")
        self.assertEqual(default_tab(view), "pending_bids")

        issue_offer("SHP-9102", self.carrier_ahmet, "İstanbul", "3900", broker=self.broker)
        self.assertEqual(default_tab(view), "assignment_offers")

        payload = build_carrier_view_payload(self.carrier_ahmet)
        self.assertEqual(payload["default_tab"], "assignment_offers")
        self.assertEqual(payload["counts"]["assignment_offers"], 1)
        self.assertEqual(payload["counts"]["pending_bids"], 1)
        self.assertEqual(payload["assignment_offers"][0]["shipment_ref"], "SHP-9102")
        self.assertGreater(payload["assignment_offers"][0]["seconds_left"], 0)

    def test_carrier_view_prefers_accepted_bids_over_pending(self):
        first = self._publish("SHP-9201")
        second = self._publish("SHP-9202")
        won = submit_bid(first.id, self.carrier_ahmet, "2500")
        submit_bid(second.id, self.carrier_ahmet, "2600")
        accept_bid(won.id, broker=self.broker)

        view = get_carrier_view(self.carrier_ahmet)
        self.assertEqual(default_tab(view), "accepted_bids")
        self.assertEqual(len(list(view["active_jobs"])), 1)
        self.assertEqual(len(list(list_bids_for_carrier(self.carrier_ahmet, status="pending"))), 1)

    def test_expired_offer_is_hidden_from_pending_offers_before_sweep(self):
        stale_at = timezone.now() - timedelta(minutes=45)
        offer = issue_offer("SHP-9301", self.carrier_ahmet, "İstanbul", "3900", broker=self.broker, now=stale_at)
        self.assertEqual(list(list_pending_offers_for_carrier(self.carrier_ahmet)), [])
        offer.refresh_from_db()
        self.assertEqual(offer.status, "pending")

    def test_sweep_expires_only_overdue_offers(self):
        stale_at = timezone.now() - timedelta(minutes=45)
        stale = issue_offer("SHP-9401", self.carrier_ahmet, "İstanbul", "3900", broker=self.broker, now=stale_at)
        fresh = issue_offer("SHP-9402", self.carrier_ahmet, "İstanbul", "3900", broker=self.broker)

        self.assertEqual(sweep_expired_offers(), 1)
        self.assertEqual(sweep_expired_offers(), 0)

        stale.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(stale.status, "expired")
        self.assertEqual(fresh.status, "pending")
        self.assertEqual(ShipmentJob.objects.get(shipment_ref="SHP-9401").status, "listed")
        event = WorkflowEvent.objects.filter(job=stale.job, event_kind="offer_expired").latest("id")
        self.assertEqual(event.source, "scheduler")

    @override_settings(OFFER_SWEEP_WEB_REFRESH_SECONDS=60)
    def test_opportunistic_sweep_is_throttled(self):
        stale_at = timezone.now() - timedelta(minutes=45)
        issue_offer("SHP-9501", self.carrier_ahmet, "İstanbul", "3900", broker=self.broker, now=stale_at)

        self.assertEqual(maybe_sweep_expired_offers(), 1)
        self.assertIsNone(maybe_sweep_expired_offers())
        self.assertEqual(maybe_sweep_expired_offers(force=True), 0)

    def test_offer_sweep_command_expires_offers_and_records_heartbeat(self):
        stale_at = timezone.now() - timedelta(minutes=45)
        offer = issue_offer("SHP-9601", self.carrier_ahmet, "İstanbul", "3900", broker=self.broker, now=stale_at)

        output = StringIO()
        call_command("offer_sweep", stdout=output)

        offer.refresh_from_db()
        self.assertEqual(offer.status, "expired")
        self.assertIn("Offer sweep run #1 completed: 1 offer(s) expired.", output.getvalue())
        heartbeat = SchedulerHeartbeat.objects.get(worker_name="offer_sweep")
        self.assertGreaterEqual(heartbeat.run_count, 1)
        self.assertIsNotNone(heartbeat.last_success_at)

    def test_offer_sweep_command_skips_when_lock_held_by_other_worker(self):
        SchedulerLock.objects.create(
            worker_name="offer_sweep",
            lock_owner="other-worker",
            locked_until=timezone.now() + timedelta(minutes=2),
            last_acquired_at=timezone.now(),
        )
        output = StringIO()
        call_command("offer_sweep", stdout=output)

        self.assertIn("another worker currently holds the lock", output.getvalue())
        self.assertFalse(SchedulerHeartbeat.objects.filter(worker_name="offer_sweep").exists())

    def test_offer_sweep_command_takes_over_expired_lock(self):
        expired_at = timezone.now() - timedelta(minutes=2)
        lock = SchedulerLock.objects.create(
            worker_name="offer_sweep",
            lock_owner="old-worker",
            locked_until=expired_at,
            last_acquired_at=expired_at,
        )
        output = StringIO()
        call_command("offer_sweep", "--loop", "--max-runs", "1", "--interval", "1", stdout=output)

        self.assertIn("Offer sweep run #1 completed", output.getvalue())
        lock.refresh_from_db()
        self.assertNotEqual(lock.lock_owner, "old-worker")

    def test_scheduler_lease_is_exclusive_until_it_lapses(self):
        now = timezone.now()
        first = SchedulerLease("nightly_report", 60, owner="worker-a")
        second = SchedulerLease("nightly_report", 60, owner="worker-b")

        self.assertTrue(first.acquire(now=now))
        self.assertTrue(first.acquire(now=now + timedelta(seconds=30)))
        self.assertFalse(second.acquire(now=now + timedelta(seconds=60)))
        self.assertTrue(second.acquire(now=now + timedelta(seconds=91)))

        self.assertFalse(first.release())
        self.assertTrue(second.release())
        lock = SchedulerLock.objects.get(worker_name="nightly_report")
        self.assertEqual(lock.lock_owner, "")
        self.assertTrue(first.acquire())

    def test_worker_heartbeat_records_failures_and_health(self):
        self.assertEqual(describe_heartbeat("nightly_report", 300)["status"], "missing")

        heartbeat = WorkerHeartbeat("nightly_report")
        heartbeat.started()
        heartbeat.failed(ValueError("veritabanı kapalı"))

        row = SchedulerHeartbeat.objects.get(worker_name="nightly_report")
        self.assertEqual(row.run_count, 1)
        self.assertEqual(row.last_error, "veritabanı kapalı")
        self.assertIsNotNone(row.last_error_at)
        self.assertIsNone(row.last_success_at)

        heartbeat.succeeded()
        summary = describe_heartbeat("nightly_report", 300)
        self.assertEqual(summary["status"], "healthy")
        self.assertEqual(summary["last_error"], "")
        summary = describe_heartbeat("nightly_report", 300, now=timezone.now() + timedelta(minutes=10))
        self.assertEqual(summary["status"], "stale")

    def test_accept_bid_schedules_carrier_notifications(self):
        listing = self._publish("SHP-9701")
        winner = submit_bid(listing.id, self.carrier_ahmet, "2500")
        submit_bid(listing.id, self.carrier_burak, "2600")

        with self.captureOnCommitCallbacks() as callbacks:
            accept_bid(winner.id, broker=self.broker)
        self.assertEqual(len(callbacks), 2)

    def test_publish_carrier_change_reaches_group(self):
        channel_layer = get_channel_layer()
        channel_name = async_to_sync(channel_layer.new_channel)()
        async_to_sync(channel_layer.group_add)(carrier_jobs_group_name(self.carrier_ahmet.id), channel_name)

        self.assertTrue(publish_carrier_change(self.carrier_ahmet.id, "offer_issued", "SHP-9801"))
        message = async_to_sync(channel_layer.receive)(channel_name)
        self.assertEqual(message["type"], "lifecycle.changed")
        self.assertEqual(message["shipment_ref"], "SHP-9801")

    async def test_anonymous_websocket_is_closed(self):
        communicator = WebsocketCommunicator(CarrierJobsConsumer.as_asgi(), "/ws/carrier/jobs/")
        communicator.scope["user"] = AnonymousUser()
        connected, close_code = await communicator.connect()
        self.assertFalse(connected)
        self.assertEqual(close_code, 4401)


class MarketplaceApiTests(TestCase):
    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.broker_user = User.objects.create_user(username="apibroker", password="GucluSifre123!")
        self.broker = BrokerProfile.objects.create(user=self.broker_user, company_name="Api Lojistik")
        self.carrier_user = User.objects.create_user(username="apicarrier", password="GucluSifre123!")
        self.carrier = CarrierProfile.objects.create(
            user=self.carrier_user,
            full_name="Api Taşıyıcı",
            city="Ankara",
            is_verified=True,
        )
        self.pending_user = User.objects.create_user(username="apipending", password="GucluSifre123!")
        self.pending_carrier = CarrierProfile.objects.create(
            user=self.pending_user,
            full_name="Onay Bekleyen",
            city="Ankara",
            is_verified=False,
        )

    def test_login_returns_token_pair_and_role(self):
        response = self.client.post(
            reverse("api_login"),
            {"username": "apicarrier", "password": "GucluSifre123!"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.data)
        self.assertIn("refresh", response.data)
        self.assertEqual(response.data["user"]["role"], "carrier")

        response = self.client.post(
            reverse("api_login"),
            {"username": "apicarrier", "password": "yanlis"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

    def test_anonymous_request_is_rejected(self):
        response = self.client.get(reverse("api_listings"))
        self.assertEqual(response.status_code, 401)

    def test_broker_publishes_and_carrier_bids_over_api(self):
        self.client.force_authenticate(user=self.broker_user)
        response = self.client.post(
            reverse("api_listings"),
            {"shipmentId": "API-1", "pickupCity": "Ankara", "deliveryCity": "Konya", "budgetCeiling": "3000"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        listing_id = response.data["id"]
        self.assertEqual(response.data["shipment_ref"], "API-1")

        self.client.force_authenticate(user=self.carrier_user)
        response = self.client.post(
            reverse("api_bids"),
            {"listingId": listing_id, "bidPrice": "3500"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "budget-exceeded")
        self.assertEqual(Decimal(response.data["budget_ceiling"]), Decimal("3000"))

        response = self.client.post(
            reverse("api_bids"),
            {"listingId": listing_id, "bidPrice": "2800", "etaHours": 12},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        bid_id = response.data["id"]

        response = self.client.post(reverse("api_bid_accept", args=[bid_id]), format="json")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data["code"], "forbidden")

        self.client.force_authenticate(user=self.broker_user)
        response = self.client.post(reverse("api_bid_accept", args=[bid_id]), format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "accepted")

        response = self.client.get(reverse("api_job_detail", args=["API-1"]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "accepted")
        self.assertEqual(response.data["carrier"], self.carrier.id)

    def test_listing_filters_by_city_query(self):
        publish_listing("API-2", "Ankara", "Konya", broker=self.broker)
        publish_listing("API-3", "İzmir", "Konya", broker=self.broker)

        self.client.force_authenticate(user=self.carrier_user)
        response = self.client.get(reverse("api_listings"), {"fromCity": "ANKARA"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 1)
        self.assertEqual(response.data["results"][0]["shipment_ref"], "API-2")

    def test_unverified_carrier_cannot_bid(self):
        listing = publish_listing("API-4", "Ankara", "Konya", broker=self.broker)
        self.client.force_authenticate(user=self.pending_user)
        response = self.client.post(
            reverse("api_bids"),
            {"listingId": listing.id, "bidPrice": "1000"},
            format="json",
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data["reason"], "pending-approval")

    def test_offer_city_mismatch_payload_and_job_flow(self):
        self.client.force_authenticate(user=self.broker_user)
        response = self.client.post(
            reverse("api_offers"),
            {"shipmentId": "API-5", "carrierId": self.carrier.id, "price": "4100", "pickupCity": "İstanbul"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        mismatch_offer_id = response.data["id"]

        self.client.force_authenticate(user=self.carrier_user)
        response = self.client.post(reverse("api_offer_accept", args=[mismatch_offer_id]), format="json")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data["code"], "city-mismatch")
        self.assertEqual(response.data["required_city"], "İstanbul")
        self.assertEqual(response.data["registered_city"], "Ankara")

        response = self.client.post(
            reverse("api_offer_reject", args=[mismatch_offer_id]),
            {"reason": "Şehir dışı"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "rejected")

        self.client.force_authenticate(user=self.broker_user)
        response = self.client.post(
            reverse("api_offers"),
            {"shipmentId": "API-6", "carrierId": self.carrier.id, "price": "4100", "pickupCity": "ankara"},
            format="json",
        )
        offer_id = response.data["id"]

        self.client.force_authenticate(user=self.carrier_user)
        response = self.client.get(reverse("api_offers"))
        self.assertEqual(response.data["count"], 1)
        response = self.client.post(reverse("api_offer_accept", args=[offer_id]), format="json")
        self.assertEqual(response.status_code, 200)

        response = self.client.post(reverse("api_job_complete", args=["API-6"]), format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "not-bound")

        response = self.client.post(reverse("api_job_start", args=["API-6"]), format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "in_progress")
        response = self.client.post(reverse("api_job_complete", args=["API-6"]), format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "completed")

    def test_offer_to_unknown_carrier_is_not_found(self):
        self.client.force_authenticate(user=self.broker_user)
        response = self.client.post(
            reverse("api_offers"),
            {"shipmentId": "API-7", "carrierId": 999999, "price": "4100", "pickupCity": "Ankara"},
            format="json",
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data["code"], "not-found")

    def test_expired_offer_returns_gone(self):
        offer = issue_offer(
            "API-8",
            self.carrier,
            "Ankara",
            "3000",
            broker=self.broker,
            now=timezone.now() - timedelta(minutes=31),
        )
        self.client.force_authenticate(user=self.carrier_user)
        response = self.client.post(reverse("api_offer_accept", args=[offer.id]), format="json")
        self.assertEqual(response.status_code, 410)
        self.assertEqual(response.data["code"], "offer-expired")
        offer.refresh_from_db()
        self.assertEqual(offer.status, "expired")

    def test_carrier_jobs_view_is_private_and_sweeps(self):
        issue_offer(
            "API-9",
            self.carrier,
            "Ankara",
            "3000",
            broker=self.broker,
            now=timezone.now() - timedelta(minutes=45),
        )
        self.client.force_authenticate(user=self.carrier_user)
        response = self.client.get(reverse("api_carrier_jobs", args=[self.carrier.id]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["carrier_id"], self.carrier.id)
        self.assertEqual(response.data["counts"]["assignment_offers"], 0)
        self.assertEqual(AssignmentOffer.objects.get(job__shipment_ref="API-9").status, "expired")

        response = self.client.get(reverse("api_carrier_jobs", args=[self.pending_carrier.id]))
        self.assertEqual(response.status_code, 403)

    def test_broker_can_cancel_unbound_job(self):
        listing = publish_listing("API-10", "Ankara", "Konya", broker=self.broker)
        self.client.force_authenticate(user=self.broker_user)
        response = self.client.post(reverse("api_listing_close", args=[listing.id]), format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "closed")

        response = self.client.post(reverse("api_job_cancel", args=["API-10"]), {"reason": "Yük iptal"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "cancelled")

    @override_settings(LIFECYCLE_HEARTBEAT_STALE_SECONDS=60)
    def test_offer_sweep_health_reports_missing_healthy_and_stale(self):
        response = self.client.get(reverse("api_offer_sweep_health"))
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data["status"], "missing")

        heartbeat = SchedulerHeartbeat.objects.create(
            worker_name="offer_sweep",
            run_count=4,
            last_started_at=timezone.now(),
            last_success_at=timezone.now(),
        )
        response = self.client.get(reverse("api_offer_sweep_health"))
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["ok"])

        stale_at = timezone.now() - timedelta(minutes=5)
        SchedulerHeartbeat.objects.filter(pk=heartbeat.pk).update(last_success_at=stale_at, last_started_at=stale_at)
        response = self.client.get(reverse("api_offer_sweep_health"))
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data["status"], "stale")

    @override_settings(LIFECYCLE_HEALTH_TOKEN="gizli")
    def test_offer_sweep_health_requires_token_when_configured(self):
        SchedulerHeartbeat.objects.create(worker_name="offer_sweep", last_success_at=timezone.now())
        response = self.client.get(reverse("api_offer_sweep_health"))
        self.assertEqual(response.status_code, 403)
        response = self.client.get(reverse("api_offer_sweep_health"), HTTP_X_HEALTH_TOKEN="gizli")
        self.assertEqual(response.status_code, 200)
