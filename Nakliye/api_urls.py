from django.urls import path
from rest_framework_simplejwt.views import TokenRefreshView

from .api_views import (
    BidAcceptView,
    BidCancelView,
    BidCollectionView,
    BidRejectView,
    CarrierJobsView,
    JobCancelView,
    JobCompleteView,
    JobDetailView,
    JobStartView,
    ListingCloseView,
    ListingCollectionView,
    LoginView,
    OfferAcceptView,
    OfferCollectionView,
    OfferRejectView,
    OfferSweepHealthView,
)


urlpatterns = [
    path("auth/login/", LoginView.as_view(), name="api_login"),
    path("auth/refresh/", TokenRefreshView.as_view(), name="api_token_refresh"),
    path("listings/", ListingCollectionView.as_view(), name="api_listings"),
    path("listings/<int:listing_id>/close/", ListingCloseView.as_view(), name="api_listing_close"),
    path("bids/", BidCollectionView.as_view(), name="api_bids"),
    path("bids/<int:bid_id>/accept/", BidAcceptView.as_view(), name="api_bid_accept"),
    path("bids/<int:bid_id>/reject/", BidRejectView.as_view(), name="api_bid_reject"),
    path("bids/<int:bid_id>/cancel/", BidCancelView.as_view(), name="api_bid_cancel"),
    path("offers/", OfferCollectionView.as_view(), name="api_offers"),
    path("offers/<int:offer_id>/accept/", OfferAcceptView.as_view(), name="api_offer_accept"),
    path("offers/<int:offer_id>/reject/", OfferRejectView.as_view(), name="api_offer_reject"),
    path("carriers/<int:carrier_id>/jobs/", CarrierJobsView.as_view(), name="api_carrier_jobs"),
    path("jobs/<str:shipment_ref>/", JobDetailView.as_view(), name="api_job_detail"),
    path("jobs/<str:shipment_ref>/start/", JobStartView.as_view(), name="api_job_start"),
    path("jobs/<str:shipment_ref>/complete/", JobCompleteView.as_view(), name="api_job_complete"),
    path("jobs/<str:shipment_ref>/cancel/", JobCancelView.as_view(), name="api_job_cancel"),
    path("health/offer-sweep/", OfferSweepHealthView.as_view(), name="api_offer_sweep_health"),
]
