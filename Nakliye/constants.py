JOB_UNBOUND_STATUSES = {"listed", "assignment_offered"}
JOB_ACTIVE_STATUSES = ("accepted", "in_progress")

BID_OPEN_STATUSES = ("pending", "accepted")

EVENT_BID_WON = "bid_won"
EVENT_OFFER_ISSUED = "offer_issued"
EVENT_OFFER_WON = "offer_won"
EVENT_OFFER_REJECTED = "offer_rejected"
EVENT_OFFER_EXPIRED = "offer_expired"
EVENT_WORK_STARTED = "work_started"
EVENT_WORK_COMPLETED = "work_completed"
EVENT_CANCELLED = "cancelled"

TAB_ASSIGNMENT_OFFERS = "assignment_offers"
TAB_PENDING_BIDS = "pending_bids"
TAB_ACCEPTED_BIDS = "accepted_bids"
TAB_ACTIVE_JOBS = "active_jobs"
TAB_COMPLETED_JOBS = "completed_jobs"

CARRIER_VIEW_TABS = (
    TAB_ASSIGNMENT_OFFERS,
    TAB_PENDING_BIDS,
    TAB_ACCEPTED_BIDS,
    TAB_ACTIVE_JOBS,
    TAB_COMPLETED_JOBS,
)

OFFER_SWEEP_WORKER_NAME = "offer_sweep"
