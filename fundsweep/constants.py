"""
Global constants for sanitize runs.

Centralizes collection names, roles, store limits and retry tuning so the
rule modules and the runner agree on them.
"""

# Collections
USERS = "users"
TEAMS = "teams"
CAMPAIGNS = "campaigns"
ATHLETES = "athletes"
COACHES = "coaches"
DONORS = "donors"
DONATIONS = "donations"
CAMPAIGN_ATHLETES = "campaignAthletes"
PUBLIC_DONORS = "public_donors"  # sub-collection group under campaigns/{id}

# Evaluation order: parents before children, donations before donor totals
COLLECTION_ORDER = [
    TEAMS,
    CAMPAIGNS,
    USERS,
    ATHLETES,
    COACHES,
    CAMPAIGN_ATHLETES,
    DONATIONS,
    DONORS,
]

# Issue code prefix per collection (e.g. DONATION_ORPHAN_CAMPAIGN)
ENTITY_PREFIX = {
    USERS: "USER",
    TEAMS: "TEAM",
    CAMPAIGNS: "CAMPAIGN",
    ATHLETES: "ATHLETE",
    COACHES: "COACH",
    DONORS: "DONOR",
    DONATIONS: "DONATION",
    CAMPAIGN_ATHLETES: "CAMPAIGN_ATHLETE",
    PUBLIC_DONORS: "PUBLIC_DONOR",
}

# Roles
ROLE_ADMIN = "admin"
ROLE_COACH = "coach"
ROLE_ATHLETE = "athlete"
ROLE_DONOR = "donor"
ROLE_SUPER_ADMIN = "super-admin"  # cross-tenant, exempt from org checks
VALID_ROLES = {ROLE_ADMIN, ROLE_COACH, ROLE_ATHLETE, ROLE_DONOR, ROLE_SUPER_ADMIN}

# Store limits
FIRESTORE_MAX_BATCH_OPS = 500  # hard cap per atomic batch
DEFAULT_BATCH_SIZE = 400  # kept below the hard cap
DEFAULT_STORE_TIMEOUT_SECONDS = 30.0

# Retries and pacing
COMMIT_MAX_RETRIES = 2
COMMIT_INITIAL_BACKOFF_SECONDS = 1.0  # doubles each retry
MIN_COMMIT_INTERVAL_SECONDS = 0.2
DEFAULT_MAX_WORKERS = 4

# Evaluation repeats until a pass plans nothing new
MAX_EVALUATION_PASSES = 5

# Currency
LIKELY_DOLLARS_THRESHOLD = 100
LEGACY_CURRENCY_UNIT = "dollars"

# Ephemeral browser resource handles
BLOB_URL_PREFIX = "blob:"

# Public donor view
PAID_STATUS = "paid"
ANONYMOUS_DONOR_NAME = "Anonymous"

# Exit codes
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130
