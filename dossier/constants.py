"""Constants used throughout the dossier codebase."""

# Pipeline stage (queue) names
CH_APPOINTMENTS = "ch-appointments"
COMPANY_DISCOVERY = "company-discovery"
SITE_FETCH = "site-fetch"
PERSON_LINKEDIN = "person-linkedin"
OWNER_DISCOVERY = "owner-discovery"

# Retry policy shared by every stage unless overridden
DEFAULT_ATTEMPTS = 5

# Read contract pagination
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200

# Category used for events whose job is unknown to the progress store
GENERIC_CATEGORY = "general"

# Companies House API quota
CH_RATE_LIMIT_WINDOW_MS = 60_000
CH_RATE_LIMIT_MAX_PER_WINDOW = 500
CH_API_BASE = "https://api.company-information.service.gov.uk"

# Smallest pause between rate limiter grant attempts
MIN_LIMITER_WAIT_SECONDS = 0.01

# Worker timing
POLL_INTERVAL_SECONDS = 0.5
STALL_TIMEOUT_SECONDS = 300.0

# Bounded job -> queue cache used for event enrichment
QUEUE_CACHE_SIZE = 1024

DEFAULT_DB_PATH = "dossier.db"
