IPSET_ALLOW_SET = "meshlink_allow"
IPSET_TIER_SET_PREFIX = "meshlink_tier_"
IPSET_CMD_TIMEOUT_SECONDS = 2.0

# Gateway retry policy for transient ipset failures (resource busy, lock contention)
ENFORCEMENT_MAX_ATTEMPTS = 4
ENFORCEMENT_BACKOFF_BASE_SECONDS = 0.05
ENFORCEMENT_BACKOFF_MAX_SECONDS = 1.0

RECONCILE_INTERVAL_SECONDS = 30
QUOTA_POLL_INTERVAL_SECONDS = 10
ARCHIVE_INTERVAL_SECONDS = 3600
ARCHIVE_AFTER_SECONDS = 7 * 24 * 3600

# A PENDING row younger than this may still be inside an authorize call
PENDING_GRACE_SECONDS = 30

# Event dispatcher settings
EVENT_DISPATCHER_STREAM_ID = "meshlink_events"
EVENT_DISPATCHER_STREAM_MAXLEN = 100_000
