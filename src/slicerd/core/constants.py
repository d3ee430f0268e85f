"""Global constants for slicerd.

Centralizes the queue timing defaults, document field values and stats
keys used across the worker.
"""

# =============================================================================
# Queue leases
# =============================================================================

QUEUE_LEASE_SECONDS = 60
"""Invisibility granted to a claimed message on claim and on every renewal."""

QUEUE_RENEW_INTERVAL_SECONDS = 30
"""Period of the lease-renewal sweep. Must stay below the lease duration."""

QUEUE_POLL_WAIT_SECONDS = 5
"""Long-poll wait applied to the low-priority queue when the high one is empty."""

QUEUE_IDLE_SLEEP_SECONDS = 1.0
"""Pause between polls when both queues are momentarily empty."""

# =============================================================================
# Job status document
# =============================================================================

GCODE_WAITING_SENTINEL = "waiting"
"""Value of ``gcode_file`` until a sliced result has been delivered."""

REQUIRED_MESSAGE_FIELDS = (
    "config_file",  # download URL of the slicer configuration
    "gcode_file",   # upload URL for the resulting gcode
    "handle",       # queue token; needed to remove or requeue the message
    "job_id",       # for logging
    "job_oid",      # id of the job status document
    "stl_file",     # download URL of the model to slice
)
"""Fields every inbound slicing request must carry."""

# =============================================================================
# Stats documents
# =============================================================================

STATS_LIFETIME_KEY = "0" * 24
"""Key of the never-reset lifetime stats document."""

SECONDS_PER_HOUR = 3600
"""Width of one hourly stats bucket."""

# =============================================================================
# Output truncation
# =============================================================================

TRUNCATE_STDOUT_TAIL_CHARS = 500
"""Truncation limit for slicer stdout/stderr tails in logs."""
