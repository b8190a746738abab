from prometheus_client import Counter, Histogram

# Seat lock metrics
SEAT_LOCK_LATENCY = Histogram("seat_inventory_seat_lock_latency_seconds", "Latency for seat lock operations", ["operation"])
SEAT_LOCK_ATTEMPTS = Counter("seat_inventory_seat_lock_attempts_total", "Total seat lock attempts", ["operation", "result"])

# Expiry sweep
SEAT_LOCKS_REAPED = Counter("seat_inventory_seat_locks_reaped_total", "Expired seat holds released by the reaper")
SEAT_LOCK_REAP_FAILURES = Counter("seat_inventory_seat_lock_reap_failures_total", "Seat holds the reaper failed to release")

# Booked counter
BOOKED_COUNT_ADJUSTMENTS = Counter(
    "seat_inventory_booked_count_adjustments_total", "Booked counter adjustments", ["result"]
)

# Caches
CACHE_REQUESTS = Counter("seat_inventory_cache_requests_total", "Read-through cache lookups", ["cache", "result"])
CACHE_BACKEND_ERRORS = Counter("seat_inventory_cache_backend_errors_total", "Cache backend failures", ["operation"])

# Live updates
SEAT_UPDATES_PUBLISHED = Counter("seat_inventory_seat_updates_published_total", "Seat update events published", ["action"])
SEAT_UPDATES_DROPPED = Counter("seat_inventory_seat_updates_dropped_total", "Seat update events dropped for slow subscribers")
SUBSCRIPTIONS = Counter("seat_inventory_subscriptions_total", "Seat update subscription attempts", ["result"])
