"""Engine-wide defaults."""

DEFAULT_TICK_INTERVAL_SECONDS = 5.0
DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_WORKERS = 4
DEFAULT_LEASE_SECONDS = 60.0
DEFAULT_MAX_STEPS_PER_PASS = 100
DEFAULT_DELIVERY_TIMEOUT_SECONDS = 30.0
DEFAULT_LINKS_BASE_URL = "https://app.example.com"
DEFAULT_ANALYTICS_MAX_TRACKED = 100_000

SPLIT_TEST_BUCKETS = 100
