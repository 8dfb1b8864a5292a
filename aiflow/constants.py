"""Default values shared across aiflow modules."""

FLOW_QUEUE = "aiflow.flows"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_JOB_TIMEOUT = 120.0
DEFAULT_BACKOFF = 5.0
DEFAULT_CONTINUE_DELAY = 1.0
DEFAULT_FINALIZE_DELAY = 0.5
DEFAULT_FLOW_MAX_RETRIES = 3

# Claims held longer than this are redelivered; keep it above the job timeout.
DEFAULT_VISIBILITY_TIMEOUT = 180.0

# A choice prompt offers a "refine" option once this many matches come back.
REFINE_OPTION_THRESHOLD = 5
