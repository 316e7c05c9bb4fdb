# --- Content Truncation Limits ---

TOOL_OUTPUT_LIMIT = 30000
BASH_OUTPUT_LIMIT = 5000
HTTP_BODY_LIMIT = 20000
DEFAULT_READ_LINES = 500


# --- Agent Limits ---

AGENT_MAX_ITERATIONS = 50
BASH_TIMEOUT = 30  # seconds
HTTP_TIMEOUT = 30.0  # seconds


# --- Approvals ---

APPROVAL_TIMEOUT = 300.0  # seconds (5 min) from creation, fail-closed on expiry


# --- Provider Retry ---

RETRY_MAX_ATTEMPTS = 4  # first call + 3 retries
RETRY_INITIAL_WAIT = 0.5  # seconds
RETRY_MAX_WAIT = 8.0  # seconds
RETRY_JITTER = 1.0  # seconds
RETRYABLE_STATUS = frozenset({408, 409, 429})


# --- Plans ---

TASK_MIN_COMPLEXITY = 1
TASK_MAX_COMPLEXITY = 5


# --- Sessions ---

SESSION_LIST_LIMIT = 20
