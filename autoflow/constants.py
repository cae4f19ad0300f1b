"""Engine-wide defaults."""

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0
DEFAULT_SWEEP_BATCH_SIZE = 50
DEFAULT_LEASE_TTL_SECONDS = 300.0

DEFAULT_ACTION_TIMEOUT_SECONDS = 30.0
DEFAULT_AI_TIMEOUT_SECONDS = 60.0
MAX_AI_TIMEOUT_SECONDS = 300.0

DEFAULT_MAX_LOOP_ITERATIONS = 1000
DEFAULT_LOOP_PARALLELISM = 10
DEFAULT_MAX_SUB_WORKFLOW_DEPTH = 5
DEFAULT_MAX_STEPS_PER_TURN = 500

MAX_FILTER_PIPES = 10

# Weekday delays without an explicit time of day wake at this hour.
DEFAULT_WEEKDAY_HOUR = 9

NEXT = "next"
YES = "yes"
NO = "no"
LOOP_BODY = "loop-body"
LOOP_DONE = "loop-done"
TRY = "try"
ERROR = "error"
