"""Engine-wide defaults."""

DEFAULT_MODEL = "gpt-4"
DEFAULT_COMPLETION_TIMEOUT_MS = 30_000
DEFAULT_ORGANIZATION_ID = "default"

# Confidence level thresholds (inclusive lower bounds)
CONFIDENCE_VERY_HIGH = 0.8
CONFIDENCE_HIGH = 0.6
CONFIDENCE_MEDIUM = 0.4

DEFAULT_LOG_PAGE_SIZE = 100
DEFAULT_EXPORT_LIMIT = 10_000
DEFAULT_RETENTION_DAYS = 90

DEFAULT_RATE_LIMIT_WINDOW_MS = 60_000
DEFAULT_RATE_LIMIT_MAX_REQUESTS = 60

DEFAULT_APPROVAL_TIMEOUT_MS = 3_600_000

CSV_EXPORT_COLUMNS = (
    "id",
    "timestamp",
    "level",
    "category",
    "agentId",
    "executionId",
    "stepId",
    "workflowId",
    "organizationId",
    "userId",
    "message",
)
