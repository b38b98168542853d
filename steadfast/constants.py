"""Shared defaults for steadfast."""

import uuid

# Namespace for replay-stable idempotency keys.
IDEMPOTENCY_NAMESPACE = uuid.UUID("6f1c2a4e-9a51-5d2b-8c1e-3f7d0b6a2c90")

DEFAULT_BILLING_ATTEMPTS = 3
DEFAULT_COMPENSATION_ATTEMPTS = 3
DEFAULT_START_TO_CLOSE_TIMEOUT = 300.0
DEFAULT_PROGRESS_TIMEOUT = 5.0
DEFAULT_ALERT_TIMEOUT = 10.0
# Seconds to wait for an abandoned attempt to unwind before its slot is reissued.
DEFAULT_ABANDON_GRACE = 1.0
DEFAULT_RETENTION_DAYS = 30
DEFAULT_INSPECT_URL = "http://localhost:8080/executions/{execution_id}"

PROGRESS_ACTIVITY = "steadfast.publish_progress"
ALERT_ACTIVITY = "steadfast.send_alert"
