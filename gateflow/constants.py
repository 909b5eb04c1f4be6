DEFAULT_SWEEP_MAX_AGE_HOURS = 24.0
APPROVAL_WAIT_LOG_MESSAGE = "Still waiting for approval..."
