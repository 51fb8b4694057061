"""Webhook queue exceptions."""


class WebhookQueueError(Exception):
    """Base class for webhook queue errors."""


class QueueConnectionError(WebhookQueueError):
    """Redis could not be reached while initializing the queue."""


class QueueNotInitializedError(WebhookQueueError):
    """An operation needing a live queue was called before initialize()."""

    def __init__(self, message: str = "Webhook queue not initialized. Call initialize() first."):
        super().__init__(message)


class InvalidJobError(WebhookQueueError, ValueError):
    """Enqueue input is missing a required field."""


class JobNotFoundError(WebhookQueueError, LookupError):
    """No job exists with the given id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class JobNotFailedError(WebhookQueueError):
    """The job exists but is not in the failed state."""

    def __init__(self, job_id: str, state: str):
        self.job_id = job_id
        self.state = state
        super().__init__(f"Job {job_id} is not in failed state (state={state})")


class JobStalledError(WebhookQueueError):
    """A job's worker stopped renewing its lock too many times."""

    def __init__(self, job_id: str, reason: str):
        self.job_id = job_id
        super().__init__(reason)
