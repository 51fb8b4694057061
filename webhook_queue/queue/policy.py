"""Priority and retry backoff policy for webhook jobs."""

from webhook_queue.queue.types import WebhookEventType

# Lower number = higher priority
PRIORITY_PAYMENT_SUCCESS = 1
PRIORITY_PAYMENT_FAILURE = 2
PRIORITY_REFUND = 3
PRIORITY_DEFAULT = 5


def event_priority(event_type: str) -> int:
    """Map a provider event type to its queue priority.

    Unknown event types get PRIORITY_DEFAULT.
    """
    try:
        known = WebhookEventType(event_type)
    except ValueError:
        return PRIORITY_DEFAULT

    match known:
        case WebhookEventType.PAYMENT_PAID | WebhookEventType.PAYMENT_INTENT_SUCCEEDED:
            return PRIORITY_PAYMENT_SUCCESS
        case (
            WebhookEventType.PAYMENT_FAILED
            | WebhookEventType.PAYMENT_INTENT_PAYMENT_FAILED
        ):
            return PRIORITY_PAYMENT_FAILURE
        case WebhookEventType.REFUND_UPDATED:
            return PRIORITY_REFUND
        case _:
            return PRIORITY_DEFAULT


def backoff_delay_ms(attempts_made: int, base_delay_ms: int) -> int:
    """Calculate the exponential retry delay after a failed attempt.

    attempts_made counts the attempt that just failed, so with a 5s base the
    schedule is 5s, 10s, 20s, ...
    """
    if attempts_made < 1:
        return 0
    return base_delay_ms * (2 ** (attempts_made - 1))


def should_retry(attempts_made: int, max_attempts: int) -> bool:
    """Check whether a failed job still has attempts left."""
    return attempts_made < max_attempts


def reconnect_delay_ms(times: int, step_ms: int, cap_ms: int) -> int:
    """Delay before the next Redis reconnect attempt: times * step, capped."""
    return min(max(times, 1) * step_ms, cap_ms)
