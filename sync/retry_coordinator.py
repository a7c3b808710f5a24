"""Retry bookkeeping for failed booking syncs."""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from scheduling.models import now_ms
from sync.errors import ErrorType, InvalidTransitionError
from sync.models import BookingResult, SyncEvent, SyncStatus, Transition

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Retry delay and budget."""
    delay_seconds: float = 60
    max_retries: int = 3
    backoff_multiplier: float = 1.0

    def delay_ms(self, attempt: int) -> int:
        """
        Delay before the given retry attempt (1-based).

        A multiplier of 1.0 gives a fixed delay; larger values back off
        exponentially.
        """
        delay = self.delay_seconds * (self.backoff_multiplier ** max(0, attempt - 1))
        return int(delay * 1000)


class RetryCoordinator:
    """Decides whether and when failed syncs are retried, and re-attempts them."""

    def __init__(
        self,
        tracker,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], int] = now_ms
    ):
        """
        Initialize the coordinator.

        Args:
            tracker: SyncEventTracker owning the events
            policy: Retry delay and budget (default: 60s fixed, 3 retries)
            clock: Returns the current time in epoch milliseconds
        """
        self.tracker = tracker
        self.policy = policy or RetryPolicy()
        self.clock = clock

    def has_budget(self, event: SyncEvent) -> bool:
        return event.retry_count < self.policy.max_retries

    def schedule_retry(
        self,
        user_id: str,
        event_id: str,
        automatic: bool = False
    ) -> Optional[SyncEvent]:
        """
        Move an event from ERROR to RETRY and set its next retry time.

        Args:
            user_id: Owner of the event
            event_id: Event to schedule
            automatic: True when scheduled by the system rather than the user;
                non-retryable failures are then left alone

        Returns:
            The scheduled event, or None if no retry was scheduled

        Raises:
            InvalidTransitionError: If the event is not in ERROR status
        """
        with self.tracker.event_lock(user_id, event_id):
            event = self.tracker.get(user_id, event_id)
            if event.status != SyncStatus.ERROR:
                raise InvalidTransitionError(event.status, 'schedule_retry')

            if not self.has_budget(event):
                logger.warning(
                    f"Retry budget exhausted for sync event {event_id} "
                    f"({event.retry_count}/{self.policy.max_retries})"
                )
                return None

            if automatic and not event.error_retryable:
                logger.info(
                    f"Not scheduling automatic retry for sync event {event_id}: "
                    f"{event.error_code} is not retryable"
                )
                return None

            next_retry_at = self.clock() + self.policy.delay_ms(event.retry_count + 1)
            return self.tracker.update(
                user_id,
                event_id,
                Transition.retry_scheduled(next_retry_at)
            )

    def retry_now(
        self,
        user_id: str,
        event_id: str,
        cancel_event: Optional[threading.Event] = None
    ) -> BookingResult:
        """
        Re-attempt the external booking call immediately.

        An event in ERROR is first moved to RETRY, which consumes one unit of
        the retry budget.

        Args:
            user_id: Owner of the event
            event_id: Event to retry
            cancel_event: Set by the caller to abandon the calendar call

        Returns:
            BookingResult describing the outcome

        Raises:
            InvalidTransitionError: If the event is neither in ERROR nor RETRY
            CallCancelledError: If the caller cancelled; the event stays in RETRY
        """
        with self.tracker.event_lock(user_id, event_id):
            event = self.tracker.get(user_id, event_id)

            if event.status == SyncStatus.ERROR:
                scheduled = self.schedule_retry(user_id, event_id)
                if scheduled is None:
                    return BookingResult.failure(
                        event,
                        _error_type(event),
                        message='This booking has been retried too many times. '
                                'Please pick a new time.'
                    )
                event = scheduled
            elif event.status != SyncStatus.RETRY:
                raise InvalidTransitionError(event.status, 'retry_now')

            logger.info(
                f"Retrying sync event {event_id} "
                f"(attempt {event.retry_count}/{self.policy.max_retries})"
            )
            return self.tracker.attempt_booking(event, cancel_event)

    def retry_all_failed(self, user_id: str) -> int:
        """
        Retry every ERROR event of a user.

        One event's failure never stops the others.

        Args:
            user_id: Owner of the events

        Returns:
            Count of events that reached SYNCED
        """
        failed = self.tracker.list_events(user_id, SyncStatus.ERROR)
        logger.info(f"Retrying {len(failed)} failed sync events for user {user_id}")

        synced_count = 0
        for event in failed:
            try:
                result = self.retry_now(user_id, event.event_id)
            except Exception as e:
                logger.error(
                    f"Error retrying sync event {event.event_id}: {e}",
                    extra={'error_type': type(e).__name__},
                    exc_info=True
                )
                continue

            if result.success:
                synced_count += 1

        logger.info(
            f"Retried failed sync events: {synced_count} synced, "
            f"{len(failed) - synced_count} still failing"
        )
        return synced_count

    def run_due_retries(self, user_id: str) -> int:
        """
        Attempt every RETRY event whose scheduled time has been reached.

        Returns:
            Count of events that reached SYNCED
        """
        now = self.clock()
        due = [
            event for event in self.tracker.list_events(user_id, SyncStatus.RETRY)
            if event.next_retry_at is not None and event.next_retry_at <= now
        ]
        logger.info(f"Found {len(due)} due retries for user {user_id}")

        synced_count = 0
        for event in due:
            try:
                result = self.retry_now(user_id, event.event_id)
            except Exception as e:
                logger.error(
                    f"Error running due retry for sync event {event.event_id}: {e}",
                    extra={'error_type': type(e).__name__},
                    exc_info=True
                )
                continue

            if result.success:
                synced_count += 1

        return synced_count


def _error_type(event: SyncEvent) -> ErrorType:
    try:
        return ErrorType(event.error_code)
    except ValueError:
        return ErrorType.SERVER_ERROR
