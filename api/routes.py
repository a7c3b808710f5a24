"""Request handlers for the booking sync API."""
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Optional, Tuple

from botocore.exceptions import ClientError

from scheduling.models import SlotAction, SlotId
from scheduling.recurrence import RecurrencePattern
from scheduling.scoring import effectiveness
from sync.errors import USER_MESSAGES, CalendarApiError, ErrorType
from sync.models import BookingResult, SyncStatus

logger = logging.getLogger(__name__)

STATUS_BY_ERROR_TYPE = {
    ErrorType.AUTH_ERROR: 401,
    ErrorType.CONFLICT: 409,
    ErrorType.RETRY: 429,
    ErrorType.NETWORK: 503,
    ErrorType.SERVER_ERROR: 500,
}

Response = Tuple[int, Dict[str, Any]]


class BadRequestError(ValueError):
    """Raised when a request is missing fields or carries invalid values."""


@dataclass
class Services:
    """Collaborators a request handler may use."""
    tracker: Any
    coordinator: Any
    recommender: Any
    slot_stats: Any
    preferences: Any
    calendar: Any


@dataclass
class ApiRequest:
    """API Gateway proxy request reduced to what handlers need."""
    method: str
    resource: str
    path_params: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)
    body: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_event(cls, event: Dict[str, Any]) -> 'ApiRequest':
        """
        Build a request from an API Gateway proxy event.

        Raises:
            BadRequestError: If the body is not a JSON object
        """
        raw_body = event.get('body')
        body = {}
        if raw_body:
            try:
                body = json.loads(raw_body)
            except (TypeError, ValueError) as e:
                raise BadRequestError(f"Request body is not valid JSON: {e}") from e
            if not isinstance(body, dict):
                raise BadRequestError('Request body must be a JSON object')

        return cls(
            method=(event.get('httpMethod') or 'GET').upper(),
            resource=event.get('resource') or event.get('path') or '/',
            path_params=event.get('pathParameters') or {},
            query=event.get('queryStringParameters') or {},
            body=body
        )


def get_available_slots(services: Services, user_id: str, request: ApiRequest) -> Response:
    """Return ranked candidate slots plus the batch timestamp."""
    search_date = _date_param(request.query, 'date')
    duration = _int_param(request.query, 'durationMinutes', 30)
    horizon = _int_param(request.query, 'horizonDays', 1)
    min_score = _float_param(request.query, 'minScore', 0)

    try:
        batch = services.calendar.find_available_slots(search_date, duration, horizon)
    except CalendarApiError as e:
        logger.error(
            f"Failed to fetch available slots: {e}",
            extra={'error_type': e.error_type.value, 'status_code': e.status_code}
        )
        return STATUS_BY_ERROR_TYPE[e.error_type], _error_body(e.error_type)

    learning_enabled = services.preferences.is_learning_enabled(user_id)
    stats = services.slot_stats.get_stats(user_id) if learning_enabled else {}
    ranked = services.recommender.rank(batch.slots, stats, min_threshold=min_score)

    return 200, {
        'slots': [slot.to_dict() for slot in ranked],
        'timestamp': batch.timestamp,
        'learningEnabled': learning_enabled
    }


def create_booking(services: Services, user_id: str, request: ApiRequest) -> Response:
    """Book a slot and sync it to the external calendar."""
    title = _required_str(request.body, 'title')
    start = _required_str(request.body, 'start')
    end = _required_str(request.body, 'end')
    snapshot_timestamp = _optional_int(request.body, 'snapshotTimestamp')

    try:
        slot_id = SlotId.from_iso(start)
    except ValueError as e:
        raise BadRequestError(f"Invalid start time: {start}") from e

    result = services.tracker.create(user_id, title, start, end, snapshot_timestamp)
    _settle_booking(services, user_id, result, slot_id)

    if result.success:
        return 201, result.to_dict()
    return _failure_response(result)


def create_recurring_booking(services: Services, user_id: str, request: ApiRequest) -> Response:
    """Book every occurrence of a recurring pattern, one sync event each."""
    title = _required_str(request.body, 'title')
    start = _required_str(request.body, 'start')
    end = _required_str(request.body, 'end')
    snapshot_timestamp = _optional_int(request.body, 'snapshotTimestamp')
    if request.body.get('pattern') is None:
        raise BadRequestError('Missing required field: pattern')

    try:
        pattern = RecurrencePattern.from_dict(request.body['pattern'])
        occurrences = pattern.occurrences(start, end)
    except ValueError as e:
        raise BadRequestError(f"Invalid recurring booking: {e}") from e
    if not occurrences:
        raise BadRequestError('Recurring booking pattern produced no occurrences')

    results = services.tracker.create_series(
        user_id, title, occurrences, snapshot_timestamp
    )

    events = []
    for result, (occurrence_start, occurrence_end) in zip(results, occurrences):
        _settle_booking(services, user_id, result, SlotId.from_iso(occurrence_start))
        events.append(dict(result.to_dict(), start=occurrence_start, end=occurrence_end))

    synced = sum(1 for result in results if result.success)
    body = {'success': synced > 0, 'count': synced, 'events': events}
    if synced:
        return 201, body

    first = results[0]
    body['errorType'] = first.error_type.value
    body['message'] = first.message
    return STATUS_BY_ERROR_TYPE.get(first.error_type, 500), body


def retry_failed(services: Services, user_id: str, request: ApiRequest) -> Response:
    retried = services.coordinator.retry_all_failed(user_id)
    return 200, {'success': True, 'retried': retried}


def retry_booking(services: Services, user_id: str, request: ApiRequest) -> Response:
    event_id = request.path_params.get('eventId')
    if not event_id:
        raise BadRequestError('eventId is required')

    result = services.coordinator.retry_now(user_id, event_id)
    if result.success:
        return 200, result.to_dict()
    return _failure_response(result)


def retry_due(services: Services, user_id: str, request: ApiRequest) -> Response:
    retried = services.coordinator.run_due_retries(user_id)
    return 200, {'success': True, 'retried': retried}


def list_sync_events(services: Services, user_id: str, request: ApiRequest) -> Response:
    status = None
    if request.query.get('status'):
        try:
            status = SyncStatus(request.query['status'])
        except ValueError as e:
            raise BadRequestError(f"Invalid status: {request.query['status']}") from e

    events = services.tracker.list_events(user_id, status)
    return 200, {'events': [event.to_dict() for event in events]}


def get_sync_status(services: Services, user_id: str, request: ApiRequest) -> Response:
    return 200, services.tracker.sync_status(user_id).to_dict()


def get_learning_mode(services: Services, user_id: str, request: ApiRequest) -> Response:
    preference = services.preferences.get(user_id)
    return 200, {
        'success': True,
        'learningEnabled': preference.learning_enabled,
        'lastLearningChange': preference.last_changed
    }


def set_learning_mode(services: Services, user_id: str, request: ApiRequest) -> Response:
    enabled = request.body.get('enabled')
    if not isinstance(enabled, bool):
        raise BadRequestError('Invalid request: enabled must be a boolean')

    preference = services.preferences.set_learning_enabled(user_id, enabled)
    return 200, {
        'success': True,
        'message': f"Learning mode {'enabled' if enabled else 'disabled'} successfully",
        'learningEnabled': preference.learning_enabled,
        'lastLearningChange': preference.last_changed
    }


def get_slot_stats(services: Services, user_id: str, request: ApiRequest) -> Response:
    """List slot statistics with their user-facing effectiveness score."""
    if not services.preferences.is_learning_enabled(user_id):
        return 200, {
            'success': True,
            'message': 'Learning mode is disabled',
            'slotStats': []
        }

    stats = services.slot_stats.get_stats(user_id)
    slot_stats = [
        {
            'slotId': stat.slot_id,
            'totalScheduled': stat.total_scheduled,
            'totalCompleted': stat.total_completed,
            'totalCancelled': stat.total_cancelled,
            'successRate': round(stat.success_rate, 4),
            'effectiveness': effectiveness(
                stat.total_scheduled,
                stat.total_completed,
                stat.total_cancelled
            ),
            'lastUpdated': stat.last_updated
        }
        for _, stat in sorted(stats.items())
    ]
    return 200, {'success': True, 'slotStats': slot_stats}


def record_slot_activity(services: Services, user_id: str, request: ApiRequest) -> Response:
    """Record a scheduled, completed or cancelled outcome for a slot."""
    slot_id = _required_str(request.body, 'slotId')
    action_name = _required_str(request.body, 'action')

    try:
        action = SlotAction(action_name)
    except ValueError as e:
        raise BadRequestError(
            "Invalid action: must be 'scheduled', 'cancelled', or 'completed'"
        ) from e

    try:
        stat = services.slot_stats.record(user_id, slot_id, action)
    except ValueError as e:
        raise BadRequestError(str(e)) from e

    if stat is None:
        return 200, {
            'success': True,
            'message': 'Learning mode is disabled, not recording stats'
        }

    return 200, {
        'success': True,
        'message': f"Activity recorded: {action.value} for slot {stat.slot_id}"
    }


ROUTES: Dict[Tuple[str, str], Callable[[Services, str, ApiRequest], Response]] = {
    ('GET', '/available-slots'): get_available_slots,
    ('POST', '/bookings'): create_booking,
    ('POST', '/bookings/recurring'): create_recurring_booking,
    ('POST', '/bookings/{eventId}/retry'): retry_booking,
    ('POST', '/retry-failed'): retry_failed,
    ('POST', '/retry-due'): retry_due,
    ('GET', '/sync-events'): list_sync_events,
    ('GET', '/sync-status'): get_sync_status,
    ('GET', '/learning-mode'): get_learning_mode,
    ('POST', '/learning-mode'): set_learning_mode,
    ('GET', '/slot-stats'): get_slot_stats,
    ('POST', '/slot-stats/record'): record_slot_activity,
}


def _settle_booking(services: Services, user_id: str, result: BookingResult, slot_id: SlotId) -> None:
    """Record stats for a synced booking, or queue a retry for a retryable failure."""
    if result.success:
        try:
            services.slot_stats.record_scheduled(user_id, str(slot_id))
        except ClientError as e:
            logger.warning(f"Booking synced but slot stats not recorded: {e}")
        return

    if result.retryable:
        scheduled = services.coordinator.schedule_retry(user_id, result.event_id, automatic=True)
        if scheduled is not None:
            result.status = scheduled.status
            result.next_retry_at = scheduled.next_retry_at


def _failure_response(result: BookingResult) -> Response:
    status_code = STATUS_BY_ERROR_TYPE.get(result.error_type, 500)
    return status_code, result.to_dict()


def _error_body(error_type: ErrorType) -> Dict[str, Any]:
    body = {
        'success': False,
        'errorType': error_type.value,
        'message': USER_MESSAGES[error_type]
    }
    if error_type == ErrorType.AUTH_ERROR:
        body['requiresReconnect'] = True
    return body


def _required_str(body: Dict[str, Any], name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str) or not value.strip():
        raise BadRequestError(f"Missing required field: {name}")
    return value


def _optional_int(body: Dict[str, Any], name: str) -> Optional[int]:
    value = body.get(name)
    if value is None:
        return None
    if isinstance(value, bool):
        raise BadRequestError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise BadRequestError(f"{name} must be an integer") from e


def _int_param(params: Dict[str, str], name: str, default: int) -> int:
    if params.get(name) in (None, ''):
        return default
    try:
        return int(params[name])
    except ValueError as e:
        raise BadRequestError(f"{name} must be an integer") from e


def _float_param(params: Dict[str, str], name: str, default: float) -> float:
    if params.get(name) in (None, ''):
        return default
    try:
        return float(params[name])
    except ValueError as e:
        raise BadRequestError(f"{name} must be a number") from e


def _date_param(params: Dict[str, str], name: str) -> Optional[date]:
    if not params.get(name):
        return None
    try:
        return date.fromisoformat(params[name])
    except ValueError as e:
        raise BadRequestError(f"{name} must be an ISO date (YYYY-MM-DD)") from e
