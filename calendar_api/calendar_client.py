"""HTTP client for the external calendar service."""
import logging
import threading
import time
from datetime import date
from typing import List, Optional

import requests

from scheduling.models import AvailabilityBatch, CandidateSlot, now_ms
from sync.errors import CalendarApiError, CallCancelledError, ErrorType, classify_status
from sync.models import ExternalEventRef

logger = logging.getLogger(__name__)


class CalendarApiClient:
    """Client for availability lookups and event creation on the calendar."""

    MAX_RETRIES = 3
    BASE_DELAY = 1  # seconds

    def __init__(
        self,
        base_url: str,
        timeout: int = 30,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the calendar client.

        Args:
            base_url: Base URL of the calendar service
            timeout: HTTP request timeout in seconds (default: 30)
            session: Optional requests session (default: new session)
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def find_available_slots(
        self,
        search_date: Optional[date] = None,
        duration_minutes: int = 30,
        horizon_days: int = 1
    ) -> AvailabilityBatch:
        """
        Fetch candidate time slots from the calendar with retry logic.

        Args:
            search_date: First day to search (default: today)
            duration_minutes: Required slot length in minutes
            horizon_days: Number of days to search

        Returns:
            AvailabilityBatch with slots stamped with the batch timestamp

        Raises:
            CalendarApiError: If all retry attempts fail
        """
        search_date = search_date or date.today()
        params = {
            'date': search_date.isoformat(),
            'durationMinutes': duration_minutes,
            'horizonDays': horizon_days
        }
        logger.info(
            f"Fetching available slots from {params['date']} "
            f"({duration_minutes} min, {horizon_days} days)"
        )

        for attempt in range(self.MAX_RETRIES):
            try:
                response = self.session.get(
                    f"{self.base_url}/available-slots",
                    params=params,
                    timeout=self.timeout
                )
                response.raise_for_status()
                return self._parse_availability(response.json())

            except requests.RequestException as e:
                if attempt < self.MAX_RETRIES - 1:
                    # Calculate exponential backoff delay
                    delay = self.BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        f"Availability request failed (attempt {attempt + 1}/"
                        f"{self.MAX_RETRIES}): {e}. Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.MAX_RETRIES} retry attempts failed. Last error: {e}"
                    )
                    raise self._to_api_error(e) from e

    def create_external_event(
        self,
        title: str,
        start: str,
        end: str,
        cancel_event: Optional[threading.Event] = None
    ) -> ExternalEventRef:
        """
        Create an event in the external calendar.

        Event creation is not idempotent, so failures are never retried here.

        Args:
            title: Event title
            start: Start time (ISO 8601)
            end: End time (ISO 8601)
            cancel_event: Set by the caller to abandon the call

        Returns:
            ExternalEventRef with the calendar's event id and link

        Raises:
            CalendarApiError: If the calendar rejects the event or is unreachable
            CallCancelledError: If cancel_event is set before or after the request
        """
        if cancel_event is not None and cancel_event.is_set():
            raise CallCancelledError(f"Booking '{title}' cancelled before sending")

        try:
            response = self.session.post(
                f"{self.base_url}/events",
                json={'title': title, 'start': start, 'end': end},
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Failed to create calendar event '{title}': {e}")
            raise self._to_api_error(e) from e

        if cancel_event is not None and cancel_event.is_set():
            raise CallCancelledError(f"Booking '{title}' cancelled while in flight")

        try:
            data = response.json()
        except ValueError as e:
            logger.warning(f"Calendar returned a non-JSON body for '{title}': {e}")
            raise CalendarApiError(
                ErrorType.SERVER_ERROR,
                'Calendar response was not valid JSON',
                response.status_code
            ) from e
        if not isinstance(data, dict):
            raise CalendarApiError(
                ErrorType.SERVER_ERROR,
                'Calendar response was not a JSON object',
                response.status_code
            )

        external_id = data.get('id') or data.get('externalId')
        if not external_id:
            raise CalendarApiError(
                ErrorType.SERVER_ERROR,
                'Calendar response did not include an event id',
                response.status_code
            )

        logger.info(f"Created calendar event {external_id} for '{title}'")
        return ExternalEventRef(
            external_id=external_id,
            link=data.get('htmlLink') or data.get('link')
        )

    def _parse_availability(self, data: dict) -> AvailabilityBatch:
        """
        Parse the availability payload.

        Args:
            data: JSON body with 'slots' and an optional 'timestamp'

        Returns:
            AvailabilityBatch object
        """
        timestamp = int(data.get('timestamp') or now_ms())
        slots: List[CandidateSlot] = []

        for raw in data.get('slots', []):
            try:
                slots.append(CandidateSlot(
                    start=raw['start'],
                    end=raw['end'],
                    label=raw.get('label'),
                    day_label=raw.get('dayLabel'),
                    days_from_now=raw.get('daysFromNow'),
                    snapshot_timestamp=timestamp
                ))
            except (KeyError, TypeError) as e:
                logger.warning(f"Failed to parse slot {raw!r}: {e}")
                continue

        logger.info(f"Successfully fetched {len(slots)} available slots")
        return AvailabilityBatch(timestamp=timestamp, slots=slots)

    def _to_api_error(self, error: requests.RequestException) -> CalendarApiError:
        """Classify a requests failure into a CalendarApiError."""
        response = getattr(error, 'response', None)
        if response is not None:
            message = _error_message(response) or str(error)
            return CalendarApiError(
                classify_status(response.status_code),
                message,
                response.status_code
            )

        # Timeouts, connection failures and other transport errors
        return CalendarApiError(ErrorType.NETWORK, str(error))


def _error_message(response: requests.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if isinstance(body, dict):
        error = body.get('error')
        if isinstance(error, dict):
            return error.get('message')
        return body.get('message') or error
    return None
