"""AWS Lambda handler for the booking sync API."""
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import boto3

from api.routes import ROUTES, ApiRequest, BadRequestError, Services
from calendar_api.calendar_client import CalendarApiClient
from scheduling.slot_recommender import SlotRecommender
from storage.preferences_store import PreferencesStore
from storage.slot_stats_store import SlotStatisticsStore
from storage.sync_event_store import SyncEventStore
from sync.errors import (
    CallCancelledError,
    ConcurrentModificationError,
    EventNotFoundError,
    InvalidTransitionError,
)
from sync.event_tracker import SyncEventTracker
from sync.retry_coordinator import RetryCoordinator, RetryPolicy


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


@dataclass
class Settings:
    """Runtime configuration read from environment variables."""
    sync_events_table: str
    slot_stats_table: str
    preferences_table: str
    calendar_api_url: str
    log_level: str
    timeout_seconds: int
    max_snapshot_age_seconds: int
    retry_delay_seconds: int
    max_retries: int
    retry_backoff_multiplier: float


def load_settings() -> Settings:
    """Read configuration from environment variables."""
    return Settings(
        sync_events_table=os.environ.get('SYNC_EVENTS_TABLE', 'sync-events'),
        slot_stats_table=os.environ.get('SLOT_STATS_TABLE', 'slot-stats'),
        preferences_table=os.environ.get('PREFERENCES_TABLE', 'user-preferences'),
        calendar_api_url=os.environ.get('CALENDAR_API_URL', 'http://localhost:8080'),
        log_level=os.environ.get('LOG_LEVEL', 'INFO'),
        timeout_seconds=int(os.environ.get('TIMEOUT_SECONDS', '30')),
        max_snapshot_age_seconds=int(os.environ.get('MAX_SNAPSHOT_AGE_SECONDS', '300')),
        retry_delay_seconds=int(os.environ.get('RETRY_DELAY_SECONDS', '60')),
        max_retries=int(os.environ.get('MAX_RETRIES', '3')),
        retry_backoff_multiplier=float(os.environ.get('RETRY_BACKOFF_MULTIPLIER', '1.0'))
    )


def build_services(settings: Settings) -> Services:
    """
    Wire up stores, calendar client, tracker and coordinator.

    Args:
        settings: Runtime configuration

    Returns:
        Services container for the request handlers
    """
    dynamodb = boto3.resource('dynamodb')
    calendar = CalendarApiClient(settings.calendar_api_url, timeout=settings.timeout_seconds)
    preferences = PreferencesStore(settings.preferences_table, dynamodb=dynamodb)
    slot_stats = SlotStatisticsStore(
        settings.slot_stats_table,
        preferences,
        dynamodb=dynamodb
    )
    tracker = SyncEventTracker(
        SyncEventStore(settings.sync_events_table, dynamodb=dynamodb),
        calendar,
        max_snapshot_age=settings.max_snapshot_age_seconds * 1000
    )
    coordinator = RetryCoordinator(
        tracker,
        RetryPolicy(
            delay_seconds=settings.retry_delay_seconds,
            max_retries=settings.max_retries,
            backoff_multiplier=settings.retry_backoff_multiplier
        )
    )
    return Services(
        tracker=tracker,
        coordinator=coordinator,
        recommender=SlotRecommender(),
        slot_stats=slot_stats,
        preferences=preferences,
        calendar=calendar
    )


def get_user_id(event: Dict[str, Any]) -> Optional[str]:
    """Extract the caller's user id from the API Gateway authorizer context."""
    authorizer = (event.get('requestContext') or {}).get('authorizer') or {}
    claims = authorizer.get('claims') or {}
    return claims.get('sub') or authorizer.get('principalId')


def json_response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body)
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for the booking sync API.

    Args:
        event: API Gateway proxy event
        context: Lambda context object

    Returns:
        API Gateway proxy response
    """
    settings = load_settings()
    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()

    try:
        request = ApiRequest.from_event(event)
    except BadRequestError as e:
        return json_response(400, {'success': False, 'message': str(e)})

    route = ROUTES.get((request.method, request.resource))
    if route is None:
        return json_response(404, {
            'success': False,
            'message': f"No route for {request.method} {request.resource}"
        })

    user_id = get_user_id(event)
    if not user_id:
        return json_response(401, {
            'success': False,
            'message': 'Authentication required',
            'requiresReconnect': True
        })

    logger.info(
        f"Request started: {request.method} {request.resource}",
        extra={'user_id': user_id}
    )

    try:
        services = build_services(settings)
        status_code, body = route(services, user_id, request)

    except BadRequestError as e:
        status_code, body = 400, {'success': False, 'message': str(e)}

    except EventNotFoundError as e:
        status_code, body = 404, {'success': False, 'message': str(e)}

    except (InvalidTransitionError, ConcurrentModificationError) as e:
        logger.warning(f"Rejected state change: {e}")
        status_code, body = 409, {'success': False, 'message': str(e)}

    except CallCancelledError as e:
        logger.info(f"Request cancelled: {e}")
        status_code, body = 499, {'success': False, 'message': str(e)}

    except Exception as e:
        logger.error(
            f"Request failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        status_code, body = 500, {
            'success': False,
            'message': 'Something went wrong. Please try again later.',
            'error_type': type(e).__name__
        }

    duration = time.time() - start_time
    logger.info(
        f"Request completed: {request.method} {request.resource} -> {status_code}",
        extra={'duration_seconds': round(duration, 2)}
    )
    return json_response(status_code, body)
