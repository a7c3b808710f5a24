"""Shared fixtures for DynamoDB-backed tests."""
import os
import threading
from dataclasses import replace

import boto3
import pytest
from moto import mock_aws

from storage.preferences_store import PreferencesStore
from storage.slot_stats_store import SlotStatisticsStore
from storage.sync_event_store import SyncEventStore
from sync.errors import CallCancelledError, ConcurrentModificationError
from sync.event_tracker import SyncEventTracker
from sync.models import ExternalEventRef

# Fake credentials so boto3 never reaches real AWS
os.environ.setdefault('AWS_ACCESS_KEY_ID', 'testing')
os.environ.setdefault('AWS_SECRET_ACCESS_KEY', 'testing')
os.environ.setdefault('AWS_SECURITY_TOKEN', 'testing')
os.environ.setdefault('AWS_SESSION_TOKEN', 'testing')
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-east-1')

SYNC_EVENTS_TABLE = 'test-sync-events'
SLOT_STATS_TABLE = 'test-slot-stats'
PREFERENCES_TABLE = 'test-user-preferences'


def create_tables(dynamodb) -> None:
    """Create the three application tables in the given resource."""
    dynamodb.create_table(
        TableName=SYNC_EVENTS_TABLE,
        KeySchema=[
            {'AttributeName': 'user_id', 'KeyType': 'HASH'},
            {'AttributeName': 'event_id', 'KeyType': 'RANGE'}
        ],
        AttributeDefinitions=[
            {'AttributeName': 'user_id', 'AttributeType': 'S'},
            {'AttributeName': 'event_id', 'AttributeType': 'S'}
        ],
        BillingMode='PAY_PER_REQUEST'
    )
    dynamodb.create_table(
        TableName=SLOT_STATS_TABLE,
        KeySchema=[
            {'AttributeName': 'user_id', 'KeyType': 'HASH'},
            {'AttributeName': 'slot_id', 'KeyType': 'RANGE'}
        ],
        AttributeDefinitions=[
            {'AttributeName': 'user_id', 'AttributeType': 'S'},
            {'AttributeName': 'slot_id', 'AttributeType': 'S'}
        ],
        BillingMode='PAY_PER_REQUEST'
    )
    dynamodb.create_table(
        TableName=PREFERENCES_TABLE,
        KeySchema=[
            {'AttributeName': 'user_id', 'KeyType': 'HASH'}
        ],
        AttributeDefinitions=[
            {'AttributeName': 'user_id', 'AttributeType': 'S'}
        ],
        BillingMode='PAY_PER_REQUEST'
    )


@pytest.fixture
def dynamodb():
    """Mock DynamoDB resource with all application tables."""
    with mock_aws():
        resource = boto3.resource('dynamodb', region_name='us-east-1')
        create_tables(resource)
        yield resource


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, now: int = 1_715_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, milliseconds: int) -> None:
        self.now += milliseconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sync_store(dynamodb):
    return SyncEventStore(SYNC_EVENTS_TABLE, dynamodb=dynamodb)


@pytest.fixture
def preferences_store(dynamodb, clock):
    return PreferencesStore(PREFERENCES_TABLE, dynamodb=dynamodb, clock=clock)


@pytest.fixture
def slot_stats_store(dynamodb, preferences_store, clock):
    return SlotStatisticsStore(
        SLOT_STATS_TABLE,
        preferences_store,
        dynamodb=dynamodb,
        clock=clock
    )


class FakeCalendar:
    """
    Calendar stand-in returning scripted outcomes.

    Each outcome is either an ExternalEventRef to return or an exception to
    raise. When the script runs out, a fresh reference is returned.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def create_external_event(self, title, start, end, cancel_event=None):
        self.calls.append({'title': title, 'start': start, 'end': end})
        if cancel_event is not None and cancel_event.is_set():
            raise CallCancelledError('Calendar call cancelled')

        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            number = len(self.calls)
            outcome = ExternalEventRef(
                external_id=f"ext-{number}",
                link=f"https://calendar.example.com/ext-{number}"
            )
        return outcome


class InMemorySyncEventStore:
    """Thread-safe in-memory store with the same version semantics."""

    def __init__(self):
        self.items = {}
        self.lock = threading.Lock()

    def put_new(self, event):
        with self.lock:
            key = (event.user_id, event.event_id)
            if key in self.items:
                raise ConcurrentModificationError(event.event_id, 0)
            self.items[key] = replace(event, version=1)
            return replace(self.items[key])

    def save(self, event, expected_version):
        with self.lock:
            key = (event.user_id, event.event_id)
            current = self.items.get(key)
            if current is None or current.version != expected_version:
                raise ConcurrentModificationError(event.event_id, expected_version)
            self.items[key] = replace(event, version=expected_version + 1)
            return replace(self.items[key])

    def get(self, user_id, event_id):
        with self.lock:
            event = self.items.get((user_id, event_id))
            return replace(event) if event else None

    def list_events(self, user_id, status=None):
        with self.lock:
            return [
                replace(event) for (owner, _), event in sorted(self.items.items())
                if owner == user_id and (status is None or event.status == status)
            ]


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def tracker(sync_store, calendar, clock):
    return SyncEventTracker(sync_store, calendar, clock=clock)


@pytest.fixture
def make_calendar():
    """Factory for calendars with scripted outcomes."""
    return FakeCalendar


@pytest.fixture
def memory_store():
    return InMemorySyncEventStore()
