"""Unit tests for the slot statistics store."""
import re
import threading
from decimal import Decimal
from unittest.mock import Mock

import pytest

from scheduling.models import SlotAction
from storage.slot_stats_store import SlotStatisticsStore


class AtomicCounterTable:
    """Table stand-in applying each update_item atomically, like DynamoDB."""

    def __init__(self):
        self.items = {}
        self.lock = threading.Lock()

    def update_item(self, Key, UpdateExpression, ExpressionAttributeValues,
                    ReturnValues=None, ConditionExpression=None):
        with self.lock:
            item = self.items.setdefault(
                (Key['user_id'], Key['slot_id']), dict(Key)
            )
            if ':rate' in ExpressionAttributeValues:
                item['success_rate'] = ExpressionAttributeValues[':rate']
            else:
                counter = re.search(r'ADD (\w+) :one', UpdateExpression).group(1)
                for field in re.findall(r'(\w+) = if_not_exists', UpdateExpression):
                    item.setdefault(field, 0)
                item[counter] = item.get(counter, 0) + 1
                item['last_updated'] = ExpressionAttributeValues[':now']
            return {'Attributes': dict(item)}

    def get_item(self, Key):
        with self.lock:
            item = self.items.get((Key['user_id'], Key['slot_id']))
            return {'Item': dict(item)} if item else {}


class TestSlotStatisticsStore:
    """Test cases for SlotStatisticsStore."""

    def test_first_scheduled_creates_record(self, slot_stats_store, clock):
        """Test recording on a slot without history."""
        stat = slot_stats_store.record_scheduled('user-1', 'thu_07')

        assert stat.slot_id == 'thu_07'
        assert stat.total_scheduled == 1
        assert stat.total_completed == 0
        assert stat.total_cancelled == 0
        assert stat.last_updated == clock.now

    def test_counters_accumulate(self, slot_stats_store):
        """Test each action increments only its counter."""
        for _ in range(3):
            slot_stats_store.record_scheduled('user-1', 'thu_07')
        slot_stats_store.record_completed('user-1', 'thu_07')
        slot_stats_store.record_cancelled('user-1', 'thu_07')

        stat = slot_stats_store.get_stat('user-1', 'thu_07')

        assert stat.total_scheduled == 3
        assert stat.total_completed == 1
        assert stat.total_cancelled == 1

    def test_success_rate_stored(self, slot_stats_store):
        """Test the derived success rate is written alongside counters."""
        slot_stats_store.record_scheduled('user-1', 'mon_09')
        slot_stats_store.record_scheduled('user-1', 'mon_09')
        slot_stats_store.record_completed('user-1', 'mon_09')

        item = slot_stats_store.table.get_item(
            Key={'user_id': 'user-1', 'slot_id': 'mon_09'}
        )['Item']

        assert item['success_rate'] == Decimal('0.5')

    def test_learning_disabled_writes_nothing(self, slot_stats_store, preferences_store):
        """Test no statistics are recorded while learning mode is off."""
        slot_stats_store.record_scheduled('user-1', 'thu_07')
        preferences_store.set_learning_enabled('user-1', False)

        result = slot_stats_store.record(
            'user-1', 'thu_07', SlotAction.COMPLETED
        )

        assert result is None
        stat = slot_stats_store.get_stat('user-1', 'thu_07')
        assert stat.total_scheduled == 1
        assert stat.total_completed == 0
        assert slot_stats_store.record_scheduled('user-1', 'fri_10') is None
        assert slot_stats_store.get_stat('user-1', 'fri_10') is None

    def test_invalid_slot_id(self, slot_stats_store):
        """Test malformed slot ids are rejected before any write."""
        with pytest.raises(ValueError):
            slot_stats_store.record_scheduled('user-1', 'someday_7')

        assert slot_stats_store.get_stats('user-1') == {}

    def test_slot_id_normalized(self, slot_stats_store):
        """Test slot ids are stored in canonical form."""
        slot_stats_store.record_scheduled('user-1', 'THU_07')

        assert set(slot_stats_store.get_stats('user-1')) == {'thu_07'}

    def test_get_stats_per_user(self, slot_stats_store, clock):
        """Test retrieving all statistics for one user."""
        slot_stats_store.record_scheduled('user-1', 'thu_07')
        clock.advance(5000)
        slot_stats_store.record_scheduled('user-1', 'fri_08')
        slot_stats_store.record_scheduled('user-2', 'sat_09')

        stats = slot_stats_store.get_stats('user-1')

        assert set(stats) == {'thu_07', 'fri_08'}
        assert stats['fri_08'].last_updated == clock.now


def test_concurrent_records_lose_no_updates(clock):
    """Test racing increments on one slot all land."""
    # Setup
    table = AtomicCounterTable()
    dynamodb = Mock()
    dynamodb.Table.return_value = table
    preferences = Mock()
    preferences.is_learning_enabled.return_value = True
    store = SlotStatisticsStore('test-slot-stats', preferences, dynamodb=dynamodb, clock=clock)

    barrier = threading.Barrier(8)
    totals = []

    def record():
        barrier.wait()
        totals.append(store.record_scheduled('user-1', 'thu_07').total_scheduled)

    # Execute
    threads = [threading.Thread(target=record) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    # Verify
    assert sorted(totals) == list(range(1, 9))
    assert store.get_stat('user-1', 'thu_07').total_scheduled == 8
