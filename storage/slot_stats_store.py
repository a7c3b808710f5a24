"""DynamoDB storage for per-slot outcome statistics."""
import logging
from decimal import Decimal
from typing import Callable, Dict, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from scheduling.models import SlotAction, SlotId, SlotStat, now_ms

logger = logging.getLogger(__name__)

COUNTER_FIELDS = {
    SlotAction.SCHEDULED: 'total_scheduled',
    SlotAction.COMPLETED: 'total_completed',
    SlotAction.CANCELLED: 'total_cancelled',
}


class SlotStatisticsStore:
    """
    Outcome counters keyed by (user, slot identity).

    Counters are incremented with DynamoDB's atomic ADD so concurrent
    requests for the same slot never lose an update. Nothing is written
    while the user's learning mode is off.
    """

    def __init__(
        self,
        table_name: str,
        preferences,
        dynamodb=None,
        clock: Callable[[], int] = now_ms
    ):
        """
        Initialize DynamoDB table reference.

        Args:
            table_name: Name of the slot statistics table
            preferences: Object exposing is_learning_enabled(user_id)
            dynamodb: Optional boto3 DynamoDB resource (default: new resource)
            clock: Returns the current time in epoch milliseconds
        """
        self.table_name = table_name
        self.preferences = preferences
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        self.clock = clock
        logger.info(f"Initialized SlotStatisticsStore for table: {table_name}")

    def record_scheduled(self, user_id: str, slot_id: str) -> Optional[SlotStat]:
        return self.record(user_id, slot_id, SlotAction.SCHEDULED)

    def record_completed(self, user_id: str, slot_id: str) -> Optional[SlotStat]:
        return self.record(user_id, slot_id, SlotAction.COMPLETED)

    def record_cancelled(self, user_id: str, slot_id: str) -> Optional[SlotStat]:
        return self.record(user_id, slot_id, SlotAction.CANCELLED)

    def record(
        self,
        user_id: str,
        slot_id: str,
        action: SlotAction
    ) -> Optional[SlotStat]:
        """
        Increment one outcome counter for a slot identity.

        Args:
            user_id: Owner of the statistics
            slot_id: Slot identity string (e.g. 'thu_07')
            action: Which counter to increment

        Returns:
            Updated SlotStat, or None if learning mode is disabled

        Raises:
            ValueError: If slot_id is not a valid slot identity
        """
        slot_key = str(SlotId.parse(slot_id))

        if not self.preferences.is_learning_enabled(user_id):
            logger.info(
                f"Learning mode disabled for user {user_id}, "
                f"not recording {action.value} for slot {slot_key}"
            )
            return None

        counter = COUNTER_FIELDS[action]
        set_clauses = ['last_updated = :now']
        for field in COUNTER_FIELDS.values():
            if field != counter:
                set_clauses.append(f"{field} = if_not_exists({field}, :zero)")

        try:
            response = self.table.update_item(
                Key={'user_id': user_id, 'slot_id': slot_key},
                UpdateExpression=f"SET {', '.join(set_clauses)} ADD {counter} :one",
                ExpressionAttributeValues={':one': 1, ':zero': 0, ':now': self.clock()},
                ReturnValues='ALL_NEW'
            )
        except ClientError as e:
            logger.error(f"Error recording {action.value} for slot {slot_key}: {e}")
            raise

        stat = self._item_to_stat(response['Attributes'])
        self._refresh_success_rate(user_id, stat)

        logger.info(
            f"Recorded {action.value} for slot {slot_key}",
            extra={
                'user_id': user_id,
                'total_scheduled': stat.total_scheduled,
                'total_completed': stat.total_completed,
                'total_cancelled': stat.total_cancelled
            }
        )
        return stat

    def get_stat(self, user_id: str, slot_id: str) -> Optional[SlotStat]:
        """Fetch statistics for one slot identity, or None if never recorded."""
        try:
            response = self.table.get_item(
                Key={'user_id': user_id, 'slot_id': str(SlotId.parse(slot_id))}
            )
        except ClientError as e:
            logger.error(f"Error reading slot stat {slot_id}: {e}")
            raise

        item = response.get('Item')
        return self._item_to_stat(item) if item else None

    def get_stats(self, user_id: str) -> Dict[str, SlotStat]:
        """
        Retrieve all slot statistics for a user.

        Returns:
            Dictionary mapping slot id to SlotStat
        """
        stats = {}
        try:
            response = self.table.query(KeyConditionExpression=Key('user_id').eq(user_id))
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.table.query(
                    KeyConditionExpression=Key('user_id').eq(user_id),
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))
        except ClientError as e:
            logger.error(f"Error querying slot stats for user {user_id}: {e}")
            raise

        for item in items:
            stat = self._item_to_stat(item)
            stats[stat.slot_id] = stat

        logger.info(f"Retrieved {len(stats)} slot stats for user {user_id}")
        return stats

    def _refresh_success_rate(self, user_id: str, stat: SlotStat) -> None:
        """
        Store the success rate derived from the counters just written.

        The write only lands if the counters are unchanged; a concurrent
        increment that got there first stores its own, newer rate.
        """
        try:
            self.table.update_item(
                Key={'user_id': user_id, 'slot_id': stat.slot_id},
                UpdateExpression='SET success_rate = :rate',
                ConditionExpression=(
                    Attr('total_scheduled').eq(stat.total_scheduled)
                    & Attr('total_completed').eq(stat.total_completed)
                ),
                ExpressionAttributeValues={
                    ':rate': Decimal(str(round(stat.success_rate, 4)))
                }
            )
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException':
                logger.debug(f"Slot {stat.slot_id} changed concurrently, rate left to newer write")
                return
            logger.error(f"Error updating success rate for slot {stat.slot_id}: {e}")
            raise

    def _item_to_stat(self, item: dict) -> SlotStat:
        """Convert DynamoDB item to SlotStat object."""
        last_updated = item.get('last_updated')
        return SlotStat(
            slot_id=item['slot_id'],
            total_scheduled=int(item.get('total_scheduled', 0)),
            total_completed=int(item.get('total_completed', 0)),
            total_cancelled=int(item.get('total_cancelled', 0)),
            last_updated=int(last_updated) if last_updated is not None else None
        )
