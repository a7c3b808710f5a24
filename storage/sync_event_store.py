"""DynamoDB storage for booking sync events."""
import logging
from dataclasses import replace
from typing import List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from sync.errors import ConcurrentModificationError
from sync.models import SyncEvent, SyncStatus

logger = logging.getLogger(__name__)


class SyncEventStore:
    """
    Sync event records partitioned by user.

    Table layout: partition key ``user_id``, sort key ``event_id``. Every
    write carries a condition on ``version`` so concurrent writers cannot
    overwrite each other's transitions.
    """

    def __init__(self, table_name: str, dynamodb=None):
        """
        Initialize DynamoDB table reference.

        Args:
            table_name: Name of the sync events table
            dynamodb: Optional boto3 DynamoDB resource (default: new resource)
        """
        self.table_name = table_name
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized SyncEventStore for table: {table_name}")

    def put_new(self, event: SyncEvent) -> SyncEvent:
        """
        Insert a new sync event.

        Args:
            event: Event to insert; its version is set to 1

        Returns:
            The stored event

        Raises:
            ConcurrentModificationError: If an event with the same id exists
        """
        stored = replace(event, version=1)
        try:
            self.table.put_item(
                Item=self._event_to_item(stored),
                ConditionExpression=Attr('event_id').not_exists()
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise ConcurrentModificationError(event.event_id, 0) from e
            logger.error(f"Error inserting sync event {event.event_id}: {e}")
            raise

        logger.debug(f"Stored new sync event {stored.event_id} ({stored.status.value})")
        return stored

    def save(self, event: SyncEvent, expected_version: int) -> SyncEvent:
        """
        Persist an updated sync event if nobody changed it in the meantime.

        Args:
            event: Updated event
            expected_version: Version the update was computed from

        Returns:
            The stored event with its version incremented

        Raises:
            ConcurrentModificationError: If the stored version differs
        """
        stored = replace(event, version=expected_version + 1)
        try:
            self.table.put_item(
                Item=self._event_to_item(stored),
                ConditionExpression=Attr('version').eq(expected_version)
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise ConcurrentModificationError(event.event_id, expected_version) from e
            logger.error(f"Error saving sync event {event.event_id}: {e}")
            raise

        logger.debug(
            f"Saved sync event {stored.event_id} "
            f"({stored.status.value}, version {stored.version})"
        )
        return stored

    def get(self, user_id: str, event_id: str) -> Optional[SyncEvent]:
        """
        Fetch one sync event from the user's partition.

        Returns:
            SyncEvent or None if not found
        """
        try:
            response = self.table.get_item(
                Key={'user_id': user_id, 'event_id': event_id},
                ConsistentRead=True
            )
        except ClientError as e:
            logger.error(f"Error reading sync event {event_id}: {e}")
            raise

        item = response.get('Item')
        return self._item_to_event(item) if item else None

    def list_events(
        self,
        user_id: str,
        status: Optional[SyncStatus] = None
    ) -> List[SyncEvent]:
        """
        List a user's sync events, optionally filtered by status.

        Args:
            user_id: Owner of the events
            status: Only return events in this status

        Returns:
            List of SyncEvent objects ordered by event id
        """
        query_args = {
            'KeyConditionExpression': Key('user_id').eq(user_id),
            'ConsistentRead': True,
        }
        if status is not None:
            query_args['FilterExpression'] = Attr('status').eq(status.value)

        try:
            response = self.table.query(**query_args)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.table.query(
                    ExclusiveStartKey=response['LastEvaluatedKey'],
                    **query_args
                )
                items.extend(response.get('Items', []))
        except ClientError as e:
            logger.error(f"Error querying sync events for user {user_id}: {e}")
            raise

        events = []
        for item in items:
            event = self._item_to_event(item)
            if event:
                events.append(event)
        return events

    def _item_to_event(self, item: dict) -> Optional[SyncEvent]:
        """
        Convert DynamoDB item to SyncEvent object.

        Returns:
            SyncEvent object or None if conversion fails
        """
        try:
            return SyncEvent(
                user_id=item['user_id'],
                event_id=item['event_id'],
                title=item['title'],
                start=item['start_time'],
                end=item['end_time'],
                status=SyncStatus(item['status']),
                created_at=int(item['created_at']),
                snapshot_timestamp=_optional_int(item.get('snapshot_timestamp')),
                action=item.get('action', 'create'),
                external_id=item.get('external_id'),
                link=item.get('link'),
                last_synced_at=_optional_int(item.get('last_synced_at')),
                error_code=item.get('error_code'),
                error_message=item.get('error_message'),
                error_retryable=bool(item.get('error_retryable', False)),
                retry_count=int(item.get('retry_count', 0)),
                next_retry_at=_optional_int(item.get('next_retry_at')),
                version=int(item.get('version', 0))
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to convert item to SyncEvent: {e}")
            return None

    def _event_to_item(self, event: SyncEvent) -> dict:
        """Convert SyncEvent object to DynamoDB item."""
        item = {
            'user_id': event.user_id,
            'event_id': event.event_id,
            'title': event.title,
            'start_time': event.start,
            'end_time': event.end,
            'status': event.status.value,
            'action': event.action,
            'created_at': event.created_at,
            'retry_count': event.retry_count,
            'error_retryable': event.error_retryable,
            'version': event.version
        }

        # Add optional fields if present
        optional = {
            'snapshot_timestamp': event.snapshot_timestamp,
            'external_id': event.external_id,
            'link': event.link,
            'last_synced_at': event.last_synced_at,
            'error_code': event.error_code,
            'error_message': event.error_message,
            'next_retry_at': event.next_retry_at,
        }
        item.update({key: value for key, value in optional.items() if value is not None})

        return item


def _optional_int(value) -> Optional[int]:
    return int(value) if value is not None else None


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException'
