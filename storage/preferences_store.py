"""DynamoDB storage for per-user learning mode preferences."""
import logging
from typing import Callable

import boto3
from botocore.exceptions import ClientError

from scheduling.models import PREFERENCE_SCHEMA_VERSION, LearningPreference, now_ms

logger = logging.getLogger(__name__)


class PreferencesStore:
    """Learning mode preference records, one item per user."""

    def __init__(
        self,
        table_name: str,
        dynamodb=None,
        clock: Callable[[], int] = now_ms
    ):
        """
        Initialize DynamoDB table reference.

        Args:
            table_name: Name of the preferences table
            dynamodb: Optional boto3 DynamoDB resource (default: new resource)
            clock: Returns the current time in epoch milliseconds
        """
        self.table_name = table_name
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        self.clock = clock
        logger.info(f"Initialized PreferencesStore for table: {table_name}")

    def get(self, user_id: str) -> LearningPreference:
        """
        Load a user's learning preference.

        Learning mode defaults to enabled when no record exists.
        """
        try:
            response = self.table.get_item(Key={'user_id': user_id})
        except ClientError as e:
            logger.error(f"Error reading preferences for user {user_id}: {e}")
            raise

        item = response.get('Item')
        if not item:
            return LearningPreference(user_id=user_id)

        schema_version = int(item.get('schema_version', PREFERENCE_SCHEMA_VERSION))
        if schema_version > PREFERENCE_SCHEMA_VERSION:
            logger.warning(
                f"Preferences for user {user_id} use newer schema "
                f"version {schema_version}"
            )

        last_changed = item.get('last_changed')
        return LearningPreference(
            user_id=user_id,
            learning_enabled=bool(item.get('learning_enabled', True)),
            last_changed=int(last_changed) if last_changed is not None else None,
            schema_version=schema_version
        )

    def is_learning_enabled(self, user_id: str) -> bool:
        return self.get(user_id).learning_enabled

    def set_learning_enabled(self, user_id: str, enabled: bool) -> LearningPreference:
        """
        Turn learning mode on or off for a user.

        Args:
            user_id: Owner of the preference
            enabled: New flag value

        Returns:
            The stored LearningPreference
        """
        preference = LearningPreference(
            user_id=user_id,
            learning_enabled=enabled,
            last_changed=self.clock()
        )
        try:
            self.table.put_item(Item={
                'user_id': preference.user_id,
                'learning_enabled': preference.learning_enabled,
                'last_changed': preference.last_changed,
                'schema_version': preference.schema_version
            })
        except ClientError as e:
            logger.error(f"Error saving preferences for user {user_id}: {e}")
            raise

        logger.info(f"Learning mode {'enabled' if enabled else 'disabled'} for user {user_id}")
        return preference
