"""
=============================================================================
DYNAMODB SERVICE - Entity store on Amazon DynamoDB
=============================================================================

This is the cloud implementation of the EntityStore interface
(backend/lib/water_meter_core/store.py). The local fallback is MemoryStore.

Tables (names are prefixed, default prefix "WaterMeter"):
---------------------------------------------------------
1. <prefix>Devices
   - device_id (String) - Partition Key
   - GSI "meter_id-index" on meter_id, used by the ingestion lookup
2. <prefix>Users
   - user_id (String) - Partition Key
   - GSI "email-index" on email
3. <prefix>UsageReadings
   - device_id (String) - Partition Key
   - sort_key (String)  - Sort Key, "<iso timestamp>#<reading_id>"
4. <prefix>CommandLogs
   - meter_id (String)  - Partition Key ("-" when the meter id is unknown)
   - sort_key (String)  - Sort Key, "<iso timestamp>#<log_id>"

Conditional writes:
-------------------
Device and User items carry a "version" number. put_device / put_user only
succeed if the stored version still equals the one the caller read:

    ConditionExpression = Attr('version').eq(expected_version)

A create uses attribute_not_exists(<key>) instead. When DynamoDB answers
ConditionalCheckFailedException we re-read the key to tell a lost race
(VersionConflict) from a deleted record (RecordNotFound).

Readings and command logs are append-only; they are never updated.

Example Device item:
{
    "device_id": "DEV-3f9c1a7b2e",
    "meter_id": "MTR001",
    "status": "active",
    "current_volume": 120.5,
    "owner_id": "USR-8d1e0c44a1",
    "version": 7,
    ...
}
=============================================================================
"""

# boto3 - AWS SDK for Python
import boto3

# Conditions used for conditional writes and queries
from boto3.dynamodb.conditions import Attr, Key

# ClientError - API errors; BotoCoreError - network / configuration errors
from botocore.exceptions import BotoCoreError, ClientError

import logging
import os
from decimal import Decimal
from typing import Dict, List, Optional

from backend.lib.water_meter_core.errors import RecordNotFound, StoreError, VersionConflict
from backend.lib.water_meter_core.models import CommandLog, Device, UsageReading, User, utcnow
from backend.lib.water_meter_core.store import EntityStore

logger = logging.getLogger(__name__)

NO_METER = "-"


def _to_item(value):
    """Convert floats to Decimal, recursively. DynamoDB rejects float."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_item(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_item(v) for v in value]
    return value


class DynamoDBService(EntityStore):
    """
    EntityStore backed by four DynamoDB tables.

    Usage:
        db = DynamoDBService()
        db.create_tables_if_not_exist()
        device = db.find_device_by_meter("MTR001")
    """

    def __init__(self, table_prefix: str = None, region: str = None):
        """
        Initialize the DynamoDB service.

        Args:
            table_prefix: Optional table name prefix. Defaults to
                          DYNAMODB_TABLE_PREFIX from environment or "WaterMeter".
            region: Optional AWS region. Defaults to AWS_REGION or us-east-1.
        """
        self.table_prefix = table_prefix or os.getenv('DYNAMODB_TABLE_PREFIX', 'WaterMeter')
        self.region = region or os.getenv('AWS_REGION', 'us-east-1')

        # Get session token for temporary credentials
        session_token = os.getenv('AWS_SESSION_TOKEN')

        # Resource: high-level interface with Table objects
        self.dynamodb = boto3.resource(
            'dynamodb',
            region_name=self.region,
            aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
            aws_session_token=session_token if session_token else None
        )

        # Client: low-level interface, needed for describe_table
        self.client = self.dynamodb.meta.client

        self.devices_table_name = f"{self.table_prefix}Devices"
        self.users_table_name = f"{self.table_prefix}Users"
        self.readings_table_name = f"{self.table_prefix}UsageReadings"
        self.logs_table_name = f"{self.table_prefix}CommandLogs"

        self.devices = self.dynamodb.Table(self.devices_table_name)
        self.users = self.dynamodb.Table(self.users_table_name)
        self.readings = self.dynamodb.Table(self.readings_table_name)
        self.logs = self.dynamodb.Table(self.logs_table_name)

    # =========================================================================
    # TABLE SETUP
    # =========================================================================

    def create_tables_if_not_exist(self) -> bool:
        """
        Create all four tables if they don't exist yet.

        Billing mode is PAY_PER_REQUEST (on-demand), so no capacity planning.

        Returns:
            bool: True if every table exists or was created
        """
        specs = [
            (self.devices_table_name, [('device_id', 'HASH')], [('meter_id', 'meter_id-index')]),
            (self.users_table_name, [('user_id', 'HASH')], [('email', 'email-index')]),
            (self.readings_table_name, [('device_id', 'HASH'), ('sort_key', 'RANGE')], []),
            (self.logs_table_name, [('meter_id', 'HASH'), ('sort_key', 'RANGE')], []),
        ]
        return all(self._ensure_table(name, keys, indexes) for name, keys, indexes in specs)

    def _ensure_table(self, table_name, key_schema, indexes) -> bool:
        try:
            # If describe_table succeeds, the table already exists
            self.client.describe_table(TableName=table_name)
            logger.info("DynamoDB table '%s' exists", table_name)
            return True
        except ClientError as e:
            if e.response['Error']['Code'] != 'ResourceNotFoundException':
                logger.error("Error checking table %s: %s", table_name, e)
                return False

        attributes = {name for name, _ in key_schema} | {name for name, _ in indexes}
        kwargs = {
            'TableName': table_name,
            'KeySchema': [{'AttributeName': n, 'KeyType': t} for n, t in key_schema],
            'AttributeDefinitions': [
                {'AttributeName': n, 'AttributeType': 'S'} for n in sorted(attributes)
            ],
            'BillingMode': 'PAY_PER_REQUEST',
        }
        if indexes:
            kwargs['GlobalSecondaryIndexes'] = [
                {
                    'IndexName': index_name,
                    'KeySchema': [{'AttributeName': attr, 'KeyType': 'HASH'}],
                    'Projection': {'ProjectionType': 'ALL'},
                }
                for attr, index_name in indexes
            ]
        try:
            table = self.dynamodb.create_table(**kwargs)
            # Wait for table to be fully created
            table.wait_until_exists()
            logger.info("Created DynamoDB table '%s'", table_name)
            return True
        except ClientError as e:
            logger.error("Failed to create table %s: %s", table_name, e)
            return False

    # =========================================================================
    # LOW-LEVEL HELPERS
    # =========================================================================

    def _call(self, action: str, fn, **kwargs):
        try:
            return fn(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"{action}: {e}") from e

    def _scan(self, table, **kwargs) -> List[Dict]:
        items = []
        response = self._call(f"scan {table.name}", table.scan, **kwargs)
        items.extend(response.get('Items', []))
        # Handle pagination (max 1MB per page)
        while 'LastEvaluatedKey' in response:
            response = self._call(f"scan {table.name}", table.scan,
                                  ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs)
            items.extend(response.get('Items', []))
        return items

    def _query(self, table, **kwargs) -> List[Dict]:
        items = []
        response = self._call(f"query {table.name}", table.query, **kwargs)
        items.extend(response.get('Items', []))
        while 'LastEvaluatedKey' in response:
            response = self._call(f"query {table.name}", table.query,
                                  ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs)
            items.extend(response.get('Items', []))
        return items

    def _get(self, table, key: Dict) -> Optional[Dict]:
        response = self._call(f"get {table.name}", table.get_item, Key=key, ConsistentRead=True)
        return response.get('Item')

    def _put_versioned(self, table, key_name: str, item: Dict,
                       expected_version: Optional[int], kind: str) -> None:
        key = item[key_name]
        if expected_version is None:
            condition = Attr(key_name).not_exists()
        else:
            condition = Attr('version').eq(expected_version)
        try:
            table.put_item(Item=_to_item(item), ConditionExpression=condition)
        except ClientError as e:
            if e.response['Error']['Code'] != 'ConditionalCheckFailedException':
                raise StoreError(f"put {kind} {key}: {e}") from e
            if expected_version is not None and self._get(table, {key_name: key}) is None:
                raise RecordNotFound(f"{kind} {key} does not exist") from e
            raise VersionConflict(kind, key, expected_version) from e
        except BotoCoreError as e:
            raise StoreError(f"put {kind} {key}: {e}") from e

    # =========================================================================
    # DEVICES
    # =========================================================================

    def get_device(self, device_id):
        item = self._get(self.devices, {'device_id': device_id})
        return Device.from_dict(item) if item else None

    def find_device_by_meter(self, meter_id):
        items = self._query(self.devices, IndexName='meter_id-index',
                            KeyConditionExpression=Key('meter_id').eq(meter_id))
        if not items:
            return None
        # GSIs are eventually consistent; re-read the base item
        return self.get_device(items[0]['device_id'])

    def list_devices(self):
        return [Device.from_dict(i) for i in self._scan(self.devices)]

    def put_device(self, device, expected_version):
        stored = Device.from_dict(device.to_dict())
        stored.version = (expected_version or 0) + 1
        stored.updated_at = utcnow()
        self._put_versioned(self.devices, 'device_id', stored.to_dict(), expected_version, 'Device')
        return stored

    def delete_device(self, device_id):
        self._call("delete device", self.devices.delete_item, Key={'device_id': device_id})

    # =========================================================================
    # USERS
    # =========================================================================

    def get_user(self, user_id):
        item = self._get(self.users, {'user_id': user_id})
        return User.from_dict(item) if item else None

    def find_user_by_email(self, email):
        items = self._query(self.users, IndexName='email-index',
                            KeyConditionExpression=Key('email').eq(email.strip().lower()))
        return self.get_user(items[0]['user_id']) if items else None

    def list_users(self):
        return [User.from_dict(i) for i in self._scan(self.users)]

    def put_user(self, user, expected_version):
        stored = User.from_dict(user.to_dict())
        stored.version = (expected_version or 0) + 1
        self._put_versioned(self.users, 'user_id', stored.to_dict(), expected_version, 'User')
        return stored

    def delete_user(self, user_id):
        self._call("delete user", self.users.delete_item, Key={'user_id': user_id})

    # =========================================================================
    # READINGS AND COMMAND LOGS (append-only)
    # =========================================================================

    def append_reading(self, reading):
        item = reading.to_dict()
        item['sort_key'] = f"{item['timestamp']}#{reading.reading_id}"
        self._call("append reading", self.readings.put_item, Item=_to_item(item))

    def readings_for_device(self, device_id):
        # Query returns items ordered by the sort key, i.e. by timestamp
        items = self._query(self.readings, KeyConditionExpression=Key('device_id').eq(device_id))
        return [UsageReading.from_dict(i) for i in items]

    def append_command_log(self, log):
        item = log.to_dict()
        item['meter_id'] = log.meter_id or NO_METER
        item['sort_key'] = f"{item['timestamp']}#{log.log_id}"
        self._call("append command log", self.logs.put_item, Item=_to_item(item))

    def command_logs(self, meter_id=None):
        if meter_id is None:
            items = self._scan(self.logs)
        else:
            items = self._query(self.logs, KeyConditionExpression=Key('meter_id').eq(meter_id),
                                ScanIndexForward=False)
        logs = []
        for item in items:
            if item.get('meter_id') == NO_METER:
                item['meter_id'] = None
            logs.append(CommandLog.from_dict(item))
        return sorted(logs, key=lambda l: l.timestamp, reverse=True)
