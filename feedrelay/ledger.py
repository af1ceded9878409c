"""Delivery ledger: which items were already sent to which subscription."""

import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from .exceptions import StorageError
from .logging_config import create_execution_logger
from .models import DeliveryRecord
from .repository import SQLiteRepository


class DeliveryLedger(ABC):
    """Records (subscription, guid) pairs that have been delivered."""

    @abstractmethod
    def has_delivered(self, subscription_id: str, guid: str) -> bool:
        """Return True if the item was already delivered for the subscription."""

    @abstractmethod
    def record_delivery(self, subscription_id: str, guid: str) -> None:
        """Persist a delivery.

        Raises:
            StorageError: If the write cannot be confirmed.
        """

    @abstractmethod
    def purge(self, subscription_id: str) -> int:
        """Delete every record of a subscription. Returns the count removed."""


class SQLiteLedger(DeliveryLedger):
    """Ledger stored in the ``deliveries`` table of the registry database."""

    def __init__(self, repository: SQLiteRepository):
        self.repository = repository

    def has_delivered(self, subscription_id: str, guid: str) -> bool:
        rows = self.repository.query(
            "SELECT 1 FROM deliveries WHERE subscription_id = ? AND guid = ?",
            (subscription_id, guid),
        )
        return bool(rows)

    def record_delivery(self, subscription_id: str, guid: str) -> None:
        record = DeliveryRecord(subscription_id=subscription_id, guid=guid)
        try:
            self.repository.execute(
                """INSERT INTO deliveries (subscription_id, guid, delivered_at)
                   VALUES (?, ?, ?)""",
                (record.subscription_id, record.guid, record.delivered_at.isoformat()),
            )
        except sqlite3.IntegrityError:
            # Already recorded
            return

    def purge(self, subscription_id: str) -> int:
        cursor = self.repository.execute(
            "DELETE FROM deliveries WHERE subscription_id = ?", (subscription_id,)
        )
        return cursor.rowcount


class DynamoDBLedger(DeliveryLedger):
    """Ledger stored in a DynamoDB table keyed by subscription_id and guid."""

    def __init__(
        self,
        table_name: str,
        aws_region: str = "us-east-1",
        ttl_days: int = 0,
        execution_id: str | None = None,
    ):
        """Initialize the ledger with DynamoDB configuration.

        Args:
            table_name: Name of the DynamoDB table
            aws_region: AWS region for DynamoDB client
            ttl_days: Days before a record expires, 0 keeps records forever.
                An expired record lets an item still listed in the feed be
                delivered again.
            execution_id: Execution ID for logging context
        """
        self.table_name = table_name
        self.aws_region = aws_region
        self.ttl_days = ttl_days
        self.logger = create_execution_logger("ledger", execution_id)
        self.dynamodb = boto3.resource("dynamodb", region_name=aws_region)
        self.table = self.dynamodb.Table(table_name)

        self.logger.info(
            "DynamoDB ledger initialized", table_name=table_name, aws_region=aws_region
        )

    def has_delivered(self, subscription_id: str, guid: str) -> bool:
        try:
            response = self.table.get_item(
                Key={"subscription_id": subscription_id, "guid": guid}
            )
            return "Item" in response
        except ClientError as e:
            # Unknown state counts as not delivered
            self.logger.error(
                f"Error checking delivery record: {e}",
                subscription_id=subscription_id,
                item_guid=guid,
                error=str(e),
            )
            return False

    def record_delivery(self, subscription_id: str, guid: str) -> None:
        now = datetime.now()
        item = {
            "subscription_id": subscription_id,
            "guid": guid,
            "delivered_at": now.isoformat(),
        }
        if self.ttl_days > 0:
            item["ttl"] = int((now + timedelta(days=self.ttl_days)).timestamp())

        try:
            self.table.put_item(Item=item)
        except ClientError as e:
            self.logger.error(
                f"Error storing delivery record: {e}",
                subscription_id=subscription_id,
                item_guid=guid,
                error=str(e),
            )
            raise StorageError(f"Failed to store delivery record for {guid}") from e

    def purge(self, subscription_id: str) -> int:
        removed = 0
        query = {
            "KeyConditionExpression": Key("subscription_id").eq(subscription_id),
            "ProjectionExpression": "subscription_id, guid",
        }
        try:
            with self.table.batch_writer() as batch:
                while True:
                    response = self.table.query(**query)
                    for record in response.get("Items", []):
                        batch.delete_item(
                            Key={
                                "subscription_id": record["subscription_id"],
                                "guid": record["guid"],
                            }
                        )
                        removed += 1
                    if "LastEvaluatedKey" not in response:
                        break
                    query["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        except ClientError as e:
            self.logger.error(
                f"Error purging delivery records: {e}",
                subscription_id=subscription_id,
                error=str(e),
            )
            raise StorageError(
                f"Failed to purge delivery records for {subscription_id}"
            ) from e

        self.logger.info(
            "Purged delivery records", subscription_id=subscription_id, removed=removed
        )
        return removed
