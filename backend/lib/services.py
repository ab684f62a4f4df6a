"""
Service initialization shared by the Flask app and the local CLI.

Each AWS service is switched on by an environment flag. If it fails to
initialise we log the error and fall back, so the caller still starts:
- store:  DynamoDB, else the in-memory store
- alerts: SNS, else None (alerts disabled)
"""
import logging

from backend.lib.settings import Settings
from backend.lib.water_meter_core.store import MemoryStore

logger = logging.getLogger(__name__)


def init_store(settings: Settings):
    if settings.use_dynamodb:
        try:
            from backend.lib.dynamodb_service import DynamoDBService
            store = DynamoDBService(table_prefix=settings.table_prefix, region=settings.aws_region)
            if store.create_tables_if_not_exist():
                logger.info("DynamoDB storage enabled")
                return store
            logger.error("DynamoDB tables unavailable. Using in-memory storage.")
        except Exception as e:
            logger.error("DynamoDB initialization failed: %s. Using in-memory storage.", e)
    return MemoryStore()


def init_alerts(settings: Settings):
    if not settings.use_sns:
        return None
    try:
        from backend.lib.sns_service import SNSService
        alerts = SNSService(topic_arn=settings.sns_topic_arn, topic_name=settings.sns_topic_name,
                            region=settings.aws_region)
        if not alerts.topic_arn:
            alerts.create_topic_if_not_exists()
        logger.info("SNS operator alerts enabled")
        return alerts
    except Exception as e:
        logger.error("SNS initialization failed: %s. Alerts disabled.", e)
        return None
