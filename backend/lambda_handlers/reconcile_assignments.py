# backend/lambda_handlers/reconcile_assignments.py
"""
Lambda function to run the assignment reconciliation pass
Triggered by a CloudWatch Events schedule in a low-traffic window
"""
import json
import logging
import os

from backend.lib.dynamodb_service import DynamoDBService
from backend.lib.water_meter_core.assignment import AssignmentManager

logger = logging.getLogger()
logger.setLevel(os.getenv('LOG_LEVEL', 'INFO'))

# Set CHECK_ONLY=true to report divergences without repairing them
CHECK_ONLY = os.getenv('CHECK_ONLY', 'false').lower() == 'true'


def lambda_handler(event, context, manager=None):
    """
    Rebuild every user's owned-device set from the device owner pointers.

    Must not overlap reassignments of the same devices, hence the schedule.
    """
    logger.info("Received event: %s", json.dumps(event))
    manager = manager or _build_manager()
    check_only = event.get('check_only', CHECK_ONLY)

    if check_only:
        issues = manager.check_consistency()
        body = {'consistent': not issues, 'divergences': [i.to_dict() for i in issues]}
    else:
        body = manager.reconcile().to_dict()

    return {
        'statusCode': 200,
        'body': json.dumps(body)
    }


def _build_manager() -> AssignmentManager:
    alerts = None
    if os.getenv('USE_SNS', 'false').lower() == 'true':
        from backend.lib.sns_service import SNSService
        alerts = SNSService()
    return AssignmentManager(DynamoDBService(), alerts=alerts)
