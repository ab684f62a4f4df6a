# backend/lambda_handlers/ingest_report.py
"""
Lambda function to ingest one meter status report
Triggered by API Gateway (SMS gateway webhook)
"""
import base64
import binascii
import json
import logging
import os

from backend.lib.dynamodb_service import DynamoDBService
from backend.lib.water_meter_core.ingestion import IngestionPipeline

logger = logging.getLogger()
logger.setLevel(os.getenv('LOG_LEVEL', 'INFO'))

_pipeline = None


def get_pipeline() -> IngestionPipeline:
    """Build the pipeline once per container and reuse it across invocations."""
    global _pipeline
    if _pipeline is None:
        alerts = None
        if os.getenv('USE_SNS', 'false').lower() == 'true':
            from backend.lib.sns_service import SNSService
            alerts = SNSService()
        _pipeline = IngestionPipeline(DynamoDBService(), alerts=alerts)
    return _pipeline


def lambda_handler(event, context, pipeline=None):
    """
    Parse the report in the request body and run it through the pipeline.

    The body is either the raw report text or JSON {"message": ...} /
    {"text": ...}. The audit log is written by the pipeline in every case
    except an empty body.
    """
    pipeline = pipeline or get_pipeline()
    data_string = report_text(event)
    if not data_string:
        logger.warning("No usable data string in event")
        return response(400, {'error': 'No data string received.'})

    result = pipeline.ingest(data_string)
    logger.info("Report for %s ended %s", result.meter_id, result.state.value)
    return response(result.http_status, result.to_dict())


def report_text(event) -> str:
    body = event.get('body') or ''
    if event.get('isBase64Encoded'):
        try:
            body = base64.b64decode(body).decode('utf-8', errors='replace')
        except binascii.Error:
            # left as received; the pipeline logs it as a malformed report
            logger.warning("Body flagged as base64 but could not be decoded")
    try:
        parsed = json.loads(body)
    except ValueError:
        return body
    if isinstance(parsed, dict):
        for key in ('message', 'text'):
            if isinstance(parsed.get(key), str):
                return parsed[key]
    return body


def response(status_code: int, body: dict) -> dict:
    """Create API Gateway response."""
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*'
        },
        'body': json.dumps(body)
    }
