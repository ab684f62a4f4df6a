"""
=============================================================================
SNS SERVICE - Operator alerts via Amazon Simple Notification Service
=============================================================================

Alerts published here go to operators subscribed to the topic (usually by
e-mail). They are never sent to customers or to the meters themselves.

We publish two kinds of alert:
- Consistency repair needed: a device's owner pointer and the owner's
  device list disagree (found by the consistency check or reconciliation).
- Negative consumption: a meter reported a volume below the previous one.
  The reading is recorded as reported; the alert only asks a human to look.

Flow:
-----
[Meter Tracker] --> [SNS Topic] --> [Operator e-mail 1]
                                --> [Operator e-mail 2]
=============================================================================
"""

# boto3 - AWS SDK for Python
import boto3

# ClientError - Exception class for AWS API errors
from botocore.exceptions import BotoCoreError, ClientError

import logging
import os
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# SNS limits e-mail subjects to 100 characters
MAX_SUBJECT_LENGTH = 100


class SNSService:
    """
    Publishes operator alerts to an SNS topic.

    Usage:
        sns = SNSService()
        sns.create_topic_if_not_exists()
        sns.subscribe_email("ops@example.com")
        sns.send_alert("Alert!", "Something needs a look")
    """

    def __init__(self, topic_arn: str = None, topic_name: str = None, region: str = None):
        """
        Args:
            topic_arn: Optional pre-existing topic ARN (else SNS_TOPIC_ARN).
            topic_name: Name used when creating the topic (else SNS_TOPIC_NAME).
            region: AWS region (else AWS_REGION, default us-east-1).
        """
        self.topic_arn = topic_arn or os.getenv('SNS_TOPIC_ARN')
        self.topic_name = topic_name or os.getenv('SNS_TOPIC_NAME', 'WaterMeterOperatorAlerts')
        self.region = region or os.getenv('AWS_REGION', 'us-east-1')

        session_token = os.getenv('AWS_SESSION_TOKEN')

        self.sns_client = boto3.client(
            'sns',
            region_name=self.region,
            aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
            aws_session_token=session_token if session_token else None
        )

    def create_topic_if_not_exists(self) -> Optional[str]:
        """
        Create the alert topic if needed.

        create_topic is idempotent: for an existing name it returns the
        existing topic's ARN.

        Returns:
            str: The topic ARN, or None if creation failed
        """
        try:
            response = self.sns_client.create_topic(Name=self.topic_name)
            self.topic_arn = response['TopicArn']
            logger.info("SNS topic ready: %s", self.topic_arn)
            return self.topic_arn
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to create SNS topic: %s", e)
            return None

    def subscribe_email(self, email: str) -> Optional[str]:
        """
        Subscribe an operator e-mail address to the alerts.

        AWS sends a confirmation e-mail; until the link is clicked the
        subscription stays "PendingConfirmation".
        """
        if not self.topic_arn:
            logger.warning("No topic ARN configured")
            return None
        try:
            response = self.sns_client.subscribe(
                TopicArn=self.topic_arn,
                Protocol='email',
                Endpoint=email
            )
            return response['SubscriptionArn']
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to subscribe email: %s", e)
            return None

    def send_alert(self, subject: str, message: str) -> bool:
        """
        Publish a message to every confirmed subscriber.

        Returns:
            bool: True if the message was published
        """
        if not self.topic_arn:
            logger.warning("No topic ARN configured, dropping alert %r", subject)
            return False
        try:
            self.sns_client.publish(
                TopicArn=self.topic_arn,
                Subject=subject[:MAX_SUBJECT_LENGTH],
                Message=message
            )
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to send alert %r: %s", subject, e)
            return False

    def send_consistency_alert(self, issues: List) -> bool:
        """
        Report owner pointer / device list divergences.

        Example e-mail:
            Subject: Assignment consistency repair needed (2 devices)

            Device DEV-3f9c1a7b2e points to USR-8d1e0c44a1 but is listed by ['USR-0b7d2a9f31']
            ...
        """
        subject = f"Assignment consistency repair needed ({len(issues)} devices)"
        lines = [str(issue) for issue in issues]
        message = "\n".join([
            "Device ownership records disagree:",
            "",
            *lines,
            "",
            "Run the reconciliation pass (POST /api/maintenance/reconcile)",
            "during a low-traffic window to repair them.",
        ])
        return self.send_alert(subject, message)

    def send_negative_consumption_alert(self, meter_id: str, previous_volume: float,
                                        new_volume: float) -> bool:
        subject = f"Negative consumption reported - {meter_id}"
        message = f"""
Meter ID: {meter_id}
Previous volume: {previous_volume}
Reported volume: {new_volume}

The reading was recorded as reported. Check the meter for a reset,
replacement or misread.
        """.strip()
        return self.send_alert(subject, message)

    def status(self) -> Dict:
        return {"topic_arn": self.topic_arn, "topic_name": self.topic_name}
