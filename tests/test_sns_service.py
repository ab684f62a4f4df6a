# tests/test_sns_service.py
import pytest
from botocore.stub import Stubber

from backend.lib.sns_service import SNSService
from backend.lib.water_meter_core.errors import ConsistencyRepairNeeded

TOPIC = "arn:aws:sns:us-east-1:123456789012:WaterMeterOperatorAlerts"


@pytest.fixture
def sns(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.delenv("SNS_TOPIC_ARN", raising=False)
    return SNSService(topic_arn=TOPIC, region="us-east-1")


def test_send_alert(sns):
    with Stubber(sns.sns_client) as stub:
        stub.add_response("publish", {"MessageId": "m-1"},
                          {"TopicArn": TOPIC, "Subject": "Hello", "Message": "body"})
        assert sns.send_alert("Hello", "body") is True


def test_send_alert_truncates_subject(sns):
    with Stubber(sns.sns_client) as stub:
        stub.add_response("publish", {"MessageId": "m-1"},
                          {"TopicArn": TOPIC, "Subject": "x" * 100, "Message": "body"})
        assert sns.send_alert("x" * 150, "body") is True


def test_send_alert_failure(sns):
    with Stubber(sns.sns_client) as stub:
        stub.add_client_error("publish", service_error_code="AuthorizationError",
                              http_status_code=403)
        assert sns.send_alert("Hello", "body") is False


def test_send_alert_without_topic(monkeypatch):
    monkeypatch.delenv("SNS_TOPIC_ARN", raising=False)
    sns = SNSService(region="us-east-1")
    assert sns.send_alert("Hello", "body") is False


def test_consistency_alert_lists_devices(sns):
    issues = [ConsistencyRepairNeeded("DEV-1", "USR-a", {"USR-b"})]
    sent = []
    sns.send_alert = lambda subject, message: sent.append((subject, message)) or True

    assert sns.send_consistency_alert(issues) is True

    subject, message = sent[0]
    assert subject == "Assignment consistency repair needed (1 devices)"
    assert "Device DEV-1 points to USR-a but is listed by ['USR-b']" in message


def test_create_topic(sns):
    sns.topic_arn = None
    with Stubber(sns.sns_client) as stub:
        stub.add_response("create_topic", {"TopicArn": TOPIC},
                          {"Name": "WaterMeterOperatorAlerts"})
        assert sns.create_topic_if_not_exists() == TOPIC
    assert sns.topic_arn == TOPIC
