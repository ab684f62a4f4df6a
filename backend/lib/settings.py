"""
Runtime settings, read from environment variables.

Call load_dotenv() before Settings.from_env() so a local .env file is
honoured (the Flask app and run_local do this for you).

    USE_DYNAMODB=true            store devices/users/readings/logs in DynamoDB
    DYNAMODB_TABLE_PREFIX=...    table name prefix (default WaterMeter)
    USE_SNS=true                 publish operator alerts to SNS
    SNS_TOPIC_ARN / SNS_TOPIC_NAME
    AWS_REGION                   default us-east-1
    LOG_LEVEL                    default INFO
    CAS_MAX_ATTEMPTS             conditional write attempts per record (default 5)
"""
import os
from dataclasses import dataclass
from typing import Optional


def _flag(name: str) -> bool:
    return os.getenv(name, 'false').lower() == 'true'


@dataclass
class Settings:
    use_dynamodb: bool = False
    table_prefix: str = 'WaterMeter'
    use_sns: bool = False
    sns_topic_arn: Optional[str] = None
    sns_topic_name: str = 'WaterMeterOperatorAlerts'
    aws_region: str = 'us-east-1'
    log_level: str = 'INFO'
    cas_max_attempts: int = 5

    @classmethod
    def from_env(cls) -> 'Settings':
        return cls(
            use_dynamodb=_flag('USE_DYNAMODB'),
            table_prefix=os.getenv('DYNAMODB_TABLE_PREFIX', 'WaterMeter'),
            use_sns=_flag('USE_SNS'),
            sns_topic_arn=os.getenv('SNS_TOPIC_ARN'),
            sns_topic_name=os.getenv('SNS_TOPIC_NAME', 'WaterMeterOperatorAlerts'),
            aws_region=os.getenv('AWS_REGION', 'us-east-1'),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            cas_max_attempts=int(os.getenv('CAS_MAX_ATTEMPTS', '5')),
        )
