from __future__ import annotations

import boto3
from botocore.config import Config

from .settings import S

_session = boto3.session.Session(region_name=S.aws_region or "us-east-1")

_config = Config(
    connect_timeout=S.ddb_connect_timeout_seconds,
    read_timeout=S.ddb_read_timeout_seconds,
    retries={"max_attempts": S.ddb_max_attempts, "mode": "standard"},
)

ddb = _session.resource("dynamodb", endpoint_url=S.ddb_endpoint_url or None, config=_config)


def sns_client():
    return _session.client("sns")
