from __future__ import annotations

from functools import lru_cache

import boto3
from botocore.config import Config

from ...settings import get_settings


@lru_cache(maxsize=1)
def botocore_config() -> Config:
    # botocore's own retries stay on (standard mode, few attempts); the executor
    # owns the wall-clock retry budget on top of it.
    return Config(
        retries={"max_attempts": 3, "mode": "standard"},
        connect_timeout=2,
        read_timeout=10,
    )


@lru_cache(maxsize=1)
def dynamodb_client():
    settings = get_settings()
    return boto3.client(
        "dynamodb",
        region_name=settings.aws_region,
        endpoint_url=settings.ddb_endpoint_url or None,
        config=botocore_config(),
    )
