from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Hard per-call maximums of BatchGetItem / BatchWriteItem.
MAX_READ_BATCH_SIZE = 100
MAX_WRITE_BATCH_SIZE = 25

DEFAULT_RETRY_ON_ERROR_CODES = (
    "ThrottlingException",
    "ProvisionedThroughputExceededException",
    "LimitExceededException",
    "ResourceInUseException",
    "RequestLimitExceeded",
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # AWS
    aws_region: str = Field(default="us-east-1", validation_alias="AWS_REGION")
    # Point at DynamoDB Local / a test endpoint.
    ddb_endpoint_url: str | None = Field(default=None, validation_alias="DDB_ENDPOINT_URL")

    # Retry budget
    ddb_max_retry_timeout_s: float = Field(default=60.0, validation_alias="DDB_MAX_RETRY_TIMEOUT_SECONDS")
    ddb_retry_base_delay_s: float = Field(default=0.05, validation_alias="DDB_RETRY_BASE_DELAY_SECONDS")
    ddb_retry_max_delay_s: float = Field(default=5.0, validation_alias="DDB_RETRY_MAX_DELAY_SECONDS")
    ddb_retry_on_error_codes: str = Field(
        default=",".join(DEFAULT_RETRY_ON_ERROR_CODES),
        validation_alias="DDB_RETRY_ON_ERROR_CODES",
    )

    # Table lifecycle
    ddb_poll_table_status_s: float = Field(default=2.0, validation_alias="DDB_POLL_TABLE_STATUS_SECONDS")
    ddb_billing_mode: str = Field(default="PAY_PER_REQUEST", validation_alias="DDB_BILLING_MODE")
    ddb_read_capacity: int = Field(default=10, validation_alias="DDB_READ_CAPACITY")
    ddb_write_capacity: int = Field(default=5, validation_alias="DDB_WRITE_CAPACITY")

    # Reads / batches
    ddb_consistent_read: bool = Field(default=True, validation_alias="DDB_CONSISTENT_READ")
    ddb_read_batch_size: int = Field(default=MAX_READ_BATCH_SIZE, validation_alias="DDB_READ_BATCH_SIZE")
    ddb_write_batch_size: int = Field(default=MAX_WRITE_BATCH_SIZE, validation_alias="DDB_WRITE_BATCH_SIZE")

    # Page tokens
    ddb_page_token_key: str | None = Field(default=None, validation_alias="DDB_PAGE_TOKEN_KEY")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    @field_validator("ddb_read_batch_size")
    @classmethod
    def _clamp_read_batch(cls, v: int) -> int:
        return max(1, min(MAX_READ_BATCH_SIZE, int(v)))

    @field_validator("ddb_write_batch_size")
    @classmethod
    def _clamp_write_batch(cls, v: int) -> int:
        return max(1, min(MAX_WRITE_BATCH_SIZE, int(v)))

    @field_validator("ddb_billing_mode")
    @classmethod
    def _billing_mode(cls, v: str) -> str:
        mode = str(v or "").strip().upper()
        if mode not in ("PAY_PER_REQUEST", "PROVISIONED"):
            raise ValueError("DDB_BILLING_MODE must be PAY_PER_REQUEST or PROVISIONED")
        return mode

    @property
    def retry_on_error_codes(self) -> frozenset[str]:
        raw = str(self.ddb_retry_on_error_codes or "")
        return frozenset(c.strip() for c in raw.split(",") if c.strip())

    def public_dict(self) -> dict[str, object]:
        return {
            "aws_region": self.aws_region,
            "ddb_endpoint_configured": bool(self.ddb_endpoint_url),
            "ddb_max_retry_timeout_s": self.ddb_max_retry_timeout_s,
            "ddb_retry_on_error_codes": sorted(self.retry_on_error_codes),
            "ddb_poll_table_status_s": self.ddb_poll_table_status_s,
            "ddb_billing_mode": self.ddb_billing_mode,
            "ddb_consistent_read": self.ddb_consistent_read,
            "ddb_read_batch_size": self.ddb_read_batch_size,
            "ddb_write_batch_size": self.ddb_write_batch_size,
            "ddb_page_token_key_configured": bool(self.ddb_page_token_key),
            "log_level": self.log_level,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
