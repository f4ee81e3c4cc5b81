# ABOUTME: Exception hierarchy for the key, quota and usage services
# ABOUTME: Storage failures are wrapped here so callers never see raw SQLAlchemy errors


class GatewayError(Exception):
    """Base class for errors raised by the auth and metering services."""


class StorageError(GatewayError):
    """The backing store failed."""


class StorageUnavailable(StorageError):
    """The backing store could not be read."""


class TierNotFound(GatewayError):
    """No billing tier exists with the requested name."""

    def __init__(self, tier_name: str):
        super().__init__(f"Billing tier not found: {tier_name}")
        self.tier_name = tier_name


class LoggingFailure(GatewayError):
    """Recording a call's usage failed. Only ever reported, never raised to callers."""

    def __init__(self, api_key_id: str, endpoint: str, stage: str):
        super().__init__(f"Failed to {stage} for key {api_key_id} on {endpoint}")
        self.api_key_id = api_key_id
        self.endpoint = endpoint
        self.stage = stage
