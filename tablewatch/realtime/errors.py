"""Error taxonomy for the real-time change pipeline."""


class RealtimeError(Exception):
    """Base exception for tablewatch real-time components."""


class JobConfigurationError(RealtimeError):
    """A polling job cannot be built; fatal to the subscription and never retried."""


class UnknownEntityError(JobConfigurationError):
    def __init__(self, service_name: str, entity_name: str) -> None:
        self.service_name = service_name
        self.entity_name = entity_name
        super().__init__(f"Unknown entity '{entity_name}' for service '{service_name}'")


class InvalidFiltersError(JobConfigurationError):
    """Subscription filters could not be parsed or reference invalid identifiers."""


class UnresolvableColumnError(JobConfigurationError):
    def __init__(self, table: str, mode: str) -> None:
        self.table = table
        self.mode = mode
        super().__init__(f"No usable timestamp column found on '{table}' for trigger mode '{mode}'")


class SubscriptionError(RealtimeError):
    """Raised by the registry when a subscribe request is rejected."""

    def __init__(self, channel_id: str, message: str) -> None:
        self.channel_id = channel_id
        super().__init__(message)


class MalformedMessageError(RealtimeError):
    """A wire message is missing mandatory fields or has the wrong shape."""

    def __init__(self, message: str, channel_id: str | None = None) -> None:
        self.channel_id = channel_id
        super().__init__(message)
