"""
Management API client: transport, protocol adapters and canonical entities.
"""
from surebackup.services.api.adapter import (
    ProtocolAdapter,
    V3Adapter,
    V4Adapter,
    create_protocol_adapter,
    detect_generation,
)
from surebackup.services.api.entities import (
    Entity,
    EntityFilter,
    EntityKind,
    PowerState,
    SubnetEntity,
    TaskEntity,
    TaskHandle,
    TaskState,
    VmEntity,
)
from surebackup.services.api.errors import (
    ApiClientError,
    ApiConnectionError,
    ApiError,
    ApiRateLimitError,
    ApiResponseError,
    ApiServerError,
    ApiTlsError,
)
from surebackup.services.api.transport import (
    ApiGeneration,
    ApiRequestContext,
    ApiTransport,
    RetryPolicy,
)

__all__ = [
    "ApiClientError",
    "ApiConnectionError",
    "ApiError",
    "ApiGeneration",
    "ApiRateLimitError",
    "ApiRequestContext",
    "ApiResponseError",
    "ApiServerError",
    "ApiTlsError",
    "ApiTransport",
    "Entity",
    "EntityFilter",
    "EntityKind",
    "PowerState",
    "ProtocolAdapter",
    "RetryPolicy",
    "SubnetEntity",
    "TaskEntity",
    "TaskHandle",
    "TaskState",
    "V3Adapter",
    "V4Adapter",
    "VmEntity",
    "create_protocol_adapter",
    "detect_generation",
]
