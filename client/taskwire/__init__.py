from taskwire.core.config import Settings
from taskwire.core.correlation import RequestCallbacks, RequestHandle, RequestTable
from taskwire.core.exceptions import (
    ConnectionFailed,
    ConnectionTimeout,
    NotConnected,
    ProtocolError,
    RequestCancelled,
    RequestFailed,
    RequestTimeout,
    TaskWireError,
)
from taskwire.core.log_utils import setup_logging
from taskwire.core.reconnect import ConnectionState, ReconnectionPolicy, ReconnectScheduled
from taskwire.core.subscriptions import Subscription, SubscriptionRegistry
from taskwire.core.task_client import TaskClient
from taskwire.core.transport import Transport
from taskwire.schemas.plan_models import ExecutionPlan, OrchestratorResult, PlanStatus, Step, StepStatus, StepType
from taskwire.schemas.websocket_models import ErrorInfo, ProgressUpdate, StreamChunk, parse_frame
from taskwire.services.plan_executor import ExecutionPlanRunner

__all__ = [
    "ConnectionFailed",
    "ConnectionState",
    "ConnectionTimeout",
    "ErrorInfo",
    "ExecutionPlan",
    "ExecutionPlanRunner",
    "NotConnected",
    "OrchestratorResult",
    "PlanStatus",
    "ProgressUpdate",
    "ProtocolError",
    "ReconnectScheduled",
    "ReconnectionPolicy",
    "RequestCallbacks",
    "RequestCancelled",
    "RequestFailed",
    "RequestHandle",
    "RequestTable",
    "RequestTimeout",
    "Settings",
    "Step",
    "StepStatus",
    "StepType",
    "StreamChunk",
    "Subscription",
    "SubscriptionRegistry",
    "TaskClient",
    "TaskWireError",
    "Transport",
    "parse_frame",
    "setup_logging",
]
