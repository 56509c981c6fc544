"""
Courier

Outbound SMS scheduling with per-user delivery discipline (budgets, quiet
hours, relevance re-checks, supersession) and a skip-locked background task
dispatcher, backed by PostgreSQL.
"""

__version__ = "0.1.0"

# Configuration
from courier.config import Settings

# Errors
from courier.errors import (
    CourierError,
    DataIntegrityError,
    PermanentError,
    ProviderError,
    RenderError,
    RetryableError,
)

# Task dispatch
from courier.dispatcher import TaskDispatcher, compute_backoff
from courier.handlers import HandlerRegistry
from courier.models import (
    MessageStatus,
    OutboundMessage,
    Priority,
    ScheduledTask,
    TaskDeadLetter,
    TaskStatus,
)

# Message scheduling
from courier.orchestrator import MessageOrchestrator, TickResult, queue_message
from courier.quiet_hours import QuietHoursWindow
from courier.rate_limit import RateLimitPolicy, ReserveResult, check_and_reserve
from courier.relevance import RelevanceChecker, RelevanceDecision, RelevanceVerdict
from courier.tasks import AgentType, TaskType

__all__ = [
    "AgentType",
    "CourierError",
    "DataIntegrityError",
    "HandlerRegistry",
    "MessageOrchestrator",
    "MessageStatus",
    "OutboundMessage",
    "PermanentError",
    "Priority",
    "ProviderError",
    "QuietHoursWindow",
    "RateLimitPolicy",
    "RelevanceChecker",
    "RelevanceDecision",
    "RelevanceVerdict",
    "RenderError",
    "ReserveResult",
    "RetryableError",
    "ScheduledTask",
    "Settings",
    "TaskDeadLetter",
    "TaskDispatcher",
    "TaskStatus",
    "TaskType",
    "TickResult",
    "check_and_reserve",
    "compute_backoff",
    "queue_message",
]
