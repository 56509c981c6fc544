"""Task types, consuming agents and their typed payloads."""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import DataIntegrityError


class TaskType(str, Enum):
    RE_ENGAGEMENT_CHECK = "re_engagement_check"
    PROCESS_COMMUNITY_REQUEST = "process_community_request"
    NOTIFY_USER_OF_PRIORITIES = "notify_user_of_priorities"
    SOLUTION_WORKFLOW_TIMEOUT = "solution_workflow_timeout"
    CREATE_CONVERSATION_SUMMARY = "create_conversation_summary"
    INTRO_FOLLOWUP_CHECK = "intro_followup_check"
    COMMUNITY_REQUEST_AVAILABLE = "community_request_available"
    PROCESS_COMMUNITY_RESPONSE = "process_community_response"
    COMMUNITY_RESPONSE_AVAILABLE = "community_response_available"
    NOTIFY_EXPERT_OF_IMPACT = "notify_expert_of_impact"
    RESEARCH_SOLUTION = "research_solution"
    SCHEDULE_FOLLOWUP = "schedule_followup"
    UPDATE_USER_PROFILE = "update_user_profile"
    SEND_INTRODUCTION = "send_introduction"
    VERIFY_USER = "verify_user"
    VERIFY_LINKEDIN_CONNECTION = "verify_linkedin_connection"
    REFORMULATE_MESSAGE = "reformulate_message"


class AgentType(str, Enum):
    BOUNCER = "bouncer"
    CONCIERGE = "concierge"
    INNOVATOR = "innovator"
    ACCOUNT_MANAGER = "account_manager"
    SOLUTION_SAGA = "solution_saga"
    INTRO_HANDLER = "intro_handler"
    AGENT_OF_HUMANS = "agent_of_humans"
    SOCIAL_BUTTERFLY = "social_butterfly"
    DEMAND_AGENT = "demand_agent"


def owning_agent(agent_id: str) -> str:
    """Agent type behind an ``agent_id`` such as ``concierge`` or ``intro_handler_v2``."""
    for agent in AgentType:
        if agent_id == agent.value or agent_id.startswith(f"{agent.value}_"):
            return agent.value
    return agent_id.split("_")[0]


# =============================================================================
# Payloads
# =============================================================================


class TaskPayload(BaseModel):
    """Base for all task payloads; unknown keys are kept for the handler."""

    model_config = ConfigDict(extra="allow")


class ReEngagementCheck(TaskPayload):
    current_step: str | None = None
    missing_fields: list[str] = Field(default_factory=list)
    last_interaction_at: datetime | None = None
    attempt_count: int = 0


class CommunityRequest(TaskPayload):
    request_id: str
    question: str | None = None
    category: str | None = None
    expertise_needed: list[str] = Field(default_factory=list)


class CommunityResponse(TaskPayload):
    response_id: str
    request_id: str | None = None


class ExpertImpact(TaskPayload):
    response_id: str
    impact_description: str
    credits_awarded: int = 0
    usefulness_score: int | None = None


class PriorityNotification(TaskPayload):
    priority_ids: list[str] = Field(default_factory=list)


class SolutionWorkflowTimeout(TaskPayload):
    workflow_id: str


class ConversationSummary(TaskPayload):
    conversation_id: str


class IntroFollowup(TaskPayload):
    intro_opportunity_id: str


class ResearchSolution(TaskPayload):
    description: str
    category: str | None = None
    urgency: Literal["low", "medium", "high"] | None = None
    conversation_id: str | None = None


class ScheduleFollowup(TaskPayload):
    reason: str
    original_message_id: str | None = None
    conversation_id: str | None = None


class ProfileUpdate(TaskPayload):
    field: str
    value: Any
    source: str | None = None


class Introduction(TaskPayload):
    intro_opportunity_id: str
    connector_user_id: str
    prospect_name: str
    innovator_name: str | None = None


class Verification(TaskPayload):
    verification_type: Literal["email", "linkedin", "manual"]
    email: str | None = None
    linkedin_url: str | None = None


class Reformulation(TaskPayload):
    original_message_id: str
    original_message_data: dict[str, Any] = Field(default_factory=dict)
    reason: str = "context_changed"
    topic: str | None = None


TASK_PAYLOADS: dict[TaskType, type[TaskPayload]] = {
    TaskType.RE_ENGAGEMENT_CHECK: ReEngagementCheck,
    TaskType.PROCESS_COMMUNITY_REQUEST: CommunityRequest,
    TaskType.NOTIFY_USER_OF_PRIORITIES: PriorityNotification,
    TaskType.SOLUTION_WORKFLOW_TIMEOUT: SolutionWorkflowTimeout,
    TaskType.CREATE_CONVERSATION_SUMMARY: ConversationSummary,
    TaskType.INTRO_FOLLOWUP_CHECK: IntroFollowup,
    TaskType.COMMUNITY_REQUEST_AVAILABLE: CommunityRequest,
    TaskType.PROCESS_COMMUNITY_RESPONSE: CommunityResponse,
    TaskType.COMMUNITY_RESPONSE_AVAILABLE: CommunityResponse,
    TaskType.NOTIFY_EXPERT_OF_IMPACT: ExpertImpact,
    TaskType.RESEARCH_SOLUTION: ResearchSolution,
    TaskType.SCHEDULE_FOLLOWUP: ScheduleFollowup,
    TaskType.UPDATE_USER_PROFILE: ProfileUpdate,
    TaskType.SEND_INTRODUCTION: Introduction,
    TaskType.VERIFY_USER: Verification,
    TaskType.VERIFY_LINKEDIN_CONNECTION: Verification,
    TaskType.REFORMULATE_MESSAGE: Reformulation,
}


def parse_task_type(value: str) -> TaskType | None:
    """Return the TaskType for ``value``, or None for an unknown tag."""
    try:
        return TaskType(value)
    except ValueError:
        return None


def parse_task_payload(task_type: TaskType, context_json: Any) -> TaskPayload:
    """Validate ``context_json`` against the payload model for ``task_type``.

    Raises DataIntegrityError for anything that is not a valid JSON object of
    the expected shape; retrying cannot fix such a row.
    """
    if isinstance(context_json, str):
        try:
            context_json = json.loads(context_json)
        except json.JSONDecodeError as e:
            raise DataIntegrityError(f"context_json is not valid JSON: {e}") from e
    if not isinstance(context_json, dict):
        raise DataIntegrityError(
            f"context_json must be an object, got {type(context_json).__name__}"
        )
    try:
        return TASK_PAYLOADS[task_type].model_validate(context_json)
    except ValidationError as e:
        raise DataIntegrityError(f"Invalid {task_type.value} payload: {e}") from e
