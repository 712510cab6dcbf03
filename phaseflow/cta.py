"""
Human-in-the-loop requests (CTAs).

This module handles:
- Building approval / text / choice requests, demoting a choice with fewer
  than two options to an approval
- The suspend/resume protocol: generate an id, persist, emit, wait, validate
- Recording responses from operators and delivering them to the engine
- Forwarding request events onto the event bus
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional

from phaseflow.errors import ApprovalCorrelationError
from phaseflow.events.types import EventType
from phaseflow.llm_clients import ToolSpec
from phaseflow.models import ApprovalRequest, CtaKind
from phaseflow.schemas import validate_cta_request, validate_cta_response

if TYPE_CHECKING:
    from phaseflow.durable.context import StepContext
    from phaseflow.durable.engine import EventListener, WorkflowEngine
    from phaseflow.durable.journal import WorkflowRecord
    from phaseflow.events.bus import EventBus
    from phaseflow.logger import PipelineLogger
    from phaseflow.store import PipelineStore

CTA_REQUEST_EVENT = "cta.request"
CTA_RESPONSE_EVENT = "cta.response"

DEFAULT_APPROVAL_MESSAGE = "Approval requested"
DEFAULT_TEXT_PROMPT = "Input requested"
DEFAULT_CHOICE_PROMPT = "Choice requested"

TIMEOUT_RESULT = {
    "error": "timeout",
    "message": "Human feedback request timed out after 30 days.",
}

REQUEST_HUMAN_FEEDBACK_TOOL = ToolSpec(
    name="request_human_feedback",
    description=(
        "Request feedback from a human user. Use 'approval' when you need a yes/no "
        "decision. Use 'text' when you need free-form text input. Use 'choice' when you "
        "need the user to pick from options. The function will suspend until the human "
        "responds (up to 30 days)."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "kind": {
                "type": "string",
                "enum": ["approval", "text", "choice"],
                "description": "The type of feedback to request",
            },
            "message": {"type": "string", "description": "Message to show for approval CTAs"},
            "prompt": {"type": "string", "description": "Prompt to show for text or choice CTAs"},
            "placeholder": {"type": "string", "description": "Placeholder text for text input CTAs"},
            "options": {
                "type": "array",
                "description": "Options for choice CTAs",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string", "minLength": 1},
                        "label": {"type": "string", "minLength": 1},
                    },
                    "required": ["id", "label"],
                },
            },
        },
        "required": ["kind"],
    },
)


@dataclass
class CtaSteps:
    """Step names used by one request, so replays find their checkpoints."""
    gen_id: str
    persist: str
    emit: str
    wait: str
    timeout: str

    @classmethod
    def for_gate(cls, phase: str) -> CtaSteps:
        """Steps for the gate fired after ``phase``."""
        return cls(
            gen_id=f"gen-cta-id-{phase}",
            persist=f"cta-persist-after-{phase}",
            emit=f"cta-emit-after-{phase}",
            wait=f"cta-wait-after-{phase}",
            timeout=f"cta-timeout-after-{phase}",
        )

    @classmethod
    def for_tool_call(cls, tool_call_id: str) -> CtaSteps:
        """Steps for a request made by an agent through the feedback tool."""
        return cls(
            gen_id=f"gen-cta-id-{tool_call_id}",
            persist=f"cta-persist-{tool_call_id}",
            emit=f"cta-emit-{tool_call_id}",
            wait=f"cta-wait-{tool_call_id}",
            timeout=f"cta-timeout-{tool_call_id}",
        )


def build_cta_request(cta_id: str, run_id: str, tool_input: dict[str, Any]) -> dict[str, Any]:
    """
    Build a request event from ``request_human_feedback`` arguments.

    Missing text falls back to a default. A choice with fewer than two
    options becomes an approval asking whether to proceed.
    """
    base = {"ctaId": cta_id, "runId": run_id}
    kind = tool_input.get("kind")

    if kind == "approval":
        return {**base, "kind": "approval", "message": tool_input.get("message") or DEFAULT_APPROVAL_MESSAGE}

    if kind == "text":
        request = {**base, "kind": "text", "prompt": tool_input.get("prompt") or DEFAULT_TEXT_PROMPT}
        if tool_input.get("placeholder"):
            request["placeholder"] = tool_input["placeholder"]
        return request

    prompt = tool_input.get("prompt") or DEFAULT_CHOICE_PROMPT
    options = tool_input.get("options") or []
    if len(options) < 2:
        if options:
            message = f"{prompt} Proceed with the only option: {options[0]['label']}?"
        else:
            message = f"{prompt} Proceed?"
        return {**base, "kind": "approval", "message": message}
    return {**base, "kind": "choice", "prompt": prompt, "options": options}


def approval_request(cta_id: str, run_id: str, message: str) -> dict[str, Any]:
    """Build an approval request event."""
    return {"ctaId": cta_id, "runId": run_id, "kind": "approval", "message": message}


def choice_request(
    cta_id: str, run_id: str, prompt: str, options: list[dict[str, str]]
) -> dict[str, Any]:
    """Build a choice request event. Callers must supply at least two options."""
    return {"ctaId": cta_id, "runId": run_id, "kind": "choice", "prompt": prompt, "options": options}


def request_human_input(
    ctx: StepContext,
    store: PipelineStore,
    steps: CtaSteps,
    run_id: str,
    build_request: Callable[[str], dict[str, Any]],
    timeout: timedelta,
    phase_result_id: Optional[str] = None,
    tool_call_id: Optional[str] = None,
    logger: Optional[PipelineLogger] = None,
) -> Optional[dict[str, Any]]:
    """
    Ask a human and wait durably for the answer.

    Each stage is its own checkpoint: id generation, persistence, emission
    and the wait. While waiting the workflow is suspended and holds nothing.

    Args:
        ctx: Step context of the enclosing workflow.
        store: Pipeline store for the ApprovalRequest row.
        steps: Step names for this request.
        run_id: Run the request belongs to.
        build_request: ``(cta_id) -> request event`` callable.
        timeout: How long to wait before giving up.
        phase_result_id: Owning phase result for agent-made requests.
        tool_call_id: Originating tool call for agent-made requests.
        logger: Optional logger.

    Returns:
        The validated response, or None if the request timed out.

    Raises:
        ApprovalCorrelationError: If the delivered response is for another kind.
    """
    cta_id = ctx.run(steps.gen_id, lambda: uuid.uuid4().hex)
    request = validate_cta_request(build_request(cta_id))
    kind = CtaKind(request["kind"])

    ctx.run(steps.persist, lambda: store.create_approval_request(ApprovalRequest(
        id=cta_id,
        run_id=run_id,
        kind=kind,
        request=request,
        phase_result_id=phase_result_id,
        tool_call_id=tool_call_id,
    )).id)
    ctx.send_event(steps.emit, CTA_REQUEST_EVENT, request)
    if logger:
        logger.info("cta_emitted", {"cta_id": cta_id, "kind": kind.value})

    payload = ctx.wait_for_event(steps.wait, CTA_RESPONSE_EVENT, cta_id, timeout)
    if payload is None:
        ctx.run(steps.timeout, lambda: store.timeout_approval_request(cta_id))
        if logger:
            logger.warn("cta_timeout", {"cta_id": cta_id, "kind": kind.value})
        return None

    response = validate_cta_response(payload)
    if response["kind"] != kind.value:
        raise ApprovalCorrelationError(
            f"Request {cta_id} expected a {kind.value} response, got {response['kind']}"
        )
    if logger:
        logger.info("cta_response_received", {"cta_id": cta_id, "kind": kind.value})
    return response


def respond_to_cta(
    store: PipelineStore,
    engine: WorkflowEngine,
    response: dict[str, Any],
    bus: Optional[EventBus] = None,
) -> list[WorkflowRecord]:
    """
    Record an operator's response and resume whatever waits on it.

    Args:
        store: Pipeline store.
        engine: Workflow engine to deliver the response to.
        response: Response event (``ctaId``, ``kind`` and kind fields).
        bus: Optional event bus for CTA_RESPONDED.

    Returns:
        Workflow records after resumption.

    Raises:
        SchemaValidationError: If the response is malformed.
        ApprovalCorrelationError: If it matches no pending request, or the
            request's deadline has passed. An expired request is timed out
            and its workflow resumed before the error is raised.
    """
    response = validate_cta_response(response)
    cta_id = response["ctaId"]
    now = engine.now()
    if any(w.deadline <= now for w in engine.journal.pending_waits(CTA_RESPONSE_EVENT, cta_id)):
        store.timeout_approval_request(cta_id)
        engine.sweep_timeouts(now)
        raise ApprovalCorrelationError(f"Request {cta_id} already timed out")

    request = store.complete_approval_request(cta_id, CtaKind(response["kind"]), response)
    if bus:
        bus.publish(
            EventType.CTA_RESPONDED,
            request.run_id,
            {"cta_id": cta_id, "kind": response["kind"]},
            source="cta",
        )
    return engine.deliver_event(CTA_RESPONSE_EVENT, cta_id, response)


def forward_cta_events(bus: EventBus) -> EventListener:
    """Build an engine listener that republishes CTA requests on the event bus."""

    def listener(event_name: str, payload: Any) -> None:
        if event_name != CTA_REQUEST_EVENT:
            return
        bus.publish(
            EventType.CTA_REQUESTED,
            payload["runId"],
            {"cta_id": payload["ctaId"], "kind": payload["kind"], "request": payload},
            source="cta",
        )

    return listener
