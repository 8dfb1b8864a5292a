"""Step execution for aiflow flows."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel

from .constants import REFINE_OPTION_THRESHOLD
from .context import (
    detect_entity_key,
    evaluate_condition,
    extract_entity_info,
    merge_context,
    render_template,
    resolve_params,
)
from .contracts import StepOutcome
from .errors import FlowConflictError, StepExecutionError
from .events import record_event
from .persistence.models import (
    EXECUTABLE_STATUSES,
    Actor,
    FlowRecord,
    FlowStatus,
    FlowStep,
    LogEventType,
    PendingPrompt,
    PromptOption,
    PromptType,
    StepStatus,
    StepType,
    utcnow,
)
from .persistence.repository import FlowRepository
from .registry import AgentRegistry, ToolRegistry

logger = logging.getLogger(__name__)

REFINE_VALUE = "refine"
_DECLINED = {"", "no", "n", "false", "0", "cancel", "decline", "declined"}

CompletionHook = Callable[
    [FlowRecord], Union[List[Dict[str, Any]], Awaitable[List[Dict[str, Any]]]]
]


def parse_confirmation(value: Any) -> bool:
    """Interpret a user's answer to a confirm prompt."""
    if isinstance(value, str):
        return value.strip().lower() not in _DECLINED
    return bool(value)


def response_value(response: Any) -> Any:
    """Unwrap ``{"value": ...}`` answers sent by clients."""
    if isinstance(response, dict) and "value" in response:
        return response["value"]
    return response


def build_choice_options(matches: List[Any]) -> List[PromptOption]:
    options: List[PromptOption] = []
    for index, match in enumerate(matches):
        data = match if isinstance(match, dict) else {"value": match}
        label = (
            data.get("full_name")
            or data.get("title")
            or data.get("name")
            or f"Option {index + 1}"
        )
        extra = data.get("email") or data.get("organization") or data.get("status")
        options.append(
            PromptOption(
                value=str(index + 1),
                label=f"{label} ({extra})" if extra else str(label),
                data=data,
            )
        )
    if len(matches) >= REFINE_OPTION_THRESHOLD:
        options.append(
            PromptOption(
                value=REFINE_VALUE,
                label="None of these - let me search differently",
                data={"action": "refine_search"},
            )
        )
    return options


def _put_step(steps: List[FlowStep], step: FlowStep) -> List[FlowStep]:
    return [step if s.id == step.id else s for s in steps]


class StepExecutor:
    """Runs exactly one step of a flow and persists what it did.

    Every write is a compare-and-set against the version of the record the
    executor last saw, so a concurrent driver invocation or a cancel that
    lands mid-step surfaces as :class:`FlowConflictError` instead of being
    overwritten.
    """

    def __init__(
        self,
        repository: FlowRepository,
        tools: Optional[ToolRegistry] = None,
        agents: Optional[AgentRegistry] = None,
        on_complete: Optional[CompletionHook] = None,
    ) -> None:
        self.repository = repository
        self.tools = tools or ToolRegistry()
        self.agents = agents or AgentRegistry()
        self.on_complete = on_complete
        self._handlers = {
            StepType.TOOL_CALL: self._execute_tool_step,
            StepType.USER_PROMPT: self._execute_user_prompt_step,
            StepType.AI_DECISION: self._execute_ai_decision_step,
            StepType.CONDITIONAL: self._execute_conditional_step,
            StepType.AGENT: self._execute_agent_step,
        }

    async def execute_next_step(self, flow: FlowRecord) -> Optional[StepOutcome]:
        """Execute the next pending step of ``flow``.

        Returns ``None`` when there is nothing left to run: the flow is not
        executable, or it had no pending step and has just been completed.
        """
        if not flow.is_executable:
            return None

        step = flow.next_pending_step()
        if step is None:
            await self._complete_flow(flow)
            return None

        first_run = flow.started_at is None
        running = step.model_copy(
            update={
                "status": StepStatus.RUNNING,
                "started_at": utcnow(),
                "error_message": None,
            }
        )
        flow = await self._save(
            flow,
            {
                "status": FlowStatus.RUNNING,
                "current_step_id": step.id,
                "started_at": flow.started_at or utcnow(),
                "steps": _put_step(flow.steps, running),
            },
            expected_status=EXECUTABLE_STATUSES,
        )
        if first_run:
            await record_event(
                self.repository, flow.id, LogEventType.FLOW_STARTED, "Flow started"
            )
        await record_event(
            self.repository,
            flow.id,
            LogEventType.STEP_STARTED,
            f"Started step {running.position}: {running.title or running.step_type.value}",
            step_id=step.id,
        )

        try:
            if running.user_response is not None and running.prompt_type is not None:
                flow = await self._apply_user_response(flow, running)
            else:
                handler = self._handlers.get(running.step_type)
                if handler is None:
                    raise StepExecutionError(
                        f"Unknown step type: {running.step_type}", flow.id, step.id
                    )
                flow = await handler(flow, running)
        except FlowConflictError:
            await self._release_unsaved_step(flow.id, running)
            raise
        except asyncio.CancelledError:
            await self._release_step(flow, running, "Step execution was cancelled")
            raise
        except StepExecutionError as e:
            await self._release_step(flow, running, str(e))
            raise
        except Exception as e:
            logger.error(
                f"Step {step.id} raised for flow_id={flow.id}: {e}", exc_info=True
            )
            await self._release_step(flow, running, str(e))
            raise StepExecutionError(str(e), flow.id, step.id) from e

        executed = flow.get_step(step.id) or running
        return StepOutcome(
            flow_id=flow.id,
            step_id=step.id,
            step_type=executed.step_type,
            status=executed.status,
            result=executed.result or {},
        )

    # ------------------------------------------------------------------
    # Step handlers
    async def _execute_tool_step(self, flow: FlowRecord, step: FlowStep) -> FlowRecord:
        if not step.tool or step.tool not in self.tools:
            raise StepExecutionError(
                f"Tool {step.tool!r} is not registered", flow.id, step.id
            )

        params = resolve_params(step.input_params, step.param_mappings, flow.context)
        logger.info(f"Executing tool {step.tool} for flow_id={flow.id} step_id={step.id}")
        result = await self.tools.call(step.tool, params, flow)

        if result.get("success"):
            return await self._complete_step(
                flow, step, result, context_updates=self._tool_context(flow, step, result)
            )

        status = result.get("status")
        if status == "multiple_matches":
            matches = result.get("matches") or result.get("data") or []
            return await self._request_input(
                flow,
                step,
                PromptType.CHOICE,
                result.get("message") or "Multiple matches found. Please select one:",
                build_choice_options(matches),
            )
        if status == "not_found":
            return await self._request_input(
                flow,
                step,
                PromptType.TEXT,
                result.get("message")
                or "I couldn't find what you're looking for. Please provide more details:",
            )
        raise StepExecutionError(result.get("error") or "Unknown error", flow.id, step.id)

    async def _execute_user_prompt_step(
        self, flow: FlowRecord, step: FlowStep
    ) -> FlowRecord:
        return await self._request_input(
            flow,
            step,
            step.prompt_type or PromptType.TEXT,
            step.prompt_message or step.description or step.title or "Input required",
            step.prompt_options,
        )

    async def _execute_ai_decision_step(
        self, flow: FlowRecord, step: FlowStep
    ) -> FlowRecord:
        step_results = flow.context.get("step_results") or {}
        previous = step_results.get(str(step.position - 1))
        if not previous:
            return await self._complete_step(
                flow,
                step,
                {"decision": "continue", "reason": "No previous result to analyze"},
            )

        matches = previous.get("matches", previous.get("data"))
        if isinstance(matches, dict):
            matches = [matches]
        elif not isinstance(matches, list):
            matches = []

        if not matches:
            return await self._request_input(
                flow,
                step,
                PromptType.TEXT,
                "No results found. Please provide more specific information.",
            )
        if len(matches) == 1:
            match = matches[0] if isinstance(matches[0], dict) else {"value": matches[0]}
            entities = extract_entity_info(match)
            return await self._complete_step(
                flow,
                step,
                {"decision": "single_match", "resolved": match, "resolved_entities": entities},
                context_updates={"resolved_entities": entities},
            )
        return await self._request_input(
            flow,
            step,
            PromptType.CHOICE,
            f"Found {len(matches)} matches. Please select one:",
            build_choice_options(matches),
        )

    async def _execute_conditional_step(
        self, flow: FlowRecord, step: FlowStep
    ) -> FlowRecord:
        condition_met = evaluate_condition(step.condition, flow.context)
        goto = step.on_success_goto if condition_met else step.on_fail_goto

        steps = list(flow.steps)
        skipped: List[FlowStep] = []
        if goto is not None:
            steps = []
            for s in flow.steps:
                if s.status == StepStatus.PENDING and step.position < s.position < goto:
                    s = s.model_copy(
                        update={"status": StepStatus.SKIPPED, "completed_at": utcnow()}
                    )
                    skipped.append(s)
                steps.append(s)

        flow = await self._complete_step(
            flow,
            step,
            {"condition_met": condition_met, "goto": goto},
            steps=steps,
            skipped=len(skipped),
        )
        for s in skipped:
            await record_event(
                self.repository,
                flow.id,
                LogEventType.STEP_SKIPPED,
                f"Skipped step {s.position}: {s.title}",
                step_id=s.id,
            )
        return flow

    async def _execute_agent_step(self, flow: FlowRecord, step: FlowStep) -> FlowRecord:
        agent = self.agents.get(step.agent_name) if step.agent_name else None
        if agent is None:
            raise StepExecutionError(
                f"Agent {step.agent_name!r} is not registered", flow.id, step.id
            )

        prompt = render_template(step.prompt or step.description or step.title, flow.context)
        logger.info(f"Running agent {step.agent_name} for flow_id={flow.id} step_id={step.id}")
        run_result = await agent.run(prompt, deps=flow.context)

        output = getattr(run_result, "output", run_result)
        if isinstance(output, BaseModel):
            output = output.model_dump(mode="json")
        result = {"success": True, "output": output}
        return await self._complete_step(
            flow,
            step,
            result,
            context_updates={"step_results": {str(step.position): result}},
            actor=Actor.AI,
        )

    # ------------------------------------------------------------------
    # User answers
    async def _apply_user_response(self, flow: FlowRecord, step: FlowStep) -> FlowRecord:
        value = response_value(step.user_response)

        if step.prompt_type == PromptType.CHOICE:
            if str(value) == REFINE_VALUE:
                return await self._request_input(
                    flow,
                    step,
                    PromptType.TEXT,
                    "Please provide more specific search criteria:",
                )
            option = next(
                (o for o in step.prompt_options or [] if o.value == str(value)), None
            )
            selected = option.data if option else None
            return await self._complete_step(
                flow,
                step,
                {"user_selection": str(value), "selected_data": selected},
                context_updates=(
                    {"resolved_entities": extract_entity_info(selected)} if selected else None
                ),
                actor=Actor.USER,
            )

        if step.prompt_type == PromptType.TEXT and step.step_type == StepType.TOOL_CALL:
            # the answer refines the search and the tool runs again
            refined = step.model_copy(
                update={
                    "input_params": {**step.input_params, "search": value},
                    "user_response": None,
                    "prompt_type": None,
                    "prompt_message": None,
                    "prompt_options": None,
                }
            )
            return await self._execute_tool_step(flow, refined)

        if step.prompt_type == PromptType.CONFIRM:
            return await self._complete_step(
                flow, step, {"confirmed": parse_confirmation(value)}, actor=Actor.USER
            )

        return await self._complete_step(flow, step, {"response": value}, actor=Actor.USER)

    # ------------------------------------------------------------------
    # Persistence helpers
    async def _save(
        self,
        flow: FlowRecord,
        changes: Dict[str, Any],
        expected_status=None,
    ) -> FlowRecord:
        updated = await self.repository.update_flow(
            flow.id, changes, expected_status=expected_status, expected_version=flow.version
        )
        if updated is None:
            raise FlowConflictError(flow.id)
        return updated

    def _tool_context(
        self, flow: FlowRecord, step: FlowStep, result: Dict[str, Any]
    ) -> Dict[str, Any]:
        created = dict(flow.context.get("created_entities") or {})
        data = result.get("data")
        if isinstance(data, dict):
            entity_key = detect_entity_key(step.tool)
            if entity_key and "id" in data:
                created[entity_key] = data["id"]
            if "project_id" in data:
                created["project_id"] = data["project_id"]
            if "task_id" in data:
                created["task_ids"] = [*created.get("task_ids", []), data["task_id"]]
        return {
            "step_results": {str(step.position): result},
            "created_entities": created,
        }

    async def _complete_step(
        self,
        flow: FlowRecord,
        step: FlowStep,
        result: Dict[str, Any],
        context_updates: Optional[Dict[str, Any]] = None,
        steps: Optional[List[FlowStep]] = None,
        skipped: int = 0,
        actor: Actor = Actor.SYSTEM,
    ) -> FlowRecord:
        done = step.model_copy(
            update={
                "status": StepStatus.COMPLETED,
                "result": result,
                "completed_at": utcnow(),
                "error_message": None,
            }
        )
        changes: Dict[str, Any] = {
            "steps": _put_step(steps if steps is not None else flow.steps, done),
            "completed_steps": min(flow.completed_steps + 1 + skipped, flow.total_steps),
        }
        if context_updates:
            changes["context"] = merge_context(flow.context, context_updates)

        flow = await self._save(flow, changes)
        await record_event(
            self.repository,
            flow.id,
            LogEventType.STEP_COMPLETED,
            f"Completed step {done.position}: {done.title or done.step_type.value}",
            step_id=step.id,
            actor=actor,
        )
        return flow

    async def _request_input(
        self,
        flow: FlowRecord,
        step: FlowStep,
        prompt_type: PromptType,
        message: str,
        options: Optional[List[PromptOption]] = None,
    ) -> FlowRecord:
        waiting = step.model_copy(
            update={
                "status": StepStatus.AWAITING_USER,
                "prompt_type": prompt_type,
                "prompt_message": message,
                "prompt_options": options,
                "user_response": None,
            }
        )
        flow = await self._save(
            flow,
            {
                "status": FlowStatus.AWAITING_USER,
                "paused_at": utcnow(),
                "steps": _put_step(flow.steps, waiting),
                "pending_prompt": PendingPrompt(
                    step_id=step.id,
                    prompt_type=prompt_type,
                    message=message,
                    options=options,
                ),
            },
        )
        await record_event(
            self.repository,
            flow.id,
            LogEventType.USER_INPUT_REQUESTED,
            message,
            step_id=step.id,
            actor=Actor.AI,
            data={"prompt_type": prompt_type.value},
        )
        return flow

    async def _release_step(self, flow: FlowRecord, step: FlowStep, error: str) -> None:
        """Put a failed step back to pending so the next attempt re-runs it."""
        released = step.model_copy(
            update={"status": StepStatus.PENDING, "error_message": error, "started_at": None}
        )
        try:
            await self._save(flow, {"steps": _put_step(flow.steps, released)})
        except FlowConflictError:
            logger.warning(
                f"Could not release step {step.id} for flow_id={flow.id}; flow changed concurrently"
            )
            return
        await record_event(
            self.repository,
            flow.id,
            LogEventType.STEP_FAILED,
            f"Step {step.position} failed: {error}",
            step_id=step.id,
        )

    async def _release_unsaved_step(self, flow_id: str, step: FlowStep) -> None:
        """Hand a claimed step back when its outcome lost the write to another update."""
        current = await self.repository.get_flow(flow_id)
        if current is None or not current.is_executable:
            return
        claimed = current.get_step(step.id)
        if (
            claimed is None
            or claimed.status != StepStatus.RUNNING
            or claimed.started_at != step.started_at
        ):
            return
        await self._release_step(
            current, claimed, "Step outcome was not saved: flow changed concurrently"
        )

    async def _complete_flow(self, flow: FlowRecord) -> None:
        changes: Dict[str, Any] = {
            "status": FlowStatus.COMPLETED,
            "completed_at": utcnow(),
            "current_step_id": None,
            "pending_prompt": None,
        }
        if self.on_complete is not None:
            suggestions = self.on_complete(flow)
            if inspect.isawaitable(suggestions):
                suggestions = await suggestions
            changes["context"] = merge_context(flow.context, {"suggestions": suggestions})

        flow = await self._save(flow, changes, expected_status=EXECUTABLE_STATUSES)
        await record_event(
            self.repository,
            flow.id,
            LogEventType.FLOW_COMPLETED,
            f"Flow completed ({flow.completed_steps}/{flow.total_steps} steps)",
        )
