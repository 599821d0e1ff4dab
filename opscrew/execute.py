"""Workflow execution engine."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from .audit import ApprovalAudit, AuditLogger, WorkflowExecutionAudit
from .cancellation import CancellationToken
from .constants import DEFAULT_APPROVAL_TIMEOUT_MS
from .contracts import (
    ExecuteAgentOptions,
    ExecuteAgentRequest,
    ExecuteWorkflowRequest,
    ExecuteWorkflowResponse,
    WorkflowStatusReport,
)
from .definitions import WorkflowStore, validate_workflow
from .dispatch import StepDispatcher
from .errors import AgentError, ErrorCode
from .events import AgentEvent, EventBus, EventType, WorkflowEvent
from .models import (
    AgentStatus,
    Approval,
    ApprovalConfig,
    ApprovalStatus,
    ApprovalUser,
    ExecutionError,
    LogLevel,
    StepExecution,
    TokenUsage,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowStep,
    utcnow,
)
from .persistence import StateRepository
from .scheduler import DependencyScheduler

logger = logging.getLogger(__name__)

_LIVE_STATUSES = (WorkflowStatus.RUNNING, WorkflowStatus.PAUSED)


def _batches(steps: List[WorkflowStep]) -> List[List[WorkflowStep]]:
    """Group contiguous parallel steps; every other step is a batch of one."""
    batches: List[List[WorkflowStep]] = []
    for step in steps:
        if step.is_parallel and batches and batches[-1][0].is_parallel:
            batches[-1].append(step)
        else:
            batches.append([step])
    return batches


class WorkflowExecutor:
    """Drive workflow executions through the ready queue.

    Each pass takes the set of ready steps, dispatches it in ``order`` and
    joins concurrent batches before asking the scheduler again. The run stops
    at the first failed step or when nothing is ready any more.
    """

    def __init__(
        self,
        repository: StateRepository,
        store: WorkflowStore,
        scheduler: DependencyScheduler,
        dispatcher: StepDispatcher,
        audit: AuditLogger,
        bus: EventBus,
        approval_timeout_ms: int = DEFAULT_APPROVAL_TIMEOUT_MS,
    ) -> None:
        self._repository = repository
        self._store = store
        self._scheduler = scheduler
        self._dispatcher = dispatcher
        self._audit = audit
        self._bus = bus
        self.approval_timeout_ms = approval_timeout_ms
        self._active: Dict[str, WorkflowExecution] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._looping: Set[str] = set()
        self._wakeups: Set[str] = set()

    # ------------------------------------------------------------------
    # Runtime bookkeeping
    def _track(self, execution: WorkflowExecution) -> None:
        self._active[execution.id] = execution
        self._tokens.setdefault(execution.id, CancellationToken())
        self._locks.setdefault(execution.id, asyncio.Lock())

    def _untrack(self, execution_id: str) -> None:
        self._active.pop(execution_id, None)
        self._tokens.pop(execution_id, None)
        self._locks.pop(execution_id, None)

    def _lock_for(self, execution_id: str) -> asyncio.Lock:
        return self._locks.setdefault(execution_id, asyncio.Lock())

    async def _load(self, execution_id: str) -> WorkflowExecution:
        execution = self._active.get(execution_id)
        if execution is None:
            execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise AgentError(
                f"Execution {execution_id} not found",
                ErrorCode.EXECUTION_NOT_FOUND,
                execution_id=execution_id,
            )
        return execution

    async def _checkpoint(self, execution: WorkflowExecution) -> None:
        execution.updated_at = utcnow()
        await self._repository.save_execution(execution)

    async def _emit_workflow(
        self,
        event_type: EventType,
        execution: WorkflowExecution,
        step_id: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> None:
        await self._bus.publish(
            WorkflowEvent(
                type=event_type,
                workflow_id=execution.workflow_id,
                execution_id=execution.id,
                step_id=step_id,
                data=data or {},
            )
        )

    async def _audit_workflow(self, execution: WorkflowExecution, status: str) -> None:
        usage = TokenUsage()
        for se in execution.step_executions:
            usage.prompt_tokens += se.token_usage.prompt_tokens
            usage.completion_tokens += se.token_usage.completion_tokens
            usage.total_tokens += se.token_usage.total_tokens
        await self._audit.log_workflow_execution(
            WorkflowExecutionAudit(
                workflow_id=execution.workflow_id,
                execution_id=execution.id,
                status=status,
                step_count=len(execution.step_executions),
                total_execution_time_ms=sum(
                    se.execution_time_ms for se in execution.step_executions
                ),
                total_token_usage=usage,
                organization_id=execution.context.organization_id,
                user_id=execution.context.user_id,
            )
        )

    # ------------------------------------------------------------------
    # Running workflows
    async def execute_workflow(self, request: ExecuteWorkflowRequest) -> ExecuteWorkflowResponse:
        workflow = await self._store.get_workflow(request.workflow_id)
        if workflow is None:
            raise AgentError(
                f"Workflow {request.workflow_id} not found", ErrorCode.WORKFLOW_NOT_FOUND
            )
        validation = validate_workflow(workflow)
        if not validation.is_valid:
            raise AgentError(
                f"Workflow {workflow.id} is invalid: {'; '.join(validation.errors)}",
                ErrorCode.WORKFLOW_VALIDATION_FAILED,
                details={"errors": validation.errors},
            )

        now = utcnow()
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            status=WorkflowStatus.RUNNING,
            context=request.context,
            variables={**workflow.variables, **request.variables},
            workflow=workflow.model_copy(deep=True),
            started_at=now,
        )
        execution.add_log(LogLevel.INFO, f"Workflow {workflow.name} started")
        self._track(execution)
        await self._checkpoint(execution)

        logger.info(f"Starting execution {execution.id} of workflow {workflow.id}")
        await self._emit_workflow(
            EventType.WORKFLOW_STARTED, execution, data={"variables": execution.variables}
        )
        await self._audit_workflow(execution, "started")

        await self._run(execution)
        return ExecuteWorkflowResponse.from_execution(execution)

    async def _run(self, execution: WorkflowExecution) -> None:
        if execution.id in self._looping:
            # the running loop picks up newly unblocked steps itself
            self._wakeups.add(execution.id)
            return
        self._looping.add(execution.id)
        try:
            while True:
                self._wakeups.discard(execution.id)
                await self._drain(execution)
                await self._finalize(execution)
                if execution.id not in self._wakeups or execution.is_terminal:
                    break
        finally:
            self._looping.discard(execution.id)
            self._wakeups.discard(execution.id)

    async def _drain(self, execution: WorkflowExecution) -> None:
        while execution.status != WorkflowStatus.CANCELLED:
            ready = await self._scheduler.get_ready_steps(execution)
            if not ready:
                return
            for batch in _batches(ready):
                results = await asyncio.gather(
                    *(self.execute_workflow_step(execution, step) for step in batch)
                )
                await self._checkpoint(execution)
                if execution.status == WorkflowStatus.CANCELLED:
                    return
                if any(se.status == AgentStatus.FAILED for se in results):
                    return

    async def _settle(self, execution: WorkflowExecution) -> None:
        if execution.id in self._looping:
            self._wakeups.add(execution.id)
            await self._checkpoint(execution)
        else:
            await self._finalize(execution)

    async def _finalize(self, execution: WorkflowExecution) -> None:
        if execution.status == WorkflowStatus.CANCELLED:
            await self._checkpoint(execution)
            self._untrack(execution.id)
            return

        status = await self._scheduler.get_execution_status(execution)
        in_flight = [
            se.step_id for se in execution.step_executions if se.status == AgentStatus.RUNNING
        ]
        if status == WorkflowStatus.RUNNING and not in_flight:
            # nothing left is ready; remaining steps were gated off by conditions
            status = WorkflowStatus.COMPLETED
        execution.status = status

        if status == WorkflowStatus.COMPLETED:
            execution.completed_at = utcnow()
            execution.add_log(LogLevel.INFO, "Workflow completed")
            await self._emit_workflow(
                EventType.WORKFLOW_COMPLETED, execution, data={"variables": execution.variables}
            )
            await self._audit_workflow(execution, "completed")
            logger.info(f"Execution {execution.id} completed")
        elif status == WorkflowStatus.FAILED:
            execution.completed_at = utcnow()
            response = ExecuteWorkflowResponse.from_execution(execution)
            message = response.error.message if response.error else "Workflow failed"
            execution.add_log(LogLevel.ERROR, message)
            await self._emit_workflow(
                EventType.WORKFLOW_FAILED, execution, data={"error": message}
            )
            await self._audit_workflow(execution, "failed")
            logger.error(f"Execution {execution.id} failed: {message}")
        elif status == WorkflowStatus.RUNNING:
            logger.debug(f"Execution {execution.id} still has steps in flight: {in_flight}")
        else:
            logger.info(
                f"Execution {execution.id} paused awaiting approvals "
                f"{execution.pending_approval_ids()}"
            )

        await self._checkpoint(execution)
        if execution.is_terminal:
            self._untrack(execution.id)

    async def execute_workflow_step(
        self, execution: WorkflowExecution, step: WorkflowStep
    ) -> StepExecution:
        """Run one step; failures are recorded on the returned StepExecution."""
        step_input = {
            key: execution.variables[variable]
            for key, variable in step.input_mapping.items()
            if variable in execution.variables
        }
        step_execution = StepExecution(step_id=step.id, agent_id=step.agent_id, input=step_input)
        execution.step_executions.append(step_execution)
        execution.current_step_id = step.id
        await self._emit_workflow(EventType.STEP_STARTED, execution, step.id)

        try:
            response = await self._dispatcher.execute_agent(
                ExecuteAgentRequest(
                    agent_id=step.agent_id,
                    input=step_input,
                    context=execution.context,
                    options=ExecuteAgentOptions(
                        timeout_ms=step.timeout_ms,
                        retry_policy=step.retry_policy,
                        require_approval=step.requires_approval,
                    ),
                    execution_id=execution.id,
                    step_id=step.id,
                ),
                cancel_token=self._tokens.get(execution.id),
            )
        except Exception as e:
            await self._fail_step(execution, step_execution, e)
            return step_execution

        step_execution.output = response.output
        step_execution.confidence = response.confidence
        step_execution.confidence_level = response.confidence_level
        step_execution.token_usage = response.token_usage
        step_execution.execution_time_ms = response.execution_time_ms
        step_execution.retry_count = response.retry_count

        async with self._lock_for(execution.id):
            if execution.status == WorkflowStatus.CANCELLED:
                logger.warning(
                    f"Dropping output of step {step.id}: execution {execution.id} was cancelled"
                )
                step_execution.error = ExecutionError(
                    code=ErrorCode.EXECUTION_CANCELLED.value,
                    message="Execution cancelled before step output was applied",
                )
                step_execution.transition(AgentStatus.FAILED)
                return step_execution

            if response.requires_approval:
                step_execution.transition(AgentStatus.WAITING_APPROVAL)
                approval = self._create_approval(execution, step, step_execution)
                execution.approvals.append(approval)
                execution.add_log(
                    LogLevel.INFO,
                    f"Step {step.id} is waiting for approval {approval.id}",
                    step_id=step.id,
                    agent_id=step.agent_id,
                )
            else:
                step_execution.transition(AgentStatus.COMPLETED)
                self._apply_outputs(execution, step, step_execution)
                approval = None

        if approval is not None:
            await self._request_approval(execution, step, approval)
        else:
            execution.add_log(
                LogLevel.INFO, f"Step {step.id} completed", step_id=step.id, agent_id=step.agent_id
            )
            await self._emit_workflow(
                EventType.STEP_COMPLETED,
                execution,
                step.id,
                data={"output": step_execution.output, "confidence": step_execution.confidence},
            )
        return step_execution

    @staticmethod
    def _apply_outputs(
        execution: WorkflowExecution, step: WorkflowStep, step_execution: StepExecution
    ) -> None:
        output = step_execution.output or {}
        for key, variable in step.output_mapping.items():
            if key in output:
                execution.variables[variable] = output[key]

    async def _fail_step(
        self, execution: WorkflowExecution, step_execution: StepExecution, error: Exception
    ) -> None:
        if isinstance(error, AgentError) and error.code == ErrorCode.EXECUTION_CANCELLED:
            step_execution.error = error.to_execution_error()
        else:
            if isinstance(error, AgentError):
                cause = error.details.get("cause_code") or error.code.value
            else:
                cause = type(error).__name__
            step_execution.error = ExecutionError(
                code=ErrorCode.STEP_EXECUTION_FAILED.value,
                message=str(error) or type(error).__name__,
                details={"cause_code": cause},
                retryable=getattr(error, "retryable", False),
            )
        step_execution.transition(AgentStatus.FAILED)
        execution.add_log(
            LogLevel.ERROR,
            f"Step {step_execution.step_id} failed: {step_execution.error.message}",
            step_id=step_execution.step_id,
            agent_id=step_execution.agent_id,
        )
        logger.error(
            f"Step {step_execution.step_id} of execution {execution.id} failed: "
            f"{step_execution.error.message}"
        )
        await self._emit_workflow(
            EventType.STEP_FAILED,
            execution,
            step_execution.step_id,
            data={"error": step_execution.error.model_dump()},
        )

    # ------------------------------------------------------------------
    # Approvals
    def _create_approval(
        self, execution: WorkflowExecution, step: WorkflowStep, step_execution: StepExecution
    ) -> Approval:
        config = step.approval_config or ApprovalConfig(timeout_ms=self.approval_timeout_ms)
        approvers = config.approvers or [execution.context.user_id]
        now = utcnow()
        approval = Approval(
            execution_id=execution.id,
            step_id=step.id,
            step_execution_id=step_execution.id,
            agent_id=step.agent_id,
            approvers=[ApprovalUser(user_id=user_id) for user_id in approvers],
            min_approvals=config.min_approvals,
            expires_at=now + timedelta(milliseconds=config.timeout_ms),
        )
        if config.escalation is not None:
            approval.escalate_at = now + timedelta(
                milliseconds=config.escalation.escalate_after_ms
            )
            approval.escalate_to = list(config.escalation.escalate_to)
        return approval

    async def _request_approval(
        self, execution: WorkflowExecution, step: WorkflowStep, approval: Approval
    ) -> None:
        logger.info(f"Approval {approval.id} requested for step {step.id}")
        await self._bus.publish(
            AgentEvent(
                type=EventType.APPROVAL_REQUIRED,
                agent_id=step.agent_id,
                execution_id=execution.id,
                step_id=step.id,
                data={
                    "approval_id": approval.id,
                    "approvers": [a.user_id for a in approval.approvers],
                },
            )
        )
        await self._audit.log_approval(
            ApprovalAudit(
                approval_id=approval.id,
                execution_id=execution.id,
                step_id=step.id,
                agent_id=step.agent_id,
                status="requested",
                requested_at=approval.created_at,
            )
        )

    async def _find_approval(self, approval_id: str) -> tuple[WorkflowExecution, Approval]:
        for execution in list(self._active.values()):
            approval = execution.get_approval(approval_id)
            if approval is not None:
                return execution, approval
        for execution in await self._repository.list_executions(statuses=_LIVE_STATUSES):
            approval = execution.get_approval(approval_id)
            if approval is not None:
                return self._active.get(execution.id, execution), approval
        raise AgentError(f"Approval {approval_id} not found", ErrorCode.APPROVAL_NOT_FOUND)

    async def respond_to_approval(
        self,
        approval_id: str,
        approver_id: str,
        approved: bool,
        comment: Optional[str] = None,
    ) -> ExecuteWorkflowResponse:
        """Record one approver's decision and resume or fail the run."""
        execution, approval = await self._find_approval(approval_id)
        if execution.is_terminal:
            raise AgentError(
                f"Execution {execution.id} already finished ({execution.status.value})",
                ErrorCode.APPROVAL_NOT_FOUND,
                execution_id=execution.id,
                step_id=approval.step_id,
            )
        if approval.status != ApprovalStatus.PENDING:
            raise AgentError(
                f"Approval {approval_id} is no longer pending ({approval.status.value})",
                ErrorCode.APPROVAL_NOT_FOUND,
                execution_id=execution.id,
                step_id=approval.step_id,
            )
        try:
            status = approval.record_response(approver_id, approved, comment)
        except KeyError:
            raise AgentError(
                f"User {approver_id} is not an approver for approval {approval_id}",
                ErrorCode.APPROVAL_NOT_FOUND,
                execution_id=execution.id,
                step_id=approval.step_id,
            ) from None

        self._track(execution)
        await self._audit.log_approval(
            ApprovalAudit(
                approval_id=approval.id,
                execution_id=execution.id,
                step_id=approval.step_id,
                agent_id=approval.agent_id,
                status="requested" if status == ApprovalStatus.PENDING else status.value,
                approver_id=approver_id,
                comment=comment,
                requested_at=approval.created_at,
                responded_at=approval.updated_at,
            )
        )

        if status == ApprovalStatus.APPROVED:
            await self._grant(execution, approval)
            execution.status = WorkflowStatus.RUNNING
            await self._checkpoint(execution)
            await self._run(execution)
        elif status == ApprovalStatus.REJECTED:
            await self._reject(execution, approval, "Approval rejected")
            await self._settle(execution)
        else:
            await self._checkpoint(execution)
        return ExecuteWorkflowResponse.from_execution(execution)

    def _step_of(self, execution: WorkflowExecution, approval: Approval) -> Optional[WorkflowStep]:
        workflow = execution.workflow
        return workflow.get_step(approval.step_id) if workflow else None

    async def _grant(self, execution: WorkflowExecution, approval: Approval) -> None:
        step_execution = execution.get_step_execution(approval.step_execution_id)
        step = self._step_of(execution, approval)
        async with self._lock_for(execution.id):
            if step_execution is not None:
                step_execution.transition(AgentStatus.COMPLETED)
                if step is not None:
                    self._apply_outputs(execution, step, step_execution)
        execution.add_log(
            LogLevel.INFO, f"Approval {approval.id} granted", step_id=approval.step_id
        )
        logger.info(f"Approval {approval.id} granted; resuming execution {execution.id}")
        await self._bus.publish(
            AgentEvent(
                type=EventType.APPROVAL_GRANTED,
                agent_id=approval.agent_id,
                execution_id=execution.id,
                step_id=approval.step_id,
                data={"approval_id": approval.id},
            )
        )
        await self._emit_workflow(
            EventType.STEP_COMPLETED,
            execution,
            approval.step_id,
            data={"output": step_execution.output if step_execution else None},
        )

    async def _reject(self, execution: WorkflowExecution, approval: Approval, reason: str) -> None:
        step_execution = execution.get_step_execution(approval.step_execution_id)
        if step_execution is not None and step_execution.status == AgentStatus.WAITING_APPROVAL:
            step_execution.error = ExecutionError(
                code=ErrorCode.STEP_EXECUTION_FAILED.value,
                message=reason,
                details={"approval_id": approval.id, "status": approval.status.value},
            )
            step_execution.transition(AgentStatus.FAILED)
        execution.add_log(
            LogLevel.WARN, f"{reason}: {approval.id}", step_id=approval.step_id
        )
        logger.warning(f"{reason} for step {approval.step_id} of execution {execution.id}")
        await self._bus.publish(
            AgentEvent(
                type=EventType.APPROVAL_REJECTED,
                agent_id=approval.agent_id,
                execution_id=execution.id,
                step_id=approval.step_id,
                data={"approval_id": approval.id, "status": approval.status.value},
            )
        )
        await self._emit_workflow(
            EventType.STEP_FAILED, execution, approval.step_id, data={"error": reason}
        )

    async def expire_approvals(self, now: Optional[datetime] = None) -> List[Approval]:
        """Expire overdue pending approvals and fail their executions."""
        now = now or utcnow()
        candidates: Dict[str, WorkflowExecution] = dict(self._active)
        for execution in await self._repository.list_executions(statuses=_LIVE_STATUSES):
            candidates.setdefault(execution.id, execution)

        expired: List[Approval] = []
        for execution in candidates.values():
            overdue = [a for a in execution.approvals if a.is_expired(now)]
            if not overdue:
                continue
            self._track(execution)
            for approval in overdue:
                approval.status = ApprovalStatus.EXPIRED
                approval.updated_at = now
                await self._audit.log_approval(
                    ApprovalAudit(
                        approval_id=approval.id,
                        execution_id=execution.id,
                        step_id=approval.step_id,
                        agent_id=approval.agent_id,
                        status="expired",
                        requested_at=approval.created_at,
                        responded_at=now,
                    )
                )
                await self._reject(execution, approval, "Approval expired")
                expired.append(approval)
            await self._settle(execution)
        return expired

    # ------------------------------------------------------------------
    # Lifecycle
    async def resume_execution(self, execution_id: str) -> ExecuteWorkflowResponse:
        """Continue a persisted execution, for instance after a restart."""
        execution = await self._load(execution_id)
        if execution.is_terminal:
            return ExecuteWorkflowResponse.from_execution(execution)

        interrupted = [
            se for se in execution.step_executions if se.status == AgentStatus.RUNNING
        ]
        if interrupted and execution.id not in self._active:
            # steps cut off mid-call are attempted again
            execution.step_executions = [
                se for se in execution.step_executions if se not in interrupted
            ]
            logger.warning(
                f"Re-queueing interrupted steps {[se.step_id for se in interrupted]} "
                f"of execution {execution.id}"
            )

        self._track(execution)
        execution.status = WorkflowStatus.RUNNING
        logger.info(f"Resuming execution {execution.id}")
        await self._run(execution)
        return ExecuteWorkflowResponse.from_execution(execution)

    async def cancel_execution(self, execution_id: str) -> bool:
        """Cancel a live execution; ``False`` when it already finished."""
        execution = await self._load(execution_id)
        if execution.is_terminal:
            return False

        async with self._lock_for(execution.id):
            execution.status = WorkflowStatus.CANCELLED
            execution.completed_at = utcnow()
            execution.add_log(LogLevel.WARN, "Workflow cancelled")
        token = self._tokens.get(execution.id)
        if token is not None:
            token.cancel("cancelled")

        logger.info(f"Cancelled execution {execution.id}")
        await self._emit_workflow(
            EventType.WORKFLOW_FAILED, execution, data={"reason": "cancelled"}
        )
        await self._audit_workflow(execution, "cancelled")
        await self._checkpoint(execution)
        if execution.id in self._looping:
            # the loop releases the token and lock once in-flight steps return
            self._active.pop(execution.id, None)
        else:
            self._untrack(execution.id)
        return True

    async def get_active_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        execution = self._active.get(execution_id)
        if execution is not None:
            return execution
        execution = await self._repository.get_execution(execution_id)
        if execution is not None and execution.status in _LIVE_STATUSES:
            return execution
        return None

    async def get_active_executions(self) -> List[WorkflowExecution]:
        executions: Dict[str, WorkflowExecution] = {
            e.id: e for e in await self._repository.list_executions(statuses=_LIVE_STATUSES)
        }
        executions.update(self._active)
        return [e for e in executions.values() if e.status in _LIVE_STATUSES]

    async def get_workflow_status(
        self, workflow_id: str, execution_id: Optional[str] = None
    ) -> WorkflowStatusReport:
        workflow = await self._store.get_workflow(workflow_id)
        if workflow is None:
            raise AgentError(f"Workflow {workflow_id} not found", ErrorCode.WORKFLOW_NOT_FOUND)
        if execution_id is None:
            return WorkflowStatusReport(workflow=workflow, status=workflow.status)

        execution = await self._load(execution_id)
        current = None
        if execution.current_step_id and execution.workflow is not None:
            current = execution.workflow.get_step(execution.current_step_id)
        return WorkflowStatusReport(
            workflow=workflow,
            execution=execution,
            status=await self._scheduler.get_execution_status(execution),
            progress=await self._scheduler.get_execution_progress(execution),
            current_step=current,
            next_steps=await self._scheduler.get_next_steps(execution),
        )
