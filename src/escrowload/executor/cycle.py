"""Runs one workflow instance against one freshly created remote entity."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from escrowload.client.base import RemoteServiceClient
from escrowload.client.classifier import classify_error
from escrowload.client.receipt import ErrorClass, Receipt
from escrowload.errors import RemoteCallError
from escrowload.executor.result import CycleRecorder, CycleResult, StepOutcome, StepStatus
from escrowload.identity import Identity
from escrowload.models.config import StateSource
from escrowload.models.workflow import StepSpec, WorkflowDefinition, parse_reference

logger = logging.getLogger(__name__)


class PayloadError(Exception):
    """A payload template could not be rendered for this cycle."""


def render_payload(
    step: StepSpec,
    context: Mapping[str, Any],
    recorder: CycleRecorder,
) -> dict[str, Any]:
    """Fill in a step's payload template.

    ``@step.key`` values are copied from what that step actually sent earlier
    in the same cycle; strings are formatted against ``context``; anything
    else passes through unchanged.
    """
    rendered: dict[str, Any] = {}
    for key, value in step.payload.items():
        ref = parse_reference(value)
        if ref is not None:
            ref_step, ref_key = ref
            sent = recorder.sent_payload(ref_step)
            if sent is None or ref_key not in sent:
                raise PayloadError(
                    f"'{step.name}.{key}' references {value} but '{ref_step}' sent no '{ref_key}'"
                )
            rendered[key] = sent[ref_key]
        elif isinstance(value, str):
            try:
                rendered[key] = value.format_map(context)
            except (KeyError, IndexError, ValueError) as e:
                raise PayloadError(f"Cannot render '{step.name}.{key}': {e!r}") from None
        else:
            rendered[key] = value
    return rendered


def _outcome(step: StepSpec, receipt: Receipt, payload: dict[str, Any]) -> StepOutcome:
    return StepOutcome(
        name=step.name,
        status=StepStatus.SUCCEEDED if receipt.success else StepStatus.FAILED,
        cost=receipt.cost,
        duration_ms=round(receipt.duration_ms, 3),
        error_class=receipt.error_class,
        error_message=receipt.error_message,
        payload=payload,
        tx_hash=receipt.tx_hash,
        state=receipt.state,
    )


def _failed(step: StepSpec, error_class: ErrorClass, message: str, **kwargs) -> StepOutcome:
    return StepOutcome(
        name=step.name,
        status=StepStatus.FAILED,
        error_class=error_class,
        error_message=message,
        **kwargs,
    )


def _skipped(step: StepSpec, state: str | None) -> StepOutcome:
    return StepOutcome(
        name=step.name,
        status=StepStatus.SKIPPED,
        error_message=f"state is {state}, step requires {step.precondition}",
        state=state,
    )


class CycleExecutor:
    """Applies a workflow's steps in order, stopping at the first failure.

    Step-level errors never escape ``run``; they end up in the returned
    ``CycleResult``.
    """

    def __init__(
        self,
        client: RemoteServiceClient,
        state_source: StateSource = StateSource.RECEIPT,
        run_id: str = "",
    ):
        self.client = client
        self.state_source = StateSource(state_source)
        self.run_id = run_id

    async def _current_state(self, entity_id: str, last_known: str | None) -> str:
        if self.state_source == StateSource.RECEIPT and last_known is not None:
            return last_known
        return await self.client.read_state(entity_id)

    def _context(self, cycle_index: int, bindings: Mapping[str, Identity]) -> dict[str, Any]:
        context: dict[str, Any] = {role: identity.address for role, identity in bindings.items()}
        context.update(
            cycle=cycle_index + 1,
            cycle_index=cycle_index,
            entity="",
            run_id=self.run_id,
        )
        return context

    async def run(
        self,
        workflow: WorkflowDefinition,
        bindings: Mapping[str, Identity],
        cycle_index: int = 0,
    ) -> CycleResult:
        recorder = CycleRecorder(
            cycle_index=cycle_index,
            bindings={role: identity.address for role, identity in bindings.items()},
        )
        context = self._context(cycle_index, bindings)

        entity_id = await self._create(workflow, bindings, context, recorder)
        if entity_id is None:
            return recorder.freeze()

        state = recorder.outcomes[-1].state
        for index in range(1, len(workflow)):
            step = workflow.step_at(index)

            if step.precondition is not None:
                try:
                    state = await self._current_state(entity_id, state)
                except RemoteCallError as e:
                    error_class = classify_error(e)
                    recorder.add(_failed(step, error_class, str(e)))
                    recorder.fail(error_class)
                    break

                if state != step.precondition:
                    if workflow.can_fire_from(index + 1, state):
                        logger.debug(f"[{cycle_index}] {step.name} skipped: state {state}")
                        recorder.add(_skipped(step, state))
                        continue
                    for remaining in workflow.steps[index:]:
                        recorder.add(_skipped(remaining, state))
                    recorder.fail(ErrorClass.PRECONDITION_MISMATCH)
                    logger.debug(
                        f"[{cycle_index}] {step.name} needs {step.precondition}, entity is "
                        f"stuck in {state}; remaining steps skipped"
                    )
                    break

            if not await self._invoke(step, entity_id, bindings, context, recorder):
                break
            state = recorder.outcomes[-1].state

        return recorder.freeze()

    async def _create(
        self,
        workflow: WorkflowDefinition,
        bindings: Mapping[str, Identity],
        context: dict[str, Any],
        recorder: CycleRecorder,
    ) -> str | None:
        step = workflow.creation_step
        try:
            payload = render_payload(step, context, recorder)
        except PayloadError as e:
            recorder.add(_failed(step, ErrorClass.UNKNOWN, str(e)))
            recorder.fail(ErrorClass.CREATION_FAILED)
            return None

        entity_id, receipt = await self.client.create(
            bindings[step.role],
            step.method,
            payload,
            value=step.value,
            cost_limit=step.cost_limit,
        )
        outcome = self._checked(step, _outcome(step, receipt, payload))
        recorder.add(outcome)
        if not outcome.success or entity_id is None:
            recorder.fail(ErrorClass.CREATION_FAILED)
            return None

        recorder.entity_id = entity_id
        context["entity"] = entity_id
        return entity_id

    async def _invoke(
        self,
        step: StepSpec,
        entity_id: str,
        bindings: Mapping[str, Identity],
        context: dict[str, Any],
        recorder: CycleRecorder,
    ) -> bool:
        try:
            payload = render_payload(step, context, recorder)
        except PayloadError as e:
            recorder.add(_failed(step, ErrorClass.UNKNOWN, str(e)))
            recorder.fail(ErrorClass.UNKNOWN)
            return False

        receipt = await self.client.invoke(
            entity_id,
            step.method,
            bindings[step.role],
            payload,
            value=step.value,
            cost_limit=step.cost_limit,
        )
        outcome = self._checked(step, _outcome(step, receipt, payload))
        recorder.add(outcome)
        if not outcome.success:
            recorder.fail(outcome.error_class or ErrorClass.UNKNOWN)
            return False
        return True

    def _checked(self, step: StepSpec, outcome: StepOutcome) -> StepOutcome:
        """Fail a successful outcome whose reported state contradicts the postcondition."""
        if (
            outcome.success
            and step.postcondition is not None
            and outcome.state is not None
            and outcome.state != step.postcondition
        ):
            return StepOutcome(
                name=outcome.name,
                status=StepStatus.FAILED,
                cost=outcome.cost,
                duration_ms=outcome.duration_ms,
                error_class=ErrorClass.PRECONDITION_MISMATCH,
                error_message=(
                    f"{step.name} left the entity in {outcome.state}, "
                    f"expected {step.postcondition}"
                ),
                payload=outcome.payload,
                tx_hash=outcome.tx_hash,
                state=outcome.state,
            )
        return outcome
