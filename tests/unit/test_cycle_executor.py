import asyncio

import pytest
from fakes import ScriptedClient, rejected

from escrowload.client.receipt import ErrorClass, Receipt
from escrowload.errors import RemoteCallError
from escrowload.executor.cycle import CycleExecutor, PayloadError, render_payload
from escrowload.executor.result import CycleRecorder, StepOutcome, StepStatus
from escrowload.models.config import StateSource
from escrowload.models.workflow import StepSpec, WorkflowDefinition


def _statuses(result):
    return [(o.name, o.status) for o in result.outcomes]


@pytest.mark.asyncio
async def test_all_steps_succeed(scripted_client, three_step_workflow, single_pool):
    result = await CycleExecutor(scripted_client).run(three_step_workflow, single_pool.assign(0))

    assert result.success
    assert result.failure_class is None
    assert result.entity_id == "entity-1"
    assert result.total_cost == 300
    assert _statuses(result) == [
        ("create", StepStatus.SUCCEEDED),
        ("stepA", StepStatus.SUCCEEDED),
        ("stepB", StepStatus.SUCCEEDED),
    ]
    assert result.bindings == {"owner": "0xowner"}


@pytest.mark.asyncio
async def test_fail_fast(scripted_client, three_step_workflow, single_pool):
    scripted_client.script("stepA", rejected(ErrorClass.AUTHORIZATION_REJECTED, "not the client"))

    result = await CycleExecutor(scripted_client).run(three_step_workflow, single_pool.assign(0))

    assert not result.success
    assert result.failure_class == ErrorClass.AUTHORIZATION_REJECTED
    assert _statuses(result) == [("create", StepStatus.SUCCEEDED), ("stepA", StepStatus.FAILED)]
    assert result.outcome("stepB") is None
    assert scripted_client.calls_to("stepB") == []


@pytest.mark.asyncio
async def test_creation_failure(scripted_client, three_step_workflow, single_pool):
    scripted_client.script("create", RemoteCallError("out of gas", code="OUT_OF_GAS"))

    result = await CycleExecutor(scripted_client).run(three_step_workflow, single_pool.assign(0))

    assert not result.success
    assert result.entity_id is None
    assert result.failure_class == ErrorClass.CREATION_FAILED
    assert len(result.outcomes) == 1
    assert result.outcomes[0].error_class == ErrorClass.INSUFFICIENT_RESOURCES
    assert scripted_client.calls_to("stepA") == []


@pytest.mark.asyncio
async def test_remote_state_never_matches(scripted_client, three_step_workflow, single_pool):
    scripted_client.remote_state = "Frozen"
    executor = CycleExecutor(scripted_client, state_source=StateSource.REMOTE)

    result = await executor.run(three_step_workflow, single_pool.assign(0))

    assert not result.success
    assert result.failure_class == ErrorClass.PRECONDITION_MISMATCH
    assert _statuses(result) == [
        ("create", StepStatus.SUCCEEDED),
        ("stepA", StepStatus.SKIPPED),
        ("stepB", StepStatus.SKIPPED),
    ]
    assert result.total_cost == 100
    assert "requires Created" in result.outcome("stepA").error_message


@pytest.mark.asyncio
async def test_benign_skip_continues(single_pool):
    # "cancel" only applies from Disputed; the entity is never disputed.
    workflow = WorkflowDefinition.from_dict(
        {
            "name": "optional-step",
            "steps": [
                {"name": "create", "role": "owner", "postcondition": "Open"},
                {"name": "cancel", "role": "owner", "precondition": "Disputed"},
                {"name": "close", "role": "owner", "precondition": "Open", "postcondition": "Closed"},
            ],
        }
    )
    client = ScriptedClient(workflow)

    result = await CycleExecutor(client).run(workflow, single_pool.assign(0))

    assert result.success
    assert _statuses(result) == [
        ("create", StepStatus.SUCCEEDED),
        ("cancel", StepStatus.SKIPPED),
        ("close", StepStatus.SUCCEEDED),
    ]


@pytest.mark.asyncio
async def test_receipt_without_state_falls_back_to_read(three_step_workflow, single_pool):
    client = ScriptedClient(three_step_workflow)
    client.script("create", Receipt(success=True, cost=100, duration_ms=1.0))
    reads = []

    async def read_state(entity_id):
        reads.append(entity_id)
        return "Created"

    client._read_state = read_state
    result = await CycleExecutor(client).run(three_step_workflow, single_pool.assign(0))

    assert result.success
    assert reads == ["entity-1"]


@pytest.mark.asyncio
async def test_state_read_failure_recorded_on_step(scripted_client, three_step_workflow, single_pool):
    async def broken(entity_id):
        raise RemoteCallError("request timed out")

    scripted_client._read_state = broken
    executor = CycleExecutor(scripted_client, state_source=StateSource.REMOTE)

    result = await executor.run(three_step_workflow, single_pool.assign(0))

    assert result.failure_class == ErrorClass.REMOTE_TIMEOUT
    failed = result.failed_step
    assert failed.name == "stepA"
    assert failed.error_class == ErrorClass.REMOTE_TIMEOUT


@pytest.mark.asyncio
async def test_postcondition_contradiction_fails_step(scripted_client, three_step_workflow, single_pool):
    scripted_client.script("stepA", Receipt(success=True, cost=100, duration_ms=1.0, state="Created"))

    result = await CycleExecutor(scripted_client).run(three_step_workflow, single_pool.assign(0))

    failed = result.failed_step
    assert failed.name == "stepA"
    assert failed.error_class == ErrorClass.PRECONDITION_MISMATCH
    assert failed.cost == 100
    assert result.failure_class == ErrorClass.PRECONDITION_MISMATCH


@pytest.mark.asyncio
async def test_call_timeout_becomes_failed_step(three_step_workflow, single_pool):
    class HangsOnStepB(ScriptedClient):
        async def _invoke(self, entity_id, method, caller, params, value, cost_limit):
            if method == "stepB":
                await asyncio.sleep(5)
            return await super()._invoke(entity_id, method, caller, params, value, cost_limit)

    client = HangsOnStepB(three_step_workflow, call_timeout=0.05)

    result = await CycleExecutor(client).run(three_step_workflow, single_pool.assign(0))

    assert result.failure_class == ErrorClass.REMOTE_TIMEOUT
    assert result.failed_step.name == "stepB"
    assert result.outcome("stepA").success


@pytest.mark.asyncio
async def test_escrow_payloads(escrow_workflow, escrow_pool):
    client = ScriptedClient(escrow_workflow)
    executor = CycleExecutor(client, run_id="run42")

    result = await executor.run(escrow_workflow, escrow_pool.assign(4), cycle_index=4)

    assert result.success
    _, caller, create_params = client.calls_to("createContract")[0]
    assert caller == escrow_pool.identities("operator")[0].address
    assert create_params["client"] == escrow_pool.identities("client")[1].address
    assert create_params["freelancer"] == escrow_pool.identities("freelancer")[0].address
    assert create_params["title"] == "Load test contract 5 (run42)"

    delivered = client.calls_to("deliverWork")[0][2]["deliverable"]
    approved = client.calls_to("approveDeliverable")[0][2]["deliverable"]
    assert delivered == "https://example.com/delivery-5-run42"
    assert approved == delivered
    assert result.outcome("approveDeliverable").payload["deliverable"] == delivered


class TestRenderPayload:
    def test_reference_needs_successful_source(self):
        step = StepSpec(name="approve", role="client", payload={"d": "@deliver.d"})
        recorder = CycleRecorder(cycle_index=0, bindings={})
        recorder.add(
            StepOutcome(name="deliver", status=StepStatus.FAILED, payload={"d": "x"})
        )
        with pytest.raises(PayloadError):
            render_payload(step, {}, recorder)

    def test_non_strings_pass_through(self):
        step = StepSpec(name="pay", role="client", payload={"amount": 10**18, "tags": ["a"]})
        rendered = render_payload(step, {}, CycleRecorder(cycle_index=0, bindings={}))
        assert rendered == {"amount": 10**18, "tags": ["a"]}

    def test_unknown_placeholder(self):
        step = StepSpec(name="create", role="a", payload={"who": "{nobody}"})
        with pytest.raises(PayloadError):
            render_payload(step, {}, CycleRecorder(cycle_index=0, bindings={}))


@pytest.mark.asyncio
async def test_bad_template_fails_creation(single_pool):
    workflow = WorkflowDefinition(
        name="bad",
        steps=(StepSpec(name="create", role="owner", payload={"x": "{missing}"}),),
    )
    client = ScriptedClient(workflow)

    result = await CycleExecutor(client).run(workflow, single_pool.assign(0))

    assert result.failure_class == ErrorClass.CREATION_FAILED
    assert client.calls == []
