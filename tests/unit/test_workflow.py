import pytest

from escrowload.errors import DefinitionError
from escrowload.models.workflow import StepSpec, WorkflowDefinition, parse_reference


def _workflow(*steps):
    return WorkflowDefinition(name="wf", steps=tuple(steps))


class TestStepSpec:
    def test_method_defaults_to_name(self):
        assert StepSpec(name="deliverWork", role="freelancer").method == "deliverWork"

    def test_missing_role_rejected(self):
        with pytest.raises(DefinitionError):
            StepSpec.from_dict({"name": "x"})

    def test_negative_value_rejected(self):
        with pytest.raises(DefinitionError):
            StepSpec(name="pay", role="client", value=-1)

    def test_references(self):
        step = StepSpec(
            name="approve",
            role="client",
            payload={"deliverable": "@deliver.deliverable", "note": "plain"},
        )
        assert step.references() == [("deliver", "deliverable")]


class TestParseReference:
    def test_valid(self):
        assert parse_reference("@deliverWork.deliverable") == ("deliverWork", "deliverable")

    @pytest.mark.parametrize("value", ["deliverWork.deliverable", "@deliverWork", "@.x", 42])
    def test_not_a_reference(self, value):
        assert parse_reference(value) is None


class TestValidate:
    def test_bundled_escrow_is_valid(self, escrow_workflow):
        escrow_workflow.validate({"operator", "client", "freelancer"})
        assert escrow_workflow.step_names == [
            "createContract",
            "authenticate",
            "deliverWork",
            "approveDeliverable",
            "makeDirectPayment",
            "completeContract",
        ]

    def test_three_step_is_valid(self, three_step_workflow):
        three_step_workflow.validate({"owner"})

    def test_empty_workflow(self):
        with pytest.raises(DefinitionError, match="no steps"):
            _workflow().validate(set())

    def test_duplicate_step_names(self):
        wf = _workflow(
            StepSpec(name="create", role="a", postcondition="S1"),
            StepSpec(name="create", role="a", precondition="S1"),
        )
        with pytest.raises(DefinitionError, match="used twice"):
            wf.validate({"a"})

    def test_creation_step_cannot_have_precondition(self):
        wf = _workflow(StepSpec(name="create", role="a", precondition="S0"))
        with pytest.raises(DefinitionError, match="precondition"):
            wf.validate({"a"})

    def test_broken_chain(self):
        wf = _workflow(
            StepSpec(name="create", role="a", postcondition="S1"),
            StepSpec(name="next", role="a", precondition="S2", postcondition="S3"),
        )
        with pytest.raises(DefinitionError, match="chain broken"):
            wf.validate({"a"})

    def test_loop_rejected(self):
        wf = _workflow(
            StepSpec(name="create", role="a", postcondition="S1"),
            StepSpec(name="forward", role="a", precondition="S1", postcondition="S2"),
            StepSpec(name="back", role="a", precondition="S2", postcondition="S1"),
        )
        with pytest.raises(DefinitionError, match="reached twice"):
            wf.validate({"a"})

    def test_undeclared_states_chain_freely(self):
        wf = _workflow(
            StepSpec(name="create", role="a"),
            StepSpec(name="poke", role="a"),
            StepSpec(name="finish", role="a", precondition="Done"),
        )
        wf.validate({"a"})

    def test_missing_role(self, three_step_workflow):
        with pytest.raises(DefinitionError, match="owner"):
            three_step_workflow.validate({"someone-else"})

    def test_unknown_reference(self):
        wf = _workflow(
            StepSpec(name="create", role="a"),
            StepSpec(name="approve", role="a", payload={"d": "@deliver.d"}),
        )
        with pytest.raises(DefinitionError, match="unknown step"):
            wf.validate({"a"})

    def test_forward_reference(self):
        wf = _workflow(
            StepSpec(name="create", role="a", payload={"d": "@deliver.d"}),
            StepSpec(name="deliver", role="a", payload={"d": "x"}),
        )
        with pytest.raises(DefinitionError, match="has not run yet"):
            wf.validate({"a"})


class TestQueries:
    def test_step_at(self, three_step_workflow):
        assert three_step_workflow.step_at(1).name == "stepA"
        with pytest.raises(IndexError):
            three_step_workflow.step_at(3)

    def test_roles(self, escrow_workflow):
        assert escrow_workflow.roles == {"operator", "client", "freelancer"}

    def test_can_fire_from(self, three_step_workflow):
        assert three_step_workflow.can_fire_from(2, "A")
        assert not three_step_workflow.can_fire_from(2, "Created")
        assert not three_step_workflow.can_fire_from(3, "B")

    def test_dict_round_trip(self, escrow_workflow):
        assert WorkflowDefinition.from_dict(escrow_workflow.to_dict()) == escrow_workflow
