"""Shared fixtures: small workflows, identity pools and the scripted client."""

import pytest
from fakes import ScriptedClient

from escrowload.client.simulated import SimulatedEscrowClient
from escrowload.identity import IdentityPool
from escrowload.models.config import RunConfig
from escrowload.models.workflow import WorkflowDefinition
from escrowload.workflows.loader import get_workflow


@pytest.fixture
def three_step_workflow():
    """create -> stepA -> stepB, each state declared."""
    return WorkflowDefinition.from_dict(
        {
            "name": "three-step",
            "steps": [
                {"name": "create", "role": "owner", "postcondition": "Created"},
                {
                    "name": "stepA",
                    "role": "owner",
                    "precondition": "Created",
                    "postcondition": "A",
                },
                {
                    "name": "stepB",
                    "role": "owner",
                    "precondition": "A",
                    "postcondition": "B",
                },
            ],
        }
    )


@pytest.fixture
def single_pool():
    """One identity per role used by the small workflows."""
    return IdentityPool.from_dict({"owner": ["0xowner"]})


@pytest.fixture
def scripted_client(three_step_workflow):
    return ScriptedClient(three_step_workflow)


@pytest.fixture
def escrow_workflow():
    return get_workflow("escrow")


@pytest.fixture
def escrow_pool():
    """Three clients, two freelancers: six distinct pairs before a repeat."""
    return IdentityPool.generate(
        {"operator": 1, "client": 3, "freelancer": 2},
        exclusive_roles=["client", "freelancer"],
    )


@pytest.fixture
def simulated_client():
    return SimulatedEscrowClient(seed=7, reject_duplicate_pairs=True)


@pytest.fixture
def quiet_config():
    """Fast, silent run settings."""
    return RunConfig(
        cycle_count=5,
        target_rate=1000.0,
        min_delay_ms=0.0,
        output_dir=None,
        show_progress=False,
    )
