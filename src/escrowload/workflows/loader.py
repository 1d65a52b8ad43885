import logging
from pathlib import Path

import yaml

from escrowload.errors import DefinitionError
from escrowload.models.workflow import WorkflowDefinition

WORKFLOWS_DIR = Path(__file__).parent

logger = logging.getLogger(__name__)


def load_workflow(path: Path) -> WorkflowDefinition:
    with path.open() as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise DefinitionError(f"Workflow file {path} must contain a mapping")
    return WorkflowDefinition.from_dict(data)


def discover_workflows(base_dir: Path | None = None) -> dict[str, Path]:
    if base_dir is None:
        base_dir = WORKFLOWS_DIR

    if not base_dir.exists():
        return {}

    workflows = {}

    for yaml_file in sorted(base_dir.rglob("*.yaml")):
        try:
            with yaml_file.open() as f:
                data = yaml.safe_load(f)
            if isinstance(data, dict) and "name" in data and "steps" in data:
                workflows[data["name"]] = yaml_file
        except (OSError, yaml.YAMLError) as e:
            logger.debug(f"Ignoring unreadable workflow file {yaml_file}: {e}")
            continue

    return workflows


def load_all_workflows(base_dir: Path | None = None) -> dict[str, WorkflowDefinition]:
    paths = discover_workflows(base_dir)
    return {name: load_workflow(path) for name, path in paths.items()}


def get_workflow(name: str, base_dir: Path | None = None) -> WorkflowDefinition:
    """Load a bundled workflow by name, or any workflow file by path."""
    candidate = Path(name)
    if candidate.suffix in (".yaml", ".yml") and candidate.exists():
        return load_workflow(candidate)

    paths = discover_workflows(base_dir)

    if name not in paths:
        available = ", ".join(sorted(paths.keys()))
        raise ValueError(f"Unknown workflow: '{name}'. Available: {available}")

    return load_workflow(paths[name])


def list_workflows(base_dir: Path | None = None) -> dict[str, str]:
    workflows = load_all_workflows(base_dir)
    return {name: workflow.description for name, workflow in workflows.items()}
