"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from escrowload.client.deployment import load_deployment
from escrowload.client.factory import ClientFactory
from escrowload.errors import ConfigError, StartupError
from escrowload.executor.runner import LoadRunner, print_summary
from escrowload.identity import IdentityPool
from escrowload.models.config import RunConfig, RunFile, StateSource, load_run_file
from escrowload.models.workflow import WorkflowDefinition
from escrowload.sink import ResultSink
from escrowload.workflows.loader import get_workflow, list_workflows

console = Console()

# Three clients and two freelancers give six distinct pairs per rotation.
DEFAULT_IDENTITY_COUNTS = {"operator": 1, "client": 3, "freelancer": 2}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="escrowload",
        description="Drive an escrow contract through its lifecycle under load",
    )
    parser.add_argument("--workflow", default="escrow", help="Bundled workflow name or YAML path")
    parser.add_argument("--config", type=Path, help="YAML run file (run options + identities)")
    parser.add_argument(
        "--count",
        type=int,
        default=os.environ.get("LOAD_TEST_COUNT"),
        help="Number of cycles (env: LOAD_TEST_COUNT)",
    )
    parser.add_argument(
        "--rate",
        type=float,
        default=os.environ.get("TARGET_TPS"),
        help="Target cycle starts per second (env: TARGET_TPS)",
    )
    parser.add_argument("--concurrency", type=int, help="Cycles allowed in flight at once")
    parser.add_argument("--timeout", type=float, help="Per-call finality timeout in seconds")
    parser.add_argument("--min-delay-ms", type=float, help="Lower bound of the inter-cycle delay")
    parser.add_argument(
        "--state-source",
        choices=[s.value for s in StateSource],
        help="Trust receipts for state, or always read it remotely",
    )
    parser.add_argument("--output-dir", help="Directory for the results JSON")
    parser.add_argument("--no-save", action="store_true", help="Do not write a results file")
    parser.add_argument("--no-progress", action="store_true", help="Disable the live table")
    parser.add_argument("--deployment", type=Path, help="Deployment metadata JSON")
    parser.add_argument(
        "--client",
        help="Custom client factory as 'package.module:callable' (default: simulated escrow)",
    )
    parser.add_argument(
        "--identities",
        action="append",
        default=[],
        metavar="ROLE=N",
        help="Generate N synthetic identities for ROLE (simulated runs)",
    )
    parser.add_argument(
        "--exclusive-roles",
        help="Comma-separated roles whose addresses two in-flight cycles may not share",
    )
    parser.add_argument("--latency-ms", type=float, default=0.0, help="Simulated call latency")
    parser.add_argument("--jitter-ms", type=float, default=0.0, help="Simulated latency jitter")
    parser.add_argument(
        "--fault",
        action="append",
        default=[],
        metavar="METHOD=RATE",
        help="Simulated fault probability for a contract method",
    )
    parser.add_argument("--seed", type=int, default=0, help="Seed for simulated latency/faults")
    parser.add_argument("--list-workflows", action="store_true", help="List bundled workflows")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("ESCROWLOAD_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _parse_pairs(items: list[str], cast, flag: str) -> dict:
    parsed = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ConfigError(f"{flag} expects KEY=VALUE, got '{item}'")
        try:
            parsed[key.strip()] = cast(value)
        except ValueError:
            raise ConfigError(f"{flag} has an invalid value in '{item}'") from None
    return parsed


def build_run_config(args: argparse.Namespace, run_file: RunFile) -> RunConfig:
    values = asdict(run_file.run)
    overrides = {
        "cycle_count": int(args.count) if args.count is not None else None,
        "target_rate": float(args.rate) if args.rate is not None else None,
        "concurrency": args.concurrency,
        "call_timeout_seconds": args.timeout,
        "min_delay_ms": args.min_delay_ms,
        "state_source": args.state_source,
        "output_dir": args.output_dir,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    if args.no_save:
        values["output_dir"] = None
    if args.no_progress:
        values["show_progress"] = False
    return RunConfig(**values)


def build_pool(
    args: argparse.Namespace,
    run_file: RunFile,
    workflow: WorkflowDefinition,
) -> IdentityPool:
    if args.exclusive_roles:
        exclusive = [r.strip() for r in args.exclusive_roles.split(",") if r.strip()]
    else:
        # The creating identity only talks to the factory, so cycles may share it.
        exclusive = sorted(workflow.roles - {workflow.creation_step.role})

    if run_file.identities and not args.identities:
        return IdentityPool.from_dict(run_file.identities, exclusive_roles=exclusive)

    counts = {role: DEFAULT_IDENTITY_COUNTS.get(role, 1) for role in workflow.roles}
    counts.update(_parse_pairs(args.identities, int, "--identities"))
    return IdentityPool.generate(counts, exclusive_roles=exclusive)


def print_workflows() -> None:
    table = Table(title="Bundled workflows")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    for name, description in sorted(list_workflows().items()):
        table.add_row(name, description)
    console.print(table)


def main(argv: list[str] | None = None) -> int:
    try:
        args = parse_args(argv)
    except SystemExit as e:
        return int(e.code or 0)
    setup_logging(args.log_level)

    if args.list_workflows:
        print_workflows()
        return 0

    try:
        run_file = load_run_file(args.config) if args.config else RunFile()
        config = build_run_config(args, run_file)
        workflow_ref = args.workflow if args.workflow != "escrow" else (run_file.workflow or "escrow")
        workflow = get_workflow(workflow_ref)
        pool = build_pool(args, run_file, workflow)

        deployment_path = args.deployment or (Path(run_file.deployment) if run_file.deployment else None)
        deployment = load_deployment(deployment_path) if deployment_path else {}
        factory = ClientFactory(deployment, call_timeout=config.call_timeout_seconds)
        if args.client:
            client = factory.create_from_path(args.client)
        else:
            client = factory.create_simulated(
                latency_ms=args.latency_ms,
                jitter_ms=args.jitter_ms,
                seed=args.seed,
                failure_rates=_parse_pairs(args.fault, float, "--fault"),
            )
    except (StartupError, ValueError, FileNotFoundError) as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        return 1

    sink = ResultSink(Path(config.output_dir)) if config.output_dir else None
    runner = LoadRunner(client, config=config, sink=sink)

    console.print(f"[bold blue]Starting load test: workflow '{workflow.name}'[/bold blue]")
    console.print(
        f"[dim]{config.cycle_count} cycles, target {config.target_rate:g}/s, "
        f"interval {1000 / config.target_rate:.0f}ms, concurrency {config.concurrency}[/dim]"
    )

    try:
        report = asyncio.run(runner.execute_with_signals(workflow, pool))
    except StartupError as e:
        console.print(f"[bold red]Startup failed:[/bold red] {e}")
        return 1
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        return 130

    print_summary(report, target_rate=config.target_rate)
    if runner.report_path is not None:
        console.print(f"\n[dim]Results saved to {runner.report_path}[/dim]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
