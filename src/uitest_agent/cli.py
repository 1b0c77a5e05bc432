"""
CLI interface using Click.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import click
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from uitest_agent import __version__
from uitest_agent.config import (
    AgentConfig,
    ConfigurationError,
    SecretsManager,
    get_default_config_path,
    load_config,
    save_config,
)
from uitest_agent.hints import load_hint_image
from uitest_agent.logging import get_logger, setup_logging
from uitest_agent.state import HintImage, LoopOutcome, Scenario

console = Console()
logger = get_logger(__name__)

STATUS_STYLES = {
    "success": "green",
    "completed": "green",
    "failure": "red",
    "failed": "red",
    "error": "red",
    "timeout": "yellow",
    "stopped": "yellow",
    "skipped": "dim",
    "pending": "dim",
}


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def load_scenario_entry(
    data: Dict[str, Any],
    default_id: str,
    base_dir: Path,
    extra_hints: Sequence[str] = (),
) -> Tuple[Scenario, List[HintImage]]:
    """Scenario plus its hint images from one YAML mapping."""
    scenario = Scenario.from_dict(data, default_id=default_id)
    if not scenario.description.strip():
        raise click.ClickException(f"Scenario '{scenario.id}' has no description")

    paths = [base_dir / p for p in data.get("hints") or []]
    paths.extend(Path(p) for p in extra_hints)
    hints = []
    for index, path in enumerate(paths):
        if not path.exists():
            raise click.ClickException(f"Hint image not found: {path}")
        hints.append(load_hint_image(path, scenario.id, order_index=index))
    return scenario, hints


def load_scenario_file(
    path: Path, extra_hints: Sequence[str] = ()
) -> Tuple[Scenario, List[HintImage]]:
    """
    Load a single scenario.

    YAML files hold a mapping (title, description or steps, hints); any
    other file is taken as the plain-text description.
    """
    if path.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise click.ClickException(f"Expected a mapping in {path}")
    else:
        data = {"title": path.stem, "description": path.read_text(encoding="utf-8")}
    return load_scenario_entry(data, path.stem, path.parent, extra_hints)


def load_batch_file(path: Path) -> Tuple[List[Scenario], Dict[str, List[HintImage]]]:
    """Load a YAML list of scenarios (bare or under a 'scenarios' key)."""
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or []
    if isinstance(data, dict):
        data = data.get("scenarios") or []
    if not isinstance(data, list):
        raise click.ClickException(f"Expected a list of scenarios in {path}")

    scenarios: List[Scenario] = []
    hints: Dict[str, List[HintImage]] = {}
    for index, entry in enumerate(data, start=1):
        if not isinstance(entry, dict):
            raise click.ClickException(f"Scenario #{index} in {path} is not a mapping")
        scenario, images = load_scenario_entry(entry, f"scenario-{index}", path.parent)
        if scenario.id in hints:
            raise click.ClickException(f"Duplicate scenario id: {scenario.id}")
        scenarios.append(scenario)
        hints[scenario.id] = images
    return scenarios, hints


def _load_config_or_exit(config: Optional[str]) -> AgentConfig:
    try:
        return load_config(config)
    except ConfigurationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(2)


def _build_collaborators(agent_config: AgentConfig):
    """Desktop backend and Anthropic model for a live run."""
    from uitest_agent.backend.desktop import DesktopBackend
    from uitest_agent.model.anthropic_client import AnthropicReasoningModel
    from uitest_agent.safety import StopSwitch

    try:
        api_key = SecretsManager.get_api_key(agent_config.model.api_key_env)
    except ConfigurationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(2)

    stop_switch = StopSwitch(hotkey=agent_config.safety.stop_hotkey)
    backend = DesktopBackend(stop_switch=stop_switch)
    model = AnthropicReasoningModel(agent_config.model, api_key=api_key)
    return backend, model, stop_switch


def _print_outcome(scenario: Scenario, outcome: LoopOutcome) -> None:
    result = outcome.test_result
    lines = [
        f"Status: {_styled(result.status.value)}",
        f"Iterations: {outcome.iterations}",
        f"Actions: {len(outcome.executed_actions)} "
        f"({outcome.completed_action_count} succeeded)",
        f"Duration: {result.duration_ms / 1000:.1f}s",
    ]
    if result.failure_reason:
        lines.append(f"Reason: {result.failure_reason.value}")
    if result.failure_details:
        lines.append(f"Details: {result.failure_details}")
    if outcome.last_successful_action:
        lines.append(f"Last successful action: {outcome.last_successful_action}")
    if result.result_output and result.result_output.message:
        lines.append(f"\n{result.result_output.message}")
    console.print(Panel("\n".join(lines), title=scenario.title, expand=False))


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def main(ctx: click.Context, version: bool, verbose: bool) -> None:
    """UI test agent - runs natural-language UI test scenarios."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    if version:
        console.print(f"uitest-agent v{__version__}")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


def _setup_logging(ctx: click.Context, agent_config: AgentConfig) -> None:
    level = "DEBUG" if ctx.obj.get("verbose") else agent_config.logging.level
    log_file = Path(agent_config.logging.log_file) if agent_config.logging.log_file else None
    setup_logging(level=level, log_file=log_file)


@main.command()
@click.argument("scenario_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--hint", "hints", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Hint image of a UI element (repeatable, in order)")
@click.option("--max-iterations", "-n", type=int, help="Maximum iterations")
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
@click.pass_context
def run(
    ctx: click.Context,
    scenario_file: Path,
    hints: Tuple[str, ...],
    max_iterations: Optional[int],
    config: Optional[str],
) -> None:
    """Run one scenario on the local desktop."""
    agent_config = _load_config_or_exit(config)
    if max_iterations:
        agent_config.loop.max_iterations = max_iterations
    _setup_logging(ctx, agent_config)

    scenario, hint_images = load_scenario_file(scenario_file, hints)
    backend, model, stop_switch = _build_collaborators(agent_config)

    from uitest_agent.orchestrator import AgentLoop

    loop = AgentLoop(
        backend,
        model,
        agent_config,
        on_log=lambda line: console.print(f"[dim]{line}[/dim]"),
    )

    console.print(
        f"[bold]{scenario.title}[/bold] "
        f"(press {agent_config.safety.stop_hotkey} to stop)"
    )
    try:
        stop_switch.start()
        outcome = asyncio.run(loop.run(scenario, hint_images))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        sys.exit(130)
    finally:
        stop_switch.stop()

    _print_outcome(scenario, outcome)
    sys.exit(0 if outcome.success else 1)


@main.command()
@click.argument("batch_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--stop-on-failure", is_flag=True, help="Skip remaining scenarios after a failure")
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
@click.pass_context
def batch(
    ctx: click.Context,
    batch_file: Path,
    stop_on_failure: bool,
    config: Optional[str],
) -> None:
    """Run a YAML list of scenarios one after another."""
    agent_config = _load_config_or_exit(config)
    if stop_on_failure:
        agent_config.runner.stop_on_failure = True
    _setup_logging(ctx, agent_config)

    scenarios, hint_images = load_batch_file(batch_file)
    if not scenarios:
        console.print("[yellow]No scenarios found.[/yellow]")
        return

    backend, model, stop_switch = _build_collaborators(agent_config)

    from uitest_agent.runner import ScenarioRunner

    runner = ScenarioRunner(
        backend,
        model,
        agent_config,
        on_scenario_start=lambda s: console.print(f"\n[bold]> {s.title}[/bold]"),
        on_scenario_complete=lambda s, o: console.print(f"  {_styled(s.status.value)}"),
    )

    try:
        stop_switch.start()
        result = asyncio.run(runner.run(scenarios, hint_images))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        sys.exit(130)
    finally:
        stop_switch.stop()

    table = Table(title=f"Batch results ({batch_file.name})")
    table.add_column("Scenario", style="cyan")
    table.add_column("Status")
    table.add_column("Iterations", justify="right")
    table.add_column("Details")
    for scenario in result.scenarios:
        outcome = result.outcomes.get(scenario.id)
        table.add_row(
            scenario.title,
            _styled(scenario.status.value),
            str(outcome.iterations) if outcome else "-",
            scenario.error or "",
        )
    console.print(table)
    console.print(
        f"\n[green]{result.passed} passed[/green], [red]{result.failed} failed[/red], "
        f"{result.skipped} skipped"
    )
    sys.exit(0 if result.all_passed else 1)


@main.command("config")
@click.option("--init", "init_config", is_flag=True, help="Write a default config file")
@click.option("--show", is_flag=True, help="Show the effective configuration")
@click.option("--force", is_flag=True, help="Overwrite an existing file with --init")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config file")
def config_cmd(init_config: bool, show: bool, force: bool, config_path: Optional[str]) -> None:
    """Manage the configuration file."""
    path = Path(config_path) if config_path else get_default_config_path()

    if init_config:
        if path.exists() and not force:
            console.print(f"[yellow]Config already exists: {path}[/yellow]")
            console.print("Use --force to overwrite.")
            return
        written = save_config(AgentConfig(), str(path))
        console.print(f"[green]Config written to {written}[/green]")
        return

    agent_config = _load_config_or_exit(config_path)

    if show:
        console.print(Panel(
            yaml.safe_dump(agent_config.model_dump(), default_flow_style=False, sort_keys=False),
            title=str(path),
            expand=False,
        ))

    table = Table(title="Secrets", show_header=False)
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    for name, status in SecretsManager.get_status().items():
        table.add_row(name, status)
    console.print(table)

    if not show:
        console.print(f"\nConfig file: {path} ({'exists' if path.exists() else 'not created'})")
        console.print("[dim]Use --show to print the effective values[/dim]")


if __name__ == "__main__":
    main()
