import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from kubenode.config import DEFAULT_ENVIRONMENT_FILE, NodeConfig, load_environment
from kubenode.engine.checkpoint import CheckpointStore
from kubenode.engine.executor import RunReport, StepStatus
from kubenode.engine.probe import StateProbe
from kubenode.engine.versions import VersionSpecifier, resolve, upstream_version
from kubenode.errors import CommandError, GoldenImageError, PreconditionError, VersionNotFound
from kubenode.golden_image import GoldenImage
from kubenode.identity import read_identity
from kubenode.logging import setup_logging
from kubenode.orchestrator import Orchestrator
from kubenode.steps import STEP_NAMES
from kubenode.system.host import HostSystem
from kubenode.verify import CheckStatus, verify_node

app = typer.Typer(help="Provision this host into a Kubernetes node.")
firstboot_app = typer.Typer(help="First-boot tasks run on each clone of a golden image.")
app.add_typer(firstboot_app, name="firstboot")
console = Console()
logger = logging.getLogger("kubenode.cli")

STATUS_STYLES = {
    StepStatus.COMPLETED: "green",
    StepStatus.SKIPPED: "cyan",
    StepStatus.FAILED: "red",
    StepStatus.FAILED_OPTIONAL: "yellow",
    CheckStatus.PASS: "green",
    CheckStatus.FAIL: "red",
    CheckStatus.WARN: "yellow",
}


class CliState:
    debug: bool = False
    config_path: Optional[Path] = None


state = CliState()


def load_config(env_file: Optional[str] = DEFAULT_ENVIRONMENT_FILE) -> NodeConfig:
    """Load configuration, exiting with status 1 if it is invalid."""
    if env_file:
        load_environment(env_file)
    try:
        return NodeConfig.load(state.config_path)
    except (ValidationError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)


def configure_logging(config: NodeConfig) -> None:
    log = config.logging
    setup_logging(state.debug, log.level, log.file, log.max_size_mb, log.backup_count)


def require_root(host: HostSystem) -> None:
    if not host.is_root():
        logger.error("FATAL: This command must be run as root")
        raise typer.Exit(1)


def print_run_report(report: RunReport) -> None:
    table = Table(title="Bootstrap steps")
    table.add_column("Step")
    table.add_column("Result")
    table.add_column("Details")
    for outcome in report.outcomes:
        style = STATUS_STYLES[outcome.status]
        details = outcome.error or (f"completed at {outcome.completed_at}" if outcome.completed_at else "")
        if outcome.warnings:
            details += f" ({len(outcome.warnings)} warning(s))"
        table.add_row(outcome.name, f"[{style}]{outcome.status.value}[/{style}]", details)
    console.print(table)
    for warning in report.warnings:
        console.print(f"[yellow]WARN[/yellow] {warning}")


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a YAML configuration file"),
):
    """kubenode - idempotent, resumable Kubernetes node bootstrap."""
    state.debug = debug
    state.config_path = config
    setup_logging(debug)
    if debug:
        logger.debug("Debug mode enabled")


@app.command()
def run(
    env_file: str = typer.Option(DEFAULT_ENVIRONMENT_FILE, "--env-file", help="KEY=value file loaded before configuration"),
):
    """Run every pending bootstrap step (requires root)."""
    config = load_config(env_file)
    log = config.logging
    configure_logging(config)

    console.rule("[bold]K8S NODE BOOTSTRAP - STARTING")
    try:
        report = Orchestrator(config, host=HostSystem()).run()
    except PreconditionError as e:
        logger.error(f"FATAL: {e}")
        raise typer.Exit(1)

    print_run_report(report)
    if not report.success:
        raise typer.Exit(1)
    console.rule("[bold]K8S NODE BOOTSTRAP - FINISHED")
    if log.file:
        console.print(f"Log: {log.file}")
    console.print("Next steps:")
    console.print("  1. Verify node: kubenode verify")
    console.print("  2. Reboot, then join: kubeadm join <control-plane-ip>:6443 --token <token>")


@app.command()
def status():
    """Show which steps have completed and when."""
    config = load_config()
    store = CheckpointStore(config.checkpoint_dir)
    table = Table(title=f"Checkpoints in {store.root}")
    table.add_column("Step")
    table.add_column("Completed at")
    for name in STEP_NAMES:
        completed_at = store.completed_at(name)
        if completed_at:
            table.add_row(name, f"[green]{completed_at}[/green]")
        elif name == "step5-monitoring" and not config.enable_monitoring:
            table.add_row(name, "[dim]disabled[/dim]")
        else:
            table.add_row(name, "[yellow]pending[/yellow]")
    console.print(table)

    unknown = [cp for cp in store.list() if cp.step_name not in STEP_NAMES]
    for checkpoint in unknown:
        console.print(f"[dim]Unknown checkpoint {checkpoint.step_name} ({checkpoint.completed_at})[/dim]")


@app.command()
def clear(
    step: Optional[str] = typer.Argument(None, help="Step whose checkpoint is removed"),
    all_steps: bool = typer.Option(False, "--all", help="Remove every checkpoint"),
):
    """Delete checkpoints so that steps run again on the next run."""
    if bool(step) == all_steps:
        console.print("[red]Give exactly one of STEP or --all[/red]")
        raise typer.Exit(2)

    store = CheckpointStore(load_config().checkpoint_dir)
    if all_steps:
        cleared = store.clear_all()
        console.print(f"Cleared {cleared} checkpoint(s)")
        return

    if step not in STEP_NAMES:
        logger.warning(f"{step} is not a known step name")
    try:
        removed = store.clear(step)
    except (ValueError, OSError) as e:
        logger.error(f"Cannot clear checkpoint {step}: {e}")
        raise typer.Exit(1)
    if removed:
        console.print(f"Cleared checkpoint {step}")
    else:
        console.print(f"No checkpoint for {step}")


@app.command()
def verify():
    """Check the provisioned state without changing anything."""
    config = load_config()
    report = verify_node(config, StateProbe(HostSystem()))

    table = Table(title="Node verification")
    table.add_column("Section")
    table.add_column("Result")
    table.add_column("Check")
    for result in report.results:
        style = STATUS_STYLES[result.status]
        table.add_row(result.section, f"[{style}]{result.status.value}[/{style}]", result.message)
    console.print(table)
    counts = report.counts
    console.print(f"PASS: {counts['PASS']}  FAIL: {counts['FAIL']}  WARN: {counts['WARN']}")
    if not report.passed:
        raise typer.Exit(1)


@app.command()
def identity():
    """Print the node's product UUID, MAC addresses and deterministic ID."""
    node = read_identity()
    console.print(f"Product UUID: {node.product_uuid or 'unknown'}")
    for iface, mac in node.macs.items():
        console.print(f"  {iface}: {mac}")
    console.print(f"Node ID (deterministic): {node.node_id or 'unavailable'}")
    for warning in node.warnings:
        console.print(f"[yellow]WARNING[/yellow] {warning}")


@app.command("resolve-version")
def resolve_version(
    spec: str = typer.Argument(..., help="Version specifier, e.g. 1.28 or 1.28.3"),
    package: str = typer.Option("kubeadm", help="Package whose repository versions are searched"),
):
    """Resolve a version specifier against the configured package repository."""
    try:
        specifier = VersionSpecifier.parse(spec)
        version = resolve(specifier, HostSystem().available_versions(package))
    except (ValueError, VersionNotFound) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(f"{specifier} -> {version} (upstream {upstream_version(version)})")


@app.command("golden-image")
def golden_image(
    kubenode_bin: Optional[str] = typer.Option(
        None, "--kubenode-bin", help="kubenode executable the first-boot units run (default: the one on PATH)"
    ),
):
    """Install the post-clone first-boot bundle before capturing this node as a template."""
    configure_logging(load_config())
    host = HostSystem()
    require_root(host)
    try:
        warnings = GoldenImage(host).install(kubenode_bin)
    except (GoldenImageError, CommandError, OSError) as e:
        logger.error(f"FATAL: {e}")
        raise typer.Exit(1)

    for warning in warnings:
        console.print(f"[yellow]WARN[/yellow] {warning}")
    console.rule("[bold]Golden image bundle installed")
    console.print("Enabled on first boot: firstboot-reset.service, firstboot-hostname.service")
    console.print("To enable auto-join:")
    console.print("  1. Put your kubeadm join command in /etc/kubeadm_join_cmd")
    console.print("  2. Run: systemctl enable kubeadm-join.service")
    console.print("  3. Capture the template; clones join on first boot")


def run_firstboot_task(task) -> None:
    configure_logging(load_config())
    host = HostSystem()
    require_root(host)
    try:
        task(GoldenImage(host))
    except (GoldenImageError, CommandError, OSError) as e:
        logger.error(f"FATAL: {e}")
        raise typer.Exit(1)


@firstboot_app.command("reset")
def firstboot_reset():
    """Regenerate SSH host keys and machine-id, reset kubeadm state and network rules."""
    run_firstboot_task(lambda golden: golden.reset())


@firstboot_app.command("hostname")
def firstboot_hostname():
    """Set the hostname from the primary interface's MAC address."""
    def assign(golden: GoldenImage) -> None:
        console.print(f"Hostname set to: {golden.assign_hostname()}")
    run_firstboot_task(assign)


@firstboot_app.command("join")
def firstboot_join():
    """Join the cluster with the command in /etc/kubeadm_join_cmd, if present."""
    def join(golden: GoldenImage) -> None:
        if golden.join():
            console.print("kubeadm join completed")
        else:
            console.print("Nothing to join")
    run_firstboot_task(join)


if __name__ == "__main__":
    app()
