"""Rich terminal output formatting."""

from __future__ import annotations

import math

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from tessera.errors import TesseraError
from tessera.licensing.payload import mask_license_key
from tessera.licensing.registry import RegistryEntry
from tessera.licensing.tiers import Tier
from tessera.licensing.usage import UsageSummary
from tessera.licensing.validator import LicenseStatus, ValidationResult

console = Console()
err_console = Console(stderr=True)


def _limit(value: float) -> str:
    return "unlimited" if math.isinf(value) else str(int(value))


def print_error(exc: TesseraError) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {exc.message}")
    if exc.remediation:
        err_console.print(f"  [dim]->[/dim] {exc.remediation}")


def print_activation(result: ValidationResult) -> None:
    if result.valid and result.payload is not None:
        founder = " (founder)" if result.payload.is_founder else ""
        lines = [
            f"[bold green]License activated[/bold green]: {mask_license_key(result.license_key)}",
            f"Tier: [bold]{result.payload.tier}[/bold]{founder}",
        ]
        if result.stale:
            lines.append("[yellow]Verified against a cached registry (offline).[/yellow]")
        console.print(Panel("\n".join(lines), title="Tessera", border_style="green"))
        return

    err_console.print(f"[bold red]Activation failed:[/bold red] {result.message}")
    if result.remediation:
        err_console.print(f"  [dim]->[/dim] {result.remediation}")


def print_license_status(status: LicenseStatus, usage: UsageSummary) -> None:
    """Print tier, features and free-tier usage."""
    color = "green" if status.tier is not Tier.FREE else "cyan"
    header = f"Tier: [bold {color}]{status.tier}[/bold {color}]"
    if status.is_founder:
        header += " (founder)"
    if status.record is not None:
        header += f"\nLicense: {mask_license_key(status.record.license_key)}"
    header += f"\n[dim]{status.message}[/dim]"
    if status.remediation:
        header += f"\n[dim]-> {status.remediation}[/dim]"
    console.print(Panel(header, title="License", border_style=color))

    features = status.features
    table = Table(title="Features", show_header=True, header_style="bold cyan")
    table.add_column("Feature", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Private repos", _limit(features.max_private_repos))
    table.add_row("Dependency PRs / month", _limit(features.max_dependency_prs_per_month))
    table.add_row("Pre-push runs / month", _limit(features.max_pre_push_runs_per_month))
    table.add_row("Dependency monitoring", features.dependency_monitoring)
    table.add_row("Languages", ", ".join(features.languages))
    for feature in sorted(features.enabled):
        table.add_row(feature.value, "[green]enabled[/green]")
    console.print(table)

    if usage.unlimited:
        return
    ut = Table(title=f"Usage ({usage.month})", show_header=True, header_style="bold yellow")
    ut.add_column("Operation")
    ut.add_column("Used", justify="right")
    ut.add_column("Limit", justify="right")
    ut.add_column("Remaining", justify="right")
    for name, counts in usage.counts.items():
        remaining = counts["remaining"]
        rc = "red" if remaining <= 0 else "white"
        ut.add_row(name, str(counts["used"]), str(counts["limit"]), f"[{rc}]{remaining}[/{rc}]")
    console.print(ut)


def print_registered(license_key: str, entry: RegistryEntry) -> None:
    console.print(
        f"[green]Registered[/green] {license_key} "
        f"(tier={entry.tier}, founder={entry.is_founder}, issued={entry.issued[:19]})"
    )
