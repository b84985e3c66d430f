"""Tessera CLI entry point."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import typer
from rich.prompt import Confirm, Prompt

from tessera.errors import TesseraError

app = typer.Typer(
    name="tessera",
    help="Tessera - license activation and administration",
    no_args_is_help=True,
)

T = TypeVar("T")


@app.callback()
def callback(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", help="Verbose logs and full tracebacks"),
) -> None:
    """Tessera - license activation and administration."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _guard(ctx: typer.Context, action: Callable[[], T]) -> T:
    """Run *action*, turning Tessera errors into one message and exit code 1."""
    from tessera_cli.display import print_error

    try:
        return action()
    except TesseraError as exc:
        if ctx.obj.get("debug"):
            raise
        print_error(exc)
        raise typer.Exit(1) from None


@app.command()
def activate(
    ctx: typer.Context,
    license_key: str = typer.Argument(..., help="License key, e.g. TSR-XXXX-XXXX-XXXX-XXXX"),
    email: str | None = typer.Option(None, "--email", "-e", help="Purchase email"),
) -> None:
    """Activate a license on this machine."""
    from tessera.licensing.validator import LicenseValidator
    from tessera_cli.display import print_activation

    if email is None:
        email = Prompt.ask("Purchase email (leave blank to skip)", default="") or None

    result = _guard(ctx, lambda: LicenseValidator().activate(license_key, email))
    print_activation(result)
    if not result.valid:
        raise typer.Exit(1)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show the active tier, its features and free-tier usage."""
    from tessera.config import get_settings
    from tessera.licensing.usage import UsageSummary, UsageTracker
    from tessera.licensing.validator import LicenseStatus, LicenseValidator
    from tessera_cli.display import print_license_status

    def run() -> tuple[LicenseStatus, UsageSummary]:
        license_status = LicenseValidator().current_license()
        usage = UsageTracker(get_settings().registry.license_dir).summary(license_status.tier)
        return license_status, usage

    license_status, usage = _guard(ctx, run)
    print_license_status(license_status, usage)


@app.command()
def remove(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "-y", "--yes", help="Skip confirmation"),
) -> None:
    """Remove the local license (the machine falls back to the free tier)."""
    from tessera.licensing.validator import LicenseValidator
    from tessera_cli.display import console

    if not yes and not Confirm.ask("Remove the local license?", default=False):
        raise typer.Exit(0)
    removed = _guard(ctx, lambda: LicenseValidator().remove())
    if removed:
        console.print("[green]License removed.[/green] Running on the free tier.")
    else:
        console.print("[dim]No license was activated.[/dim]")


@app.command()
def keygen(
    out: Path = typer.Option(Path("."), "--out", "-o", help="Directory for the key files"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing key files"),
) -> None:
    """Generate an Ed25519 registry signing keypair."""
    from tessera.licensing.signing import generate_keypair
    from tessera_cli.display import console

    private_path = out / "registry-private.pem"
    public_path = out / "registry-public.pem"
    if not force and (private_path.exists() or public_path.exists()):
        typer.echo(f"Error: key files already exist in {out} (use --force)", err=True)
        raise typer.Exit(1)

    private_pem, public_pem = generate_keypair()
    out.mkdir(parents=True, exist_ok=True)
    fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(private_pem)
    public_path.write_text(public_pem)

    console.print(f"Private key: [bold]{private_path}[/bold] (keep secret)")
    console.print(f"Public key:  [bold]{public_path}[/bold]")
    console.print(
        "\nServer:  TESSERA_SIGNING__PRIVATE_KEY_PATH=" + str(private_path.resolve())
        + "\nClients: TESSERA_SIGNING__PUBLIC_KEY_PATH=" + str(public_path.resolve())
    )


@app.command(name="add-key")
def add_key(
    ctx: typer.Context,
    license_key: str = typer.Argument(..., help="License key to register"),
    customer: str = typer.Option(..., "--customer", help="Customer id"),
    tier: str = typer.Option(..., "--tier", help="FREE or PRO"),
    founder: bool = typer.Option(False, "--founder", help="Founder license"),
    email: str | None = typer.Option(None, "--email", help="Purchase email (stored hashed)"),
) -> None:
    """Admin: sign and add a license key to the registry."""
    from tessera.billing.issuance import register_license
    from tessera.config import get_settings
    from tessera.licensing.payload import normalize_license_key
    from tessera.licensing.registry import RegistryEntry
    from tessera.main import build_store
    from tessera_cli.display import print_registered

    def run() -> RegistryEntry:
        store = build_store(get_settings())
        return asyncio.run(
            register_license(store, license_key, customer, tier, is_founder=founder, email=email),
        )

    entry = _guard(ctx, run)
    print_registered(normalize_license_key(license_key), entry)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
