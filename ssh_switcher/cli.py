"""Command line interface for ssh-switcher."""

from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .engine import IdentityEngine
from .errors import SwitcherError
from .models import HealthVerdict, Identity, Severity
from .utils import configure_logging

app = typer.Typer(
    name="ssh-switcher",
    help="Keep one SSH key bound per Git identity and diagnose cross-identity conflicts.",
    no_args_is_help=True,
)
console = Console()

SEVERITY_STYLES = {
    Severity.INFO: "blue",
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
    Severity.CRITICAL: "bold red",
}
HEALTH_STYLES = {
    HealthVerdict.EXCELLENT: "green",
    HealthVerdict.GOOD: "green",
    HealthVerdict.FAIR: "yellow",
    HealthVerdict.POOR: "red",
    HealthVerdict.CRITICAL: "bold red",
}

_engine: Optional[IdentityEngine] = None


def get_engine() -> IdentityEngine:
    global _engine
    if _engine is None:
        _engine = IdentityEngine()
    return _engine


def version_callback(value: bool):
    """Show version information."""
    if value:
        console.print(f"SSH Switcher v{__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: Optional[bool] = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True, help="Show version and exit"
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logging"),
):
    """SSH identity isolation for multiple Git accounts."""
    configure_logging("DEBUG" if verbose else "WARNING")


def parse_identity_option(value: str) -> Identity:
    """Parse ``alias=key[:user]`` into an Identity."""
    alias, sep, rest = value.partition("=")
    if not sep or not alias or not rest:
        raise typer.BadParameter(f"Expected alias=key[:user], got '{value}'")
    key_path, _, username = rest.partition(":")
    return Identity(alias=alias, key_path=key_path, username=username)


def resolve_identity_option(value: str, engine: IdentityEngine) -> Identity:
    """Resolve a bare alias from the settings file, or parse ``alias=key[:user]``."""
    if "=" in value:
        return parse_identity_option(value)
    identity = engine.config.get_identity(value)
    if identity is None:
        raise typer.BadParameter(f"No identity '{value}' in settings; use alias=key[:user]")
    return identity


@app.command()
def switch(
    alias: str = typer.Argument(..., help="Identity alias, e.g. work"),
    key: str = typer.Argument(..., help="Path to the private key"),
    domain: Optional[str] = typer.Option(None, "--domain", "-d", help="Git host (default from settings)"),
    no_test: bool = typer.Option(False, "--no-test", help="Skip the connection test"),
    remember: bool = typer.Option(False, "--remember", help="Store the identity in the settings file"),
):
    """Bind KEY to the host and load it as the only agent key."""
    try:
        result = get_engine().switch_identity(
            alias, key, domain, test_connection=False if no_test else None, remember=remember
        )
    except SwitcherError as e:
        console.print(f"[red]❌ Failed to switch to '{alias}': {e}[/red]")
        raise typer.Exit(1) from e
    except Exception as e:
        console.print(f"[red]❌ Error switching identity: {e}[/red]")
        raise typer.Exit(1) from e

    for step in result.steps:
        console.print(f"[green]✓[/green] {step}")
    for warning in result.warnings:
        console.print(f"[yellow]⚠️  {warning}[/yellow]")
    console.print(f"[green]✅ Switched to identity '{alias}'[/green]")


@app.command()
def doctor(
    fix: bool = typer.Option(False, "--fix", help="Apply automatic fixes"),
    identity: Optional[list[str]] = typer.Option(
        None, "--identity", "-i", help="Identity to check: a remembered alias or alias=key[:user]; repeatable"
    ),
):
    """Detect SSH conflicts between identities."""
    try:
        engine = get_engine()
        identities = [resolve_identity_option(value, engine) for value in identity or []]
        if not identities:
            identities = engine.config.load_identities()
        result = engine.diagnose(identities)
    except typer.BadParameter:
        raise
    except Exception as e:
        console.print(f"[red]❌ Error running diagnostics: {e}[/red]")
        raise typer.Exit(1) from e

    style = HEALTH_STYLES[result.health]
    console.print(f"Health: [{style}]{result.health.value}[/{style}] ({result.total_issues} issues)")

    if result.conflicts:
        table = Table(title="SSH Conflicts")
        table.add_column("Severity")
        table.add_column("Type")
        table.add_column("Description")
        table.add_column("Auto-fix", justify="center")
        for conflict in result.conflicts:
            severity_style = SEVERITY_STYLES[conflict.severity]
            table.add_row(
                f"[{severity_style}]{conflict.severity.value}[/{severity_style}]",
                conflict.type.value,
                conflict.description,
                "✓" if conflict.auto_fix else "",
            )
        console.print(table)

    if result.recommendations:
        console.print(Panel("\n".join(result.recommendations), title="Recommendations", border_style="blue"))

    if fix and result.conflicts:
        report = engine.auto_fix(result.conflicts)
        for conflict in report.fixed:
            console.print(f"[green]✓ Fixed:[/green] {conflict.description}")
        for conflict, reason in report.failed:
            console.print(f"[red]✗ Not fixed:[/red] {conflict.description} ({reason})")
        if report.skipped:
            console.print(f"[dim]{len(report.skipped)} conflicts need manual attention[/dim]")

    if result.health == HealthVerdict.CRITICAL and not fix:
        raise typer.Exit(1)


@app.command()
def validate(
    domain: Optional[str] = typer.Option(None, "--domain", "-d", help="Git host to validate against"),
):
    """Validate keys, config and agent against the remote host."""
    try:
        report = get_engine().validate_all(domain)
    except Exception as e:
        console.print(f"[red]❌ Error validating SSH setup: {e}[/red]")
        raise typer.Exit(1) from e

    if report.keys:
        table = Table(title="SSH Keys")
        table.add_column("Key", style="cyan")
        table.add_column("Type")
        table.add_column("Fingerprint", style="dim")
        table.add_column("Remote user")
        table.add_column("Notes")
        for key in report.keys:
            table.add_row(
                key.material.name,
                key.material.key_type or "?",
                key.material.fingerprint,
                key.remote_user or "-",
                "; ".join(key.issues) if key.issues else ("[green]ok[/green]" if key.is_valid else ""),
            )
        console.print(table)

    for anomaly in report.config_anomalies:
        console.print(f"[yellow]config line {anomaly.line}:[/yellow] {anomaly.description} ({anomaly.fix})")

    for issue in report.issues:
        style = SEVERITY_STYLES[issue.severity]
        console.print(f"[{style}]{issue.severity.value.upper()}[/{style}] {issue.description}")
        if issue.code:
            console.print(f"    [dim]{issue.code}[/dim]")

    console.print(Panel("\n".join(report.recommendations), title="Recommendations", border_style="blue"))

    if report.is_valid:
        console.print("[green]✅ SSH setup is valid[/green]")
    else:
        console.print("[red]❌ SSH setup has problems[/red]")
        raise typer.Exit(1)


@app.command("repair-permissions")
def repair_permissions_command():
    """Restrict ~/.ssh, the config file and keys to their owner."""
    try:
        repaired = get_engine().repair_permissions()
    except (SwitcherError, ValueError) as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(1) from e

    if not repaired:
        console.print("[green]✅ Permissions already correct[/green]")
        return
    for path in repaired:
        console.print(f"[green]✓[/green] Fixed permissions on {path}")


@app.command("show-config")
def show_config(
    domain: Optional[str] = typer.Option(None, "--domain", "-d", help="Only show this host's bindings"),
):
    """Show which key each managed identity is bound to."""
    try:
        engine = get_engine()
    except ValueError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(1) from e

    bindings = engine.bindings(domain)
    if not bindings:
        console.print("[yellow]No identities are bound in the SSH config[/yellow]")
        return

    table = Table(title=f"SSH Bindings ({engine.synthesizer.config_file})")
    table.add_column("Identity", style="cyan")
    table.add_column("Key")
    for alias, key_path in bindings.items():
        table.add_row(alias, key_path)
    console.print(table)


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
