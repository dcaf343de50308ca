"""Passgate CLI - Command line interface."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from urllib.parse import urlparse

import click
from rich.console import Console
from rich.table import Table

console = Console()

BANNER = """
██████╗  █████╗ ███████╗███████╗ ██████╗  █████╗ ████████╗███████╗
██╔══██╗██╔══██╗██╔════╝██╔════╝██╔════╝ ██╔══██╗╚══██╔══╝██╔════╝
██████╔╝███████║███████╗███████╗██║  ███╗███████║   ██║   █████╗
██╔═══╝ ██╔══██║╚════██║╚════██║██║   ██║██╔══██║   ██║   ██╔══╝
██║     ██║  ██║███████║███████║╚██████╔╝██║  ██║   ██║   ███████╗
╚═╝     ╚═╝  ╚═╝╚══════╝╚══════╝ ╚═════╝ ╚═╝  ╚═╝   ╚═╝   ╚══════╝
                  Passkey ceremonies, served
"""


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context):
    """Passgate - WebAuthn passkey ceremony server.

    Examples:

        passgate serve --port 8080

        passgate config show

        passgate users list --storage users.json

    Use 'passgate COMMAND --help' for more info on specific commands.
    """
    if ctx.invoked_subcommand is None:
        console.print(BANNER, style="cyan")
        console.print("Usage: passgate serve --port 8080", style="yellow")
        console.print("\nCommands:", style="bold")
        console.print("  passgate serve    Start the ceremony server", style="dim")
        console.print("  passgate config   Show or validate configuration", style="dim")
        console.print("  passgate users    Inspect stored users", style="dim")
        console.print("  passgate version  Show version information", style="dim")


def _configure_logging(log_level: str) -> None:
    import structlog

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
    )


@main.command()
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML or TOML configuration file",
)
@click.option("--host", default=None, help="Bind host")
@click.option("--port", "-p", type=int, default=None, help="Bind port")
@click.option("--rp-id", default=None, help="Relying party id")
@click.option("--origin", "origins", multiple=True, help="Accepted origin (can repeat)")
@click.option("--storage", default=None, help="Path to the users JSON file")
@click.option("--redis-url", envvar="PASSGATE_REDIS_URL", default=None, help="Redis URL for pending ceremonies")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Log level",
)
def serve(
    config_file: str | None,
    host: str | None,
    port: int | None,
    rp_id: str | None,
    origins: tuple[str, ...],
    storage: str | None,
    redis_url: str | None,
    log_level: str | None,
):
    """Start the ceremony server.

    Settings come from PASSGATE_ environment variables, then the config
    file, then these options.
    """
    from pydantic import ValidationError as SettingsError

    from passgate.core.config import PassgateConfig, config_overrides_from_file
    from passgate.server.app import run_server

    overrides: dict = {}
    if config_file:
        try:
            overrides.update(config_overrides_from_file(config_file))
            console.print(f"Loaded config from {config_file}", style="dim")
        except (OSError, ValueError) as e:
            console.print(f"[red]Failed to load config: {e}[/red]")
            sys.exit(1)

    cli_values = {
        "host": host,
        "port": port,
        "rp_id": rp_id,
        "origins": list(origins) or None,
        "storage_path": storage,
        "redis_url": redis_url,
        "log_level": log_level,
    }
    overrides.update({key: value for key, value in cli_values.items() if value is not None})

    try:
        cfg = PassgateConfig(**overrides)
    except SettingsError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    _configure_logging(cfg.log_level)

    console.print(BANNER, style="cyan")
    console.print(f"Relying party: [bold]{cfg.rp_id}[/bold] ({', '.join(cfg.origins)})")
    console.print(f"Listening on [bold]http://{cfg.host}:{cfg.port}[/bold]")
    console.print("\nPress Ctrl+C to stop.\n", style="dim")

    try:
        asyncio.run(run_server(cfg))
    except KeyboardInterrupt:
        console.print("\n[green]Server stopped.[/green]")


@main.command()
def version():
    """Show version information."""
    from passgate import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


@main.group()
def config():
    """View and validate configuration settings.

    All settings can be configured via environment variables with the
    PASSGATE_ prefix.

    Examples:

        passgate config show             # Show all config settings

        passgate config validate         # Validate current config
    """
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--section", "-s", help="Show only specific section (relying_party, ceremony, storage, server)")
def config_show(json_output: bool, section: str | None):
    """Show current configuration settings.

    Values come from environment variables or defaults.
    """
    from passgate.core.config import get_config

    cfg = get_config()
    display = cfg.to_display_dict()

    if section:
        section = section.lower()
        if section not in display:
            console.print(f"[red]Unknown section:[/red] {section}")
            console.print(f"[dim]Available: {', '.join(display.keys())}[/dim]")
            sys.exit(1)
        display = {section: display[section]}

    if json_output:
        console.print(json.dumps(display, indent=2))
        return

    console.print(BANNER, style="cyan")
    console.print("[bold]Current Configuration[/bold]\n")

    for section_name, settings in display.items():
        table = Table(title=section_name.replace("_", " ").title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")

        for key, value in settings.items():
            env_var = f"PASSGATE_{key.upper()}"
            value_str = str(value) if value is not None else "[dim]None[/dim]"
            table.add_row(key, value_str, env_var)

        console.print(table)
        console.print()


@config.command("validate")
def config_validate():
    """Validate current configuration.

    Checks that origins match the relying party id and that timeouts agree.
    """
    from pydantic import ValidationError as SettingsError

    from passgate.core.config import clear_config, get_config

    clear_config()

    try:
        cfg = get_config()
    except SettingsError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    errors = []
    warnings = []

    if not cfg.origins:
        errors.append("origins must list at least one origin")
    for origin in cfg.origins:
        parsed = urlparse(origin)
        hostname = parsed.hostname or ""
        if hostname != cfg.rp_id and not hostname.endswith(f".{cfg.rp_id}"):
            errors.append(f"origin {origin} is not within rp_id ({cfg.rp_id})")
        if parsed.scheme != "https" and hostname != "localhost":
            warnings.append(f"origin {origin} is not https; browsers will refuse WebAuthn")

    if cfg.challenge_ttl * 1000 < cfg.ceremony_timeout_ms:
        warnings.append(
            f"challenge_ttl ({cfg.challenge_ttl}s) is shorter than ceremony_timeout_ms "
            f"({cfg.ceremony_timeout_ms}ms); slow users will see expired challenges"
        )
    if cfg.storage_path is None:
        warnings.append("storage_path is not set; users are kept in memory only")

    if errors:
        console.print("[red bold]Configuration Errors:[/red bold]")
        for error in errors:
            console.print(f"  [red]x[/red] {error}")
        console.print()

    if warnings:
        console.print("[yellow bold]Configuration Warnings:[/yellow bold]")
        for warning in warnings:
            console.print(f"  [yellow]![/yellow] {warning}")
        console.print()

    if not errors and not warnings:
        console.print("[green]OK - Configuration is valid[/green]")
    elif not errors:
        console.print("[green]OK - Configuration is valid (with warnings)[/green]")
    else:
        console.print("[red]ERROR - Configuration has errors[/red]")
        sys.exit(1)


@main.group()
def users():
    """Inspect stored users and credentials."""
    pass


@users.command("list")
@click.option("--storage", default="users.json", help="Path to the users JSON file")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def users_list(storage: str, json_output: bool):
    """List all registered users."""
    asyncio.run(_users_list_async(storage, json_output))


async def _users_list_async(storage: str, json_output: bool):
    """Async implementation of users list command."""
    from passgate.core.exceptions import StorageError
    from passgate.storage import CredentialRepository

    repository = CredentialRepository(storage)
    try:
        records = await repository.list_users()
    except StorageError:
        console.print(f"[red]Error:[/red] Could not read users from {storage}")
        sys.exit(1)

    if json_output:
        data = [
            {
                "tenant": user.tenant,
                "username": user.username,
                "created_at": user.created_at.isoformat(),
                "credentials": [c.id_b64 for c in user.credentials],
            }
            for user in records
        ]
        console.print(json.dumps(data, indent=2))
        return

    if not records:
        console.print("[dim]No users registered[/dim]")
        return

    table = Table(title="Registered Users")
    table.add_column("Tenant", style="cyan")
    table.add_column("Username", style="cyan")
    table.add_column("Credentials", justify="right")
    table.add_column("Sign Counts", style="dim")
    table.add_column("Created At")

    for user in records:
        counts = ", ".join(str(c.sign_count) for c in user.credentials) or "-"
        table.add_row(
            user.tenant,
            user.username,
            str(len(user.credentials)),
            counts,
            user.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


if __name__ == "__main__":
    main()
