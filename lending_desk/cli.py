import subprocess
import sys
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lending_desk import messages
from lending_desk.config import settings

APP_NAME = "Lending Desk CLI"

console = Console()

app = typer.Typer(help="Library lending desk: run the server and inspect its configuration")


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: API_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Port (default: API_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the lending desk API with uvicorn."""
    host = host or settings.api_host
    port = port or int(settings.api_port)
    console.print(f"Starting lending desk on http://{host}:{port}/")

    missing = [name for name, present in settings.config_flags().items() if not present]
    if missing:
        console.print(f"[yellow]⚠️  Missing configuration: {', '.join(missing)}[/]")

    args = [
        sys.executable,
        "-m", "uvicorn",
        "lending_desk.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] could not run `uvicorn`. Make sure it is installed.")
        raise typer.Exit(code=1)


@app.command("check-config")
def cli_check_config():
    """Show which credentials and tables are configured (values are never printed)."""
    table = Table(title="Configuration", box=box.SIMPLE, header_style="bold cyan")
    table.add_column("Setting")
    table.add_column("Value")

    for name, present in settings.config_flags().items():
        table.add_row(name, "[green]yes[/]" if present else "[red]no[/]")
    table.add_row("Books table", settings.books_table)
    table.add_row("Students table", settings.students_table)
    table.add_row("Loans table", settings.loans_table)
    table.add_row("Session TTL", f"{settings.session_ttl_seconds}s")
    console.print(table)

    if not all(settings.config_flags().values()):
        raise typer.Exit(code=1)


@app.command("rules")
def cli_rules():
    """Print the lending rules shown to students."""
    console.print(Panel(messages.LENDING_RULES, title=APP_NAME, expand=False))


if __name__ == "__main__":
    app()
