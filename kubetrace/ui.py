import os

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from kubetrace.types import TraceJobSummary

# Status messages go to stderr so stdout carries only trace output and tables
_console = Console(stderr=True)
_out_console = Console()

# Check if we should use simple UI (e.g., when output is captured by another tool)
_use_simple_ui = os.getenv("KUBETRACE_SIMPLE_UI") == "1"

_PHASE_STYLES = {
    "Running": "green",
    "Completed": "blue",
    "Failed": "red",
    "Pending": "yellow",
}


def render_traces_table(traces: list[TraceJobSummary]):
    table = Table()

    table.add_column("Namespace", style="magenta")
    table.add_column("Trace ID", style="cyan", no_wrap=True)
    table.add_column("Target", style="blue")
    table.add_column("Started", style="dim")
    table.add_column("Phase")

    for trace in traces:
        style = _PHASE_STYLES.get(trace.phase, "white")
        table.add_row(
            trace.namespace,
            trace.id,
            trace.target,
            trace.start_time or "-",
            f"[{style}]{trace.phase}[/{style}]",
        )

    _out_console.print(table)


def print_trace_created(trace_id: str, namespace: str):
    _console.print(
        f"[green]✅[/green] trace [cyan bold]{trace_id}[/cyan bold] created "
        f"in namespace [magenta]{namespace}[/magenta]"
    )


def print_attach_banner(trace_id: str, delete_on_interrupt: bool = False):
    """Tell the user how to get out of an attached session."""
    if delete_on_interrupt:
        exit_hint = "Press Ctrl+C to stop and delete the trace."
    else:
        exit_hint = "Press Ctrl+C to detach; the trace keeps running until its deadline."
    message = f"Attached to trace [cyan bold]{trace_id}[/cyan bold].\n{exit_hint}"
    if _use_simple_ui:
        _console.print("[green]" + "=" * 60 + "[/green]")
        _console.print(message)
        _console.print("[green]" + "=" * 60 + "[/green]")
    else:
        _console.print(Panel(message, border_style="green", expand=False))


def print_success(message: str, prefix: str = "✅"):
    """Print a success message."""
    _console.print(f"[green]{prefix}[/green] {message}")


def print_info(message: str, prefix: str = "ℹ️"):
    """Print an info message."""
    _console.print(f"[blue]{prefix}[/blue]  {message}")


def print_step(message: str, prefix: str = "🔧"):
    """Print a step/progress message."""
    _console.print(f"[cyan]{prefix}[/cyan] {message}")


def print_warning(message: str, prefix: str = "⚠️"):
    _console.print(f"[yellow]{prefix}[/yellow]  {message}")
