# display.py
# All terminal output for the pipeline runtime.
#
# This module owns presentation entirely. The engine, executors and loops
# never format strings for the terminal. They call a Logger, which calls
# named functions here. Swap this file to change the entire UI.
#
# Colour language:
#   cyan: pipeline scaffolding
#   blue: node boundaries
#   yellow: commands, gates, warnings
#   green: success
#   red: failures
#   magenta: agent internals (iterations, tool calls)

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from agent_pipeline.models import Pipeline, RunMetadata

console = Console()
err_console = Console(stderr=True)

NODE_ICONS = {"task": "⚙️ ", "agent": "🤖", "gate": "🚦"}

STATUS_STYLES = {
    "queued": "dim",
    "running": "yellow",
    "completed": "green",
    "failed": "red",
    "interrupted": "magenta",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def _preview(data: Any, max_len: int = 100) -> str:
    return _mono(json.dumps(data, default=str), max_len)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def pipeline_start(name: str, description: str | None, node_count: int) -> None:
    console.print()
    body = f"[bold white]{name}[/bold white]"
    if description:
        body += f"\n[dim]{description}[/dim]"
    body += f"\n[dim]Nodes:[/dim] [white]{node_count}[/white]"
    console.print(Panel(body, title=_label("PIPELINE", "cyan"), border_style="cyan", padding=(0, 2)))


def pipeline_success(node_count: int, total_ms: int, files_changed: int) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]Nodes executed:[/white] [bold]{node_count}[/bold]\n"
            f"[white]Total time:[/white] [bold]{total_ms}ms[/bold]\n"
            f"[white]Files changed:[/white] [bold]{files_changed}[/bold]",
            title=_label("PIPELINE COMPLETED ✓", "green"),
            border_style="green",
            padding=(0, 2),
        )
    )


def pipeline_failed(node_id: str, error: str | None) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold red]Node {node_id!r} failed.[/bold red]\n[white]{error or 'Unknown error'}[/white]",
            title=_label("PIPELINE FAILED ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


def node_start(node_id: str, node_type: str, description: str | None) -> None:
    icon = NODE_ICONS.get(node_type, "📦")
    console.print()
    console.print(f"[bold blue]┌─ {icon} Node:[/bold blue] [bold white]{node_id}[/bold white] [dim]({node_type})[/dim]")
    if description:
        console.print(f"[blue]│[/blue]  [dim]{description}[/dim]")


def node_success(node_id: str, duration: int) -> None:
    console.print(f"[bold blue]└─[/bold blue] [green]✓ Completed[/green] [dim]in {duration}ms[/dim]")


def node_failed(node_id: str, error: str, duration: int) -> None:
    console.print(f"[bold blue]└─[/bold blue] [red]✗ Failed[/red] [dim]after {duration}ms[/dim]")
    console.print(f"   [red]Error:[/red] [white]{error}[/white]")


def task_command(command: str) -> None:
    console.print(f"[blue]│[/blue]  [dim]Executing:[/dim] [yellow]{command}[/yellow]")


def task_output(text: str, stream: str) -> None:
    target = err_console if stream == "stderr" else console
    target.out(text, end="", highlight=False)


def task_files_changed(files: list[str]) -> None:
    console.print(f"[blue]│[/blue]  [dim]Changed {len(files)} file(s)[/dim]")


def gate_check(command: str) -> None:
    console.print(f"[blue]│[/blue]  [dim]Gate check:[/dim] [yellow]{command}[/yellow]")


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


def agent_prompt(prompt: str) -> None:
    console.print(f"[blue]│[/blue]  [dim]Prompt:[/dim] [white]{_mono(prompt, 100)}[/white]")


def agent_tools(tools: list[str]) -> None:
    console.print(f"[blue]│[/blue]  [dim]Tools:[/dim] [cyan]{', '.join(tools) or '(none)'}[/cyan]")


def agent_iteration(current: int, maximum: int) -> None:
    console.print(f"[blue]│[/blue]  [magenta]Iteration {current}/{maximum}[/magenta]")


def agent_tool_call(tool_name: str, args: Any) -> None:
    console.print(
        f"[blue]│[/blue]  [magenta]🔧 Tool[/magenta] [bold white]{tool_name}[/bold white]  [dim]{_preview(args)}[/dim]"
    )


def agent_tool_result(result: Any) -> None:
    console.print(f"[blue]│[/blue]     [dim]Result: {_preview(result)}[/dim]")


def agent_json_retry(error: str, attempt: int, maximum: int) -> None:
    console.print(f"[blue]│[/blue]  [yellow]⚠ Output retry {attempt}/{maximum}:[/yellow] [white]{_mono(error)}[/white]")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validation_summary(path: str, pipeline: Pipeline) -> None:
    table = Table(box=box.SIMPLE_HEAVY, border_style="cyan", header_style="bold cyan", padding=(0, 1))
    table.add_column("ID", style="bold white")
    table.add_column("Type", width=7)
    table.add_column("Details", style="dim white")

    for node in pipeline.nodes:
        if node.type == "agent":
            details = f"tools: {', '.join(node.tools) or '(none)'} · schema: {_mono(str(node.output_schema), 40)}"
        else:
            details = _mono(node.command, 60)
        table.add_row(node.id, node.type, details)

    console.print(
        Panel(
            table,
            title=_label("PIPELINE VALID ✓", "green"),
            subtitle=f"[dim]{pipeline.name or 'Unnamed'} · {path}[/dim]",
            border_style="green",
            padding=(0, 1),
        )
    )


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


def job_table(runs: list[RunMetadata]) -> None:
    if not runs:
        console.print("[dim]No runs recorded.[/dim]")
        return
    table = Table(box=box.SIMPLE, header_style="bold", padding=(0, 1))
    table.add_column("Run")
    table.add_column("Kind")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Created", style="dim")
    table.add_column("Error", style="dim red")
    for run in runs:
        style = STATUS_STYLES.get(run.status, "white")
        table.add_row(
            run.id[:8],
            run.kind,
            run.pipeline_name,
            f"[{style}]{run.status}[/{style}]",
            run.created_at,
            _mono(run.error or "", 40),
        )
    console.print(table)


def job_update(run: RunMetadata, new_lines: list[str]) -> None:
    style = STATUS_STYLES.get(run.status, "white")
    for line in new_lines:
        console.print(f"[dim]{run.id[:8]}[/dim] {line}", highlight=False)
    console.print(f"[dim]{run.id[:8]}[/dim] [{style}]{run.status}[/{style}]")


# ---------------------------------------------------------------------------
# Generic
# ---------------------------------------------------------------------------


def info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue]  [white]{message}[/white]", highlight=False)


def warning(message: str) -> None:
    console.print(f"[yellow]⚠  {message}[/yellow]", highlight=False)


def error(message: str, details: str | None = None) -> None:
    err_console.print(f"[red]✗ Error:[/red] [white]{message}[/white]", highlight=False)
    if details:
        err_console.print(f"[dim]{details}[/dim]", highlight=False)
