"""
Progress Renderer - terminal view of one agent session

Subscribes to the progress broadcaster and prints tool activity as it
happens; prints the ledger summary once the session ends.
"""

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from toolstream.modules.orchestrator.event_bus import ProgressBroadcaster, ProgressEvent, ProgressEventType
from toolstream.modules.orchestrator.loop_controller import SessionResult


STATUS_STYLES = {
    "success": "green",
    "exhausted": "yellow",
    "fatal": "red",
    "cancelled": "magenta",
}


class ProgressRenderer:

    def __init__(self, console: Optional[Console] = None, show_text: bool = True):
        self.console = console or Console()
        self.show_text = show_text
        self._streaming = False

    def attach(self, broadcaster: ProgressBroadcaster) -> None:
        broadcaster.subscribe("*", self.handle)

    def detach(self, broadcaster: ProgressBroadcaster) -> None:
        broadcaster.unsubscribe("*", self.handle)

    def _end_text(self) -> None:
        if self._streaming:
            self.console.print()
            self._streaming = False

    def handle(self, event: ProgressEvent) -> None:
        data = event.data
        if event.type == ProgressEventType.TEXT_DELTA:
            if self.show_text:
                self.console.print(data.get("text", ""), end="", markup=False, highlight=False)
                self._streaming = True
            return

        if event.type == ProgressEventType.ITERATION_STARTED:
            self._end_text()
            self.console.rule(f"[bold cyan]Iteration {event.iteration}/{data.get('max_iterations')}[/bold cyan]")
        elif event.type == ProgressEventType.TOOL_DISPATCHED:
            self._end_text()
            after = f" [dim](after {', '.join(data['depends_on'])})[/dim]" if data.get("depends_on") else ""
            self.console.print(f"[cyan]→[/cyan] {data.get('tool_name')} [dim]{data.get('tool_call_id')}[/dim]{after}")
        elif event.type == ProgressEventType.TOOL_COMPLETED:
            self.console.print(f"  [green]✓[/green] {data.get('tool_name')} [dim]({data.get('duration', 0):.2f}s)[/dim]")
        elif event.type == ProgressEventType.TOOL_FAILED:
            self._end_text()
            self.console.print(
                f"  [red]✗[/red] {data.get('tool_name')}: [red]{data.get('error_message') or data.get('error')}[/red]"
            )
        elif event.type == ProgressEventType.DISPATCH_CONFLICT:
            self.console.print(f"[bold red]Dispatch conflict:[/bold red] {data.get('message')}")
        elif event.type == ProgressEventType.RECOVERY_INJECTED:
            self.console.print(
                f"[yellow]⚠️  Recovery attempt {data.get('attempt')}/{data.get('retry_budget')}[/yellow]"
            )
        elif event.type == ProgressEventType.GOALS_VERIFIED:
            self._end_text()
            self.console.print(f"[blue]ℹ️  Goals: {data.get('satisfied')}/{data.get('total')} satisfied[/blue]")
        elif event.type == ProgressEventType.SESSION_TERMINATED:
            self._end_text()

    def render_result(self, result: SessionResult) -> None:
        style = STATUS_STYLES.get(result.status.value, "white")

        table = Table(title="Session Ledger", show_header=True, header_style="bold cyan")
        table.add_column("#", style="dim", width=4)
        table.add_column("Tool", style="white")
        table.add_column("Call", style="dim")
        table.add_column("Status", justify="center", width=10)
        for record in result.ledger.iterations:
            for call in record.tool_calls:
                status = "[green]done[/green]" if call.status == "done" else f"[red]{call.status}[/red]"
                table.add_row(str(record.sequence_number), call.name, call.tool_call_id, status)
        self.console.print(table)

        goals = Table(show_header=False, box=None)
        goals.add_column("Goal", style="dim")
        goals.add_column("Status", justify="right")
        for goal in result.goals.goals:
            goals.add_row(f"{goal.id}: {goal.description}", goal.status.value)
        self.console.print(goals)

        body = f"[bold {style}]{result.status.value}[/bold {style}] after {result.iterations} iteration(s)"
        if result.retry_count:
            body += f", {result.retry_count} recovery attempt(s)"
        if result.error:
            body += f"\n[dim]{result.error.get('message')}[/dim]"
        self.console.print(Panel(body, title=f"Session {result.session_id[:8]}", border_style=style))
