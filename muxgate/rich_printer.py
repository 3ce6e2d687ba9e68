"""
Rich console reports for operators: provider pool health and the attempts
made by a failed dispatch.
"""
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .errors import AttemptRecord, PoolExhaustedError
from .pool import PoolGeneration, ProviderPool

default_console = Console()


def _format_time(timestamp: Optional[float]) -> str:
    if timestamp is None:
        return "-"
    return datetime.fromtimestamp(timestamp).strftime("%H:%M:%S")


class PoolStatusPrinter:
    """
    Displays credential health per provider type as a table.

    Attributes:
        title: Title for the display panel
        border_style: Border style for the panel
        console: Console to print to
    """

    def __init__(
        self,
        title: str = "Provider Pools",
        border_style: str = "blue",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.border_style = border_style
        self.console = console or default_console

    def print_pool(self, pool: Union[ProviderPool, PoolGeneration, Dict[str, List[Dict[str, Any]]]]) -> None:
        """
        Print the health table of a pool.

        Args:
            pool: A ProviderPool, a PoolGeneration, or a ``status()`` dict.
        """
        status = pool if isinstance(pool, dict) else pool.status()
        self.console.print(Panel(self._build_table(status), title=f"[bold]{self.title}[/bold]", border_style=self.border_style))

    def _build_table(self, status: Dict[str, List[Dict[str, Any]]]) -> Any:
        if not status:
            return Text("(no credentials configured)", style="dim italic")

        table = Table(expand=True)
        table.add_column("Provider", style="cyan")
        table.add_column("Credential")
        table.add_column("Priority", justify="right")
        table.add_column("Errors", justify="right")
        table.add_column("Uses", justify="right")
        table.add_column("Last used")
        table.add_column("State")

        now = time.time()
        for provider_type, credentials in status.items():
            for cred in credentials:
                table.add_row(
                    provider_type,
                    cred["id"],
                    str(cred["priority"]),
                    str(cred["error_count"]),
                    str(cred["usage_count"]),
                    _format_time(cred.get("last_used")),
                    self._state(cred, now),
                )
        return table

    @staticmethod
    def _state(cred: Dict[str, Any], now: float) -> str:
        if cred.get("is_disabled"):
            return "[red]disabled[/red]"
        if cred.get("available"):
            return "[green]available[/green]"
        disabled_until = cred.get("disabled_until")
        if disabled_until is not None:
            return f"[yellow]cooling down ({max(0, int(disabled_until - now))}s)[/yellow]"
        return "[yellow]unavailable[/yellow]"


class AttemptReportPrinter:
    """
    Displays the attempts a dispatch made before giving up.
    """

    def __init__(self, title: str = "Dispatch Attempts", console: Optional[Console] = None):
        self.title = title
        self.console = console or default_console

    def print_attempts(self, source: Union[PoolExhaustedError, Sequence[AttemptRecord]]) -> None:
        if isinstance(source, PoolExhaustedError):
            attempts = source.attempts
            header: Any = Text(source.message, style="bold red")
        else:
            attempts = list(source)
            header = None

        if attempts:
            table = Table(expand=True)
            table.add_column("#", justify="right")
            table.add_column("Provider", style="cyan")
            table.add_column("Model")
            table.add_column("Credential")
            table.add_column("Status", justify="right")
            table.add_column("Retryable")
            table.add_column("Message")
            for index, attempt in enumerate(attempts, start=1):
                table.add_row(
                    str(index),
                    attempt.provider_type,
                    attempt.model,
                    attempt.credential_id,
                    str(attempt.status_code) if attempt.status_code is not None else "-",
                    "[green]yes[/green]" if attempt.retryable else "[red]no[/red]",
                    attempt.message,
                )
            body: Any = table
        else:
            body = Text("(no attempts were made)", style="dim italic")

        content = Group(header, body) if header is not None else body
        self.console.print(Panel(content, title=f"[bold]{self.title}[/bold]", border_style="red"))
