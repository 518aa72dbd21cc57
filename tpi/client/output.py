"""Console helpers and human-readable printers for BMC responses.

Printers take the first element of a legacy ``response`` envelope and raise
:class:`ProtocolError` when it does not have the expected shape; the caller
then falls back to printing the raw payload.
"""

from typing import Any, Callable, Optional

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from tpi.common.errors import ProtocolError

console = Console()

ResponsePrinter = Callable[[Any, Console], None]


def format_size(size: int) -> str:
    """Format size in human-readable format."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024  # type: ignore[assignment]
    return f"{size:.1f} PB"


def create_transfer_progress(out: Optional[Console] = None) -> Progress:
    """Progress bar for byte transfers."""
    return Progress(
        SpinnerColumn(spinner_name="dots"),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(bar_width=40, complete_style="green", finished_style="bright_green"),
        TaskProgressColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        console=out or console,
        expand=True,
    )


def print_success(message: str, out: Optional[Console] = None) -> None:
    """Print success message."""
    (out or console).print(f"[bold green]✓[/bold green] {escape(message)}")


def print_error(message: str, out: Optional[Console] = None) -> None:
    """Print error message."""
    (out or console).print(f"[bold red]✗[/bold red] {escape(message)}")


def print_warning(message: str, out: Optional[Console] = None) -> None:
    """Print warning message."""
    (out or console).print(f"[bold yellow]⚠[/bold yellow] {escape(message)}")


# ── Payload accessors ────────────────────────────────────────


def _get(payload: Any, key: str) -> Any:
    if not isinstance(payload, dict) or key not in payload:
        raise ProtocolError(f"API error: expected `{key}` key")
    return payload[key]


def _get_str(payload: Any, key: str) -> str:
    value = _get(payload, key)
    if not isinstance(value, str):
        raise ProtocolError(f"API error: `{key}` is not a string")
    return value


def _get_num(payload: Any, key: str) -> int:
    value = _get(payload, key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolError(f"API error: `{key}` is not a number")
    return value


def _first_result_object(payload: Any) -> dict:
    results = _get(payload, "result")
    if not isinstance(results, list) or not results or not isinstance(results[0], dict):
        raise ProtocolError("response parse error: `result` is not a list of objects")
    return results[0]


# ── Printers ─────────────────────────────────────────────────


def result_printer(payload: Any, out: Console) -> None:
    out.print(_get_str(payload, "result"), markup=False, highlight=False)


def power_status_printer(payload: Any, out: Console) -> None:
    for key, value in _first_result_object(payload).items():
        try:
            number = int(value)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"API error: power state of {key} is not a number") from e
        state = "[green]On[/green]" if number == 1 else "[dim]off[/dim]"
        out.print(f"{escape(str(key))}: {state}")


def info_printer(payload: Any, out: Console) -> None:
    table = Table(show_header=True, header_style="bold magenta", border_style="cyan")
    table.add_column("key", style="bold")
    table.add_column("value")
    for key, value in _first_result_object(payload).items():
        table.add_row(str(key), str(value))
    out.print(table)


def usb_status_printer(payload: Any, out: Console) -> None:
    results = _first_result_object(payload)
    node = _get_str(results, "node").lower()
    mode = _get_str(results, "mode").lower()
    route = _get_str(results, "route").lower()

    host, device = (node, route) if mode == "host" else (route, node)
    out.print(f"{'USB Host':^12}-->{'USB Device':^12}", markup=False, highlight=False)
    out.print(f"{host:^12}-->{device:^12}", markup=False, highlight=False)


def uart_printer(payload: Any, out: Console) -> None:
    out.print(_get_str(payload, "uart"), end="", markup=False, highlight=False)


def cooling_printer(payload: Any, out: Console) -> None:
    result = _get(payload, "result")
    if isinstance(result, str):
        out.print(result, markup=False, highlight=False)
        return
    if not isinstance(result, list):
        raise ProtocolError("API error: `result` is neither a string nor a list")

    if not result:
        out.print("No cooling devices found")
        return

    table = Table(show_header=True, header_style="bold magenta", border_style="cyan")
    table.add_column("Device")
    table.add_column("Speed", justify="right")
    table.add_column("Max Speed", justify="right")
    for device in result:
        table.add_row(
            _get_str(device, "device"),
            str(_get_num(device, "speed")),
            str(_get_num(device, "max_speed")),
        )
    out.print(table)
