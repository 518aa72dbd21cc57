"""Command-line interface for the Turing Pi BMC."""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx
import typer
from pydantic import ValidationError

from tpi import __version__
from tpi.client.handler import CommandHandler
from tpi.client.output import console, print_error, print_warning
from tpi.common.config import ClientSettings, configure_logging, load_client_settings
from tpi.common.errors import TpiError
from tpi.common.models import ApiVersion, CoolingCmd, EthCmd, GetSet, ModeCmd, PowerCmd, UsbCmd

app = typer.Typer(
    name="tpi",
    help=(
        "Command-line interface that controls the Turing Pi BMC. The BMC must be "
        "reachable over TCP/IP. All commands are persisted by the BMC."
    ),
    no_args_is_help=True,
    add_completion=True,
)

NODE_HELP = "Node number [possible values: 1-4]"


@dataclass
class CliState:
    settings: ClientSettings
    json_output: bool = False


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"tpi {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(
        None,
        "--host",
        help="Turing Pi host to connect to. IPv6 addresses must be wrapped in square brackets, e.g. [::1]",
    ),
    port: Optional[int] = typer.Option(None, "--port", help="Connect to a specific port"),
    user: Optional[str] = typer.Option(
        None,
        "--user",
        help="User to log in as. Without it you are prompted, unless a cached token is present.",
    ),
    password: Optional[str] = typer.Option(None, "--password", help="Password for --user"),
    json_output: bool = typer.Option(False, "--json", help="Print results formatted as JSON"),
    api_version: Optional[ApiVersion] = typer.Option(
        None,
        "--api-version",
        "-a",
        help="Force the BMC API version. Use v1 with older BMC firmware. [default: v1-1]",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    try:
        settings = load_client_settings(
            host=host,
            port=port,
            user=user,
            password=password,
            api_version=api_version.value if api_version else None,
        )
    except ValidationError as e:
        print_error(f"Invalid configuration: {e}")
        raise typer.Exit(1)

    configure_logging("DEBUG" if verbose else settings.log_level)
    ctx.obj = CliState(settings=settings, json_output=json_output)


def _run(ctx: typer.Context, action: Callable[[CommandHandler], Awaitable[Any]]) -> None:
    """Run *action* against a fresh handler and map failures to exit codes."""
    state: CliState = ctx.obj

    async def runner() -> None:
        async with CommandHandler(state.settings, json_output=state.json_output) as handler:
            await action(handler)

    try:
        asyncio.run(runner())
    except (KeyboardInterrupt, typer.Abort):
        console.print()
        print_warning("Aborted.")
        raise typer.Exit(130)
    except TpiError as e:
        print_error(str(e))
        raise typer.Exit(1)
    except httpx.HTTPError as e:
        print_error(f"Request failed: {str(e) or type(e).__name__}")
        raise typer.Exit(1)


# ── Commands ─────────────────────────────────────────────────


@app.command()
def power(
    ctx: typer.Context,
    cmd: PowerCmd = typer.Argument(..., help="Power action"),
    node: Optional[int] = typer.Option(None, "--node", "-n", help=f"{NODE_HELP}. Omit to select all nodes."),
) -> None:
    """Power on/off or reset specific nodes."""
    _run(ctx, lambda h: h.power(cmd, node))


@app.command()
def usb(
    ctx: typer.Context,
    mode: UsbCmd = typer.Argument(..., help="USB mode to set the node in, or status"),
    node: Optional[int] = typer.Option(None, "--node", "-n", help=NODE_HELP),
    bmc: bool = typer.Option(False, "--bmc", "-b", help="Route the USB bus to the BMC chip instead of USB-A"),
) -> None:
    """Change the USB device/host configuration.

    The USB bus can only be routed to one node at a time.
    """
    _run(ctx, lambda h: h.usb(mode, node, bmc))


@app.command()
def firmware(
    ctx: typer.Context,
    file: Path = typer.Option(..., "--file", "-f", help="Firmware image"),
    sha256: Optional[str] = typer.Option(None, "--sha256", help="Expected SHA-256 of the image"),
) -> None:
    """Upgrade the firmware of the BMC."""
    _run(ctx, lambda h: h.firmware(file, sha256=sha256))


@app.command()
def flash(
    ctx: typer.Context,
    image_path: Path = typer.Option(..., "--image-path", "-i", help="Image to flash"),
    node: int = typer.Option(..., "--node", "-n", help=NODE_HELP),
    sha256: Optional[str] = typer.Option(None, "--sha256", help="Expected SHA-256 of the image"),
    skip_crc: bool = typer.Option(False, "--skip-crc", help="Do not verify the image after writing"),
    local: bool = typer.Option(
        False,
        "--local",
        "-l",
        help="Flash an image the BMC can already see, typically on its microSD card",
    ),
) -> None:
    """Flash a given node."""
    _run(ctx, lambda h: h.flash(image_path, node, sha256=sha256, skip_crc=skip_crc, local=local))


@app.command()
def eth(
    ctx: typer.Context,
    cmd: EthCmd = typer.Argument(..., help="Switch action"),
) -> None:
    """Configure the on-board Ethernet switch."""
    _run(ctx, lambda h: h.eth_reset())


@app.command()
def uart(
    ctx: typer.Context,
    action: GetSet = typer.Argument(..., help="Read (get) or write (set)"),
    node: int = typer.Option(..., "--node", "-n", help=NODE_HELP),
    cmd: Optional[str] = typer.Option(None, "--cmd", "-c", help="Command to write (set only)"),
) -> None:
    """Read or write over UART."""
    _run(ctx, lambda h: h.uart(action, node, cmd))


@app.command()
def advanced(
    ctx: typer.Context,
    mode: ModeCmd = typer.Argument(..., help="normal clears any advanced mode, msd exposes eMMC as mass storage"),
    node: int = typer.Option(..., "--node", "-n", help=NODE_HELP),
) -> None:
    """Advanced node modes."""
    _run(ctx, lambda h: h.advanced(mode, node))


@app.command()
def cooling(
    ctx: typer.Context,
    cmd: CoolingCmd = typer.Argument(..., help="Show fan status or set a fan speed"),
    device: Optional[str] = typer.Option(None, "--device", "-d", help="Cooling device name"),
    speed: Optional[int] = typer.Option(None, "--speed", "-s", help="Target speed"),
) -> None:
    """Show or set cooling device speeds."""
    _run(ctx, lambda h: h.cooling(cmd, device, speed))


@app.command()
def info(ctx: typer.Context) -> None:
    """Print Turing Pi info."""
    _run(ctx, lambda h: h.info())


@app.command()
def reboot(ctx: typer.Context) -> None:
    """Reboot the BMC."""
    _run(ctx, lambda h: h.reboot())


def main() -> None:
    app()


if __name__ == "__main__":
    main()
