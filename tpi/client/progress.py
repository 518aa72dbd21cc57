"""Flashing progress polling and display."""

import asyncio
import json
import logging
from typing import Any, Optional, Protocol
from pydantic import ValidationError
from rich.console import Console
from rich.progress import Progress, TaskID
from rich.status import Status

from tpi.client.output import console as default_console
from tpi.client.output import create_transfer_progress, print_success
from tpi.client.request import ApiRequest, RequestChannel, envelope_detail, read_json
from tpi.common.constants import POLL_INITIAL_DELAY, POLL_INTERVAL, Opt, QueryKeys, RequestType
from tpi.common.errors import FlashError, ProtocolError, UnexpectedStatus
from tpi.common.models import Done, TransferError, Transferring, TransferState

logger = logging.getLogger("tpi.client.progress")


def interpret(payload: Any) -> TransferState:
    """Map a progress poll body onto a :data:`TransferState`.

    Raises:
        ProtocolError: The body is none of ``Transferring``, ``Done``, ``Error``.
    """
    if isinstance(payload, dict):
        if "Transferring" in payload:
            try:
                return Transferring.model_validate(payload["Transferring"])
            except ValidationError as e:
                raise ProtocolError(f"API error: malformed `Transferring` state: {payload!r}") from e
        if "Done" in payload:
            return Done()
        if "Error" in payload:
            message = payload["Error"]
            if not isinstance(message, str):
                message = json.dumps(message)
            return TransferError(message=message)
    raise ProtocolError(f"Unexpected response: {payload!r}")


def progress_request() -> ApiRequest:
    """``GET ?opt=get&type=flash``."""
    return ApiRequest().append(QueryKeys.OPT, Opt.GET).append(QueryKeys.TYPE, RequestType.FLASH)


class FlashDisplay(Protocol):
    """What the monitor tells the user while flashing."""

    def start(self, total: int) -> None: ...

    def advance(self, bytes_written: int) -> None: ...

    def verifying(self) -> None: ...

    def done(self) -> None: ...

    def close(self) -> None: ...


class RichFlashDisplay:
    """Byte progress bar, then a spinner while the BMC verifies the image."""

    def __init__(self, out: Optional[Console] = None) -> None:
        self.console = out or default_console
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None
        self._status: Optional[Status] = None

    def start(self, total: int) -> None:
        self._progress = create_transfer_progress(self.console)
        self._task = self._progress.add_task("[cyan]Flashing", total=total)
        self._progress.start()

    def advance(self, bytes_written: int) -> None:
        if self._progress is not None and self._task is not None:
            self._progress.update(self._task, completed=bytes_written)

    def verifying(self) -> None:
        self._stop_progress()
        self._status = self.console.status("[bold cyan]Verifying checksum...", spinner="dots")
        self._status.start()

    def done(self) -> None:
        self.close()
        print_success("Done", self.console)

    def close(self) -> None:
        self._stop_progress()
        if self._status is not None:
            self._status.stop()
            self._status = None

    def _stop_progress(self) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None
            self._task = None


class ProgressMonitor:
    """Poll the BMC until a flash transfer reaches ``Done`` or ``Error``.

    After ``initial_delay`` seconds the status endpoint is polled every
    ``poll_interval`` seconds. ``Transferring`` updates the display and,
    once every byte is written, switches it to "verifying" exactly once.
    """

    def __init__(
        self,
        channel: RequestChannel,
        display: Optional[FlashDisplay] = None,
        initial_delay: float = POLL_INITIAL_DELAY,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self.channel = channel
        self.display: FlashDisplay = display or RichFlashDisplay()
        self.initial_delay = initial_delay
        self.poll_interval = poll_interval
        self.polls = 0

    async def poll(self) -> TransferState:
        """Fetch and interpret one progress report."""
        resp = await self.channel.send(progress_request())
        self.polls += 1
        if not resp.is_success:
            message = f"Failed to get flashing progress: {resp.status_code} {resp.reason_phrase}"
            detail = envelope_detail(resp)
            if detail is not None:
                message += f"\nError: {detail}"
            raise UnexpectedStatus(message, status_code=resp.status_code, body=resp.text)
        return interpret(read_json(resp))

    async def watch(self, handle: int) -> Done:
        """Poll until the transfer with *handle* finishes.

        Raises:
            FlashError: The BMC reported an error.
            ProtocolError: Handle mismatch or unexpected poll body.
        """
        started = False
        verifying = False

        await asyncio.sleep(self.initial_delay)
        try:
            while True:
                state = await self.poll()

                if isinstance(state, Transferring):
                    if state.id != handle:
                        raise ProtocolError(f"Invalid flashing handle: expected {handle}, got {state.id}")
                    if not started:
                        self.display.start(state.size)
                        started = True
                    if state.is_written:
                        if not verifying:
                            logger.debug("All %d bytes written, verifying", state.size)
                            self.display.verifying()
                            verifying = True
                    else:
                        logger.debug("Flashing %.1f%%", state.progress)
                        self.display.advance(state.bytes_written)
                    await asyncio.sleep(self.poll_interval)
                    continue

                if isinstance(state, Done):
                    self.display.done()
                    return state

                raise FlashError(f"Error occurred during flashing: {state.message}")
        finally:
            self.display.close()

    def watch_in_background(self, handle: int) -> "asyncio.Task[Done]":
        """Start :meth:`watch` as its own task."""
        return asyncio.create_task(self.watch(handle))
