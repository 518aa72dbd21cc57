"""Command handlers: build legacy API requests, send them, print the answers."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import httpx
from pydantic import ValidationError
from rich.console import Console

from tpi.client.auth import Authenticator, Prompter
from tpi.client.credentials import CredentialStore
from tpi.client.output import (
    ResponsePrinter,
    cooling_printer,
    format_size,
    info_printer,
    power_status_printer,
    print_success,
    print_warning,
    result_printer,
    uart_printer,
    usb_status_printer,
)
from tpi.client.output import console as default_console
from tpi.client.progress import FlashDisplay, ProgressMonitor, RichFlashDisplay
from tpi.client.request import (
    ApiRequest,
    RequestChannel,
    create_http_client,
    envelope_detail,
    extract_payload,
    read_json,
)
from tpi.client.uploader import UploadPipeline
from tpi.common.config import ClientSettings
from tpi.common.constants import API_VERSION_V1, NODE_COUNT, UPLOAD_PATH, WINDOW_SIZE, Opt, QueryKeys, RequestType
from tpi.common.errors import ProtocolError, UnexpectedStatus, UploadError, UsageError
from tpi.common.models import (
    CoolingCmd,
    Credential,
    Done,
    Endpoint,
    FlashHandle,
    GetSet,
    ModeCmd,
    PowerCmd,
    UsbCmd,
)

logger = logging.getLogger("tpi.client.handler")


def _node_index(node: int) -> int:
    """Nodes are numbered 1..4 on the command line and 0..3 on the wire."""
    if not 1 <= node <= NODE_COUNT:
        raise UsageError(f"node must be between 1 and {NODE_COUNT}, got {node}")
    return node - 1


def _query(opt: str, type_: str) -> ApiRequest:
    return ApiRequest().append(QueryKeys.OPT, opt).append(QueryKeys.TYPE, type_)


# ── Request builders ─────────────────────────────────────────


def power_request(cmd: PowerCmd, node: Optional[int] = None) -> tuple[ApiRequest, ResponsePrinter]:
    if cmd == PowerCmd.STATUS:
        return _query(Opt.GET, RequestType.POWER), power_status_printer

    if cmd == PowerCmd.RESET:
        if node is None:
            raise UsageError("`--node` argument must be set.")
        return _query(Opt.SET, RequestType.RESET).append(QueryKeys.NODE, _node_index(node)), result_printer

    req = _query(Opt.SET, RequestType.POWER)
    on_bit = "1" if cmd == PowerCmd.ON else "0"
    if node is not None:
        _node_index(node)
        req.append(f"node{node}", on_bit)
    else:
        for n in range(1, NODE_COUNT + 1):
            req.append(f"node{n}", on_bit)
    return req, result_printer


def usb_request(mode: UsbCmd, node: Optional[int] = None, bmc: bool = False) -> tuple[ApiRequest, ResponsePrinter]:
    if mode == UsbCmd.STATUS:
        return _query(Opt.GET, RequestType.USB), usb_status_printer

    if node is None:
        raise UsageError("`--node` argument missing")

    mode_bits = {UsbCmd.HOST: 0, UsbCmd.DEVICE: 1, UsbCmd.FLASH: 2}[mode]
    mode_bits |= int(bmc) << 2
    req = (
        _query(Opt.SET, RequestType.USB)
        .append(QueryKeys.NODE, _node_index(node))
        .append(QueryKeys.MODE, mode_bits)
    )
    return req, result_printer


def eth_reset_request() -> tuple[ApiRequest, ResponsePrinter]:
    return _query(Opt.SET, RequestType.NETWORK).append(QueryKeys.CMD, "reset"), result_printer


def uart_request(action: GetSet, node: int, cmd: Optional[str] = None) -> tuple[ApiRequest, ResponsePrinter]:
    if action == GetSet.GET:
        return _query(Opt.GET, RequestType.UART).append(QueryKeys.NODE, _node_index(node)), uart_printer

    if cmd is None:
        raise UsageError("uart set command requires `--cmd` argument.")
    req = _query(Opt.SET, RequestType.UART).append(QueryKeys.NODE, _node_index(node)).append(QueryKeys.CMD, cmd)
    return req, result_printer


def cooling_request(
    cmd: CoolingCmd,
    device: Optional[str] = None,
    speed: Optional[int] = None,
) -> tuple[ApiRequest, ResponsePrinter]:
    if cmd == CoolingCmd.STATUS:
        return _query(Opt.GET, RequestType.COOLING), cooling_printer

    if device is None or speed is None:
        raise UsageError("Device and speed arguments are required for the set command")
    req = _query(Opt.SET, RequestType.COOLING).append("device", device).append("speed", speed)
    return req, cooling_printer


def info_request() -> tuple[ApiRequest, ResponsePrinter]:
    return _query(Opt.GET, RequestType.OTHER), info_printer


def reboot_request() -> tuple[ApiRequest, ResponsePrinter]:
    return _query(Opt.SET, RequestType.REBOOT), result_printer


def flash_request(
    file_name: str,
    size: int,
    node: int,
    sha256: Optional[str] = None,
    skip_crc: bool = False,
) -> ApiRequest:
    """Negotiation for flashing an image onto a node."""
    req = (
        _query(Opt.SET, RequestType.FLASH)
        .append(QueryKeys.FILE, file_name)
        .append(QueryKeys.LENGTH, size)
        .append(QueryKeys.NODE, _node_index(node))
    )
    if sha256:
        req.append(QueryKeys.SHA256, sha256)
    if skip_crc:
        req.append_key_only(QueryKeys.SKIP_CRC)
    return req


def local_flash_request(image_path: str, node: int) -> ApiRequest:
    """Flash from an image already on the BMC's filesystem."""
    return (
        _query(Opt.SET, RequestType.FLASH)
        .append_key_only(QueryKeys.LOCAL)
        .append(QueryKeys.FILE, image_path)
        .append(QueryKeys.NODE, _node_index(node))
    )


def firmware_request(file_name: str, size: Optional[int] = None, sha256: Optional[str] = None) -> ApiRequest:
    """BMC firmware upgrade. ``size`` is only sent to API v1-1."""
    req = _query(Opt.SET, RequestType.FIRMWARE).append(QueryKeys.FILE, file_name)
    if size is not None:
        req.append(QueryKeys.LENGTH, size)
    if sha256:
        req.append(QueryKeys.SHA256, sha256)
    return req


def _image_info(path: Path) -> tuple[str, int]:
    try:
        size = path.stat().st_size
    except OSError as e:
        raise UploadError(f"cannot open file {path}: {e}") from e
    if not path.name:
        raise UploadError(f"file_name could not be extracted from {path}")
    return path.name, size


# ── Handler ──────────────────────────────────────────────────


class CommandHandler:
    """Run BMC commands for one session.

    Owns the HTTP client, the request channel and the upload/progress
    machinery. Use as an async context manager.
    """

    def __init__(
        self,
        settings: ClientSettings,
        json_output: bool = False,
        prompter: Optional[Prompter] = None,
        display: Optional[FlashDisplay] = None,
        out: Optional[Console] = None,
        http: Optional[httpx.AsyncClient] = None,
        window_size: int = WINDOW_SIZE,
    ) -> None:
        self.settings = settings
        self.json_output = json_output
        self.console = out or default_console

        self.endpoint = Endpoint(host=settings.host_with_port, api_version=settings.api_version)
        self.http = http or create_http_client(self.endpoint, settings.timeout)
        self.store = CredentialStore(settings.token_path)
        self.authenticator = Authenticator(
            self.http,
            self.endpoint,
            credential=Credential(username=settings.user, password=settings.password),
            store=self.store,
            prompter=prompter,
            warn=self._warn,
        )
        self.channel = RequestChannel(self.endpoint, self.authenticator, self.http)
        self.pipeline = UploadPipeline(
            self.channel,
            window_size=window_size,
            progress_callback=self._on_chunk_sent,
            warn=self._warn,
        )
        self.monitor = ProgressMonitor(
            self.channel,
            display=display or RichFlashDisplay(self.console),
            initial_delay=settings.poll_initial_delay,
            poll_interval=settings.poll_interval,
        )

    async def __aenter__(self) -> "CommandHandler":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.channel.aclose()

    @property
    def is_v1(self) -> bool:
        return self.endpoint.api_version == API_VERSION_V1

    def _warn(self, message: str) -> None:
        print_warning(message, self.console)

    @staticmethod
    def _on_chunk_sent(sent: int, total: int) -> None:
        logger.debug("Uploaded %d/%d bytes", sent, total)

    # ── Plain commands ───────────────────────────────────────

    async def execute(self, request: ApiRequest, printer: Optional[ResponsePrinter] = None) -> Any:
        """Send *request* and print its ``response`` payload.

        Returns:
            The parsed JSON body.
        """
        resp = await self.channel.send(request)
        if not resp.is_success and envelope_detail(resp) is None:
            raise UnexpectedStatus(
                f"BMC answered {resp.status_code} {resp.reason_phrase}: {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )
        body = read_json(resp)

        if self.json_output:
            self.console.print(json.dumps(body), markup=False, highlight=False, soft_wrap=True)
        else:
            payload = extract_payload(body)
            if printer is None:
                self.console.print(json.dumps(payload), markup=False, highlight=False)
            else:
                try:
                    printer(payload, self.console)
                except ProtocolError as e:
                    self.console.print(json.dumps(payload), markup=False, highlight=False)
                    self._warn(str(e))

        if not resp.is_success:
            raise UnexpectedStatus(
                f"BMC answered {resp.status_code} {resp.reason_phrase}",
                status_code=resp.status_code,
                body=resp.text,
            )
        return body

    async def power(self, cmd: PowerCmd, node: Optional[int] = None) -> Any:
        return await self.execute(*power_request(cmd, node))

    async def usb(self, mode: UsbCmd, node: Optional[int] = None, bmc: bool = False) -> Any:
        return await self.execute(*usb_request(mode, node, bmc))

    async def eth_reset(self) -> Any:
        return await self.execute(*eth_reset_request())

    async def uart(self, action: GetSet, node: int, cmd: Optional[str] = None) -> Any:
        return await self.execute(*uart_request(action, node, cmd))

    async def cooling(self, cmd: CoolingCmd, device: Optional[str] = None, speed: Optional[int] = None) -> Any:
        return await self.execute(*cooling_request(cmd, device, speed))

    async def info(self) -> Any:
        return await self.execute(*info_request())

    async def reboot(self) -> Any:
        return await self.execute(*reboot_request())

    async def advanced(self, mode: ModeCmd, node: int) -> Any:
        if mode == ModeCmd.MSD:
            req = _query(Opt.SET, RequestType.NODE_TO_MSD).append(QueryKeys.NODE, _node_index(node))
            return await self.execute(req, result_printer)

        req = _query(Opt.SET, RequestType.CLEAR_USB_BOOT).append(QueryKeys.NODE, _node_index(node))
        resp = await self.channel.send(req)
        if not resp.is_success:
            raise UnexpectedStatus(
                f"could not execute Normal mode: {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )
        return await self.power(PowerCmd.RESET, node)

    # ── Uploads ──────────────────────────────────────────────

    async def flash(
        self,
        image_path: Path,
        node: int,
        sha256: Optional[str] = None,
        skip_crc: bool = False,
        local: bool = False,
    ) -> Optional[Done]:
        """Flash an OS image onto *node*."""
        if local:
            return await self._flash_local(str(image_path), node)

        path = Path(image_path)
        file_name, size = _image_info(path)
        self.console.print(f"request flashing of {file_name} to node {node}")
        negotiation = flash_request(file_name, size, node, sha256=sha256, skip_crc=skip_crc)

        if self.is_v1:
            await self.pipeline.upload_bulk(path, negotiation)
            print_success(f"Uploaded {file_name}", self.console)
            return None
        return await self._stream_upload(negotiation, path, size)

    async def firmware(self, file: Path, sha256: Optional[str] = None) -> Optional[Done]:
        """Upgrade the BMC firmware."""
        path = Path(file)
        file_name, size = _image_info(path)

        if self.is_v1:
            await self.pipeline.upload_bulk(path, firmware_request(file_name))
            print_success(f"Uploaded {file_name}", self.console)
            return None
        return await self._stream_upload(firmware_request(file_name, size, sha256), path, size)

    async def _negotiate(self, request: ApiRequest) -> int:
        resp = await self.channel.send(request)
        if not resp.is_success:
            raise UnexpectedStatus(
                f"could not execute flashing: {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )
        try:
            return FlashHandle.model_validate(read_json(resp)).handle
        except ValidationError as e:
            raise ProtocolError(f"API error: expected `handle` attribute: {resp.text}") from e

    async def _stream_upload(self, negotiation: ApiRequest, path: Path, size: int) -> Done:
        handle = await self._negotiate(negotiation)
        self.console.print(f"started transfer of {format_size(size)}..")
        logger.debug("Transfer handle %d", handle)

        destination = negotiation.to_post().push(UPLOAD_PATH, handle)
        upload_task = asyncio.create_task(self.pipeline.upload_file(path, destination))
        monitor_task = self.monitor.watch_in_background(handle)
        try:
            done, _ = await asyncio.wait({upload_task, monitor_task}, return_when=asyncio.FIRST_EXCEPTION)
            for task in (upload_task, monitor_task):
                if task in done:
                    task.result()
            return await monitor_task
        finally:
            for task in (upload_task, monitor_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(upload_task, monitor_task, return_exceptions=True)

    async def _flash_local(self, image_path: str, node: int) -> Done:
        resp = await self.channel.send(local_flash_request(image_path, node))
        if not resp.is_success:
            detail = envelope_detail(resp)
            if detail is not None:
                self.console.print(f"Error: {detail}", markup=False)
            raise UnexpectedStatus(
                f"Failed to begin flashing: {resp.status_code} {resp.reason_phrase}",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            handle = FlashHandle.model_validate(read_json(resp)).handle
        except ValidationError as e:
            raise ProtocolError(f"API error: expected `handle` attribute: {resp.text}") from e

        self.console.print(f"Flashing from image file {image_path}...")
        return await self.monitor.watch(handle)
