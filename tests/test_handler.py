"""Command handlers: query construction, printing and the flash flows."""

import io
import json
from pathlib import Path
from typing import Optional

import httpx
import pytest
from rich.console import Console

from tpi.client.handler import (
    CommandHandler,
    cooling_request,
    eth_reset_request,
    firmware_request,
    flash_request,
    info_request,
    local_flash_request,
    power_request,
    reboot_request,
    uart_request,
    usb_request,
)
from tpi.client.output import power_status_printer, result_printer
from tpi.common.config import ClientSettings
from tpi.common.errors import FlashError, UnexpectedStatus, UploadError, UsageError
from tpi.common.models import CoolingCmd, Done, GetSet, ModeCmd, PowerCmd, UsbCmd

from conftest import BMC_HOST, FakeBmc, FakeDisplay, FakePrompter, ok_result

# ── Request builders ───────────────────────────────────────────


def test_power_on_all_nodes():
    req, printer = power_request(PowerCmd.ON)
    assert req.query_string() == "opt=set&type=power&node1=1&node2=1&node3=1&node4=1"
    assert printer is result_printer


def test_power_off_single_node():
    req, _ = power_request(PowerCmd.OFF, 2)
    assert req.query_string() == "opt=set&type=power&node2=0"


def test_power_reset_needs_node():
    with pytest.raises(UsageError, match="--node"):
        power_request(PowerCmd.RESET)
    req, _ = power_request(PowerCmd.RESET, 4)
    assert req.query_string() == "opt=set&type=reset&node=3"


def test_power_status():
    req, printer = power_request(PowerCmd.STATUS)
    assert req.query_string() == "opt=get&type=power"
    assert printer is power_status_printer


@pytest.mark.parametrize(
    "mode,bmc,expected",
    [
        (UsbCmd.HOST, False, 0),
        (UsbCmd.DEVICE, False, 1),
        (UsbCmd.FLASH, False, 2),
        (UsbCmd.HOST, True, 4),
        (UsbCmd.DEVICE, True, 5),
    ],
)
def test_usb_mode_bits(mode: UsbCmd, bmc: bool, expected: int):
    req, _ = usb_request(mode, 3, bmc)
    assert req.query_string() == f"opt=set&type=usb&node=2&mode={expected}"


def test_usb_set_needs_node():
    with pytest.raises(UsageError):
        usb_request(UsbCmd.HOST)
    assert usb_request(UsbCmd.STATUS)[0].query_string() == "opt=get&type=usb"


@pytest.mark.parametrize("node", [0, 5])
def test_node_out_of_range(node: int):
    with pytest.raises(UsageError, match="between 1 and 4"):
        uart_request(GetSet.GET, node)


def test_uart():
    assert uart_request(GetSet.GET, 1)[0].query_string() == "opt=get&type=uart&node=0"
    assert uart_request(GetSet.SET, 2, "ls -l")[0].query_string() == "opt=set&type=uart&node=1&cmd=ls+-l"
    with pytest.raises(UsageError, match="--cmd"):
        uart_request(GetSet.SET, 2)


def test_cooling():
    assert cooling_request(CoolingCmd.STATUS)[0].query_string() == "opt=get&type=cooling"
    req, _ = cooling_request(CoolingCmd.SET, "fan0", 120)
    assert req.query_string() == "opt=set&type=cooling&device=fan0&speed=120"
    with pytest.raises(UsageError):
        cooling_request(CoolingCmd.SET, "fan0")


def test_simple_commands():
    assert eth_reset_request()[0].query_string() == "opt=set&type=network&cmd=reset"
    assert info_request()[0].query_string() == "opt=get&type=other"
    assert reboot_request()[0].query_string() == "opt=set&type=reboot"


def test_flash_negotiation():
    req = flash_request("os.img", 200_000, 2, sha256="abc", skip_crc=True)
    assert req.query_string() == "opt=set&type=flash&file=os.img&length=200000&node=1&sha256=abc&skip_crc"
    assert flash_request("os.img", 10, 1).query_string() == "opt=set&type=flash&file=os.img&length=10&node=0"


def test_local_flash_request():
    req = local_flash_request("/mnt/sdcard/os.img", 1)
    assert req.query_string() == "opt=set&type=flash&local&file=%2Fmnt%2Fsdcard%2Fos.img&node=0"


def test_firmware_request():
    assert firmware_request("fw.swu").query_string() == "opt=set&type=firmware&file=fw.swu"
    assert firmware_request("fw.swu", 512, "ff").query_string() == "opt=set&type=firmware&file=fw.swu&length=512&sha256=ff"


# ── Helpers ────────────────────────────────────────────────────


class FlashingBmc(FakeBmc):
    """Negotiates a handle, takes chunks and reports progress from what it received."""

    def __init__(self, size: int, handle: int = 7) -> None:
        super().__init__(api=self._flash_api)
        self.size = size
        self.handle = handle
        self.chunks: list[bytes] = []
        self.negotiation: Optional[httpx.Request] = None
        self._reported_full = False

    def _flash_api(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        if request.url.path == f"/api/bmc/upload/{self.handle}":
            self.chunks.append(request.content)
            return httpx.Response(200)
        if params.get("opt") == "set":
            self.negotiation = request
            return httpx.Response(200, json={"handle": self.handle})
        if params.get("opt") == "get" and params.get("type") == "flash":
            written = sum(len(c) for c in self.chunks)
            if written >= self.size and self._reported_full:
                return httpx.Response(200, json={"Done": None})
            if written >= self.size:
                self._reported_full = True
            return httpx.Response(
                200,
                json={"Transferring": {"id": self.handle, "size": self.size, "bytes_written": written}},
            )
        return httpx.Response(404)


@pytest.fixture
def output() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def make_handler(token_file: Path, prompter: FakePrompter, display: FakeDisplay, output: io.StringIO):
    def factory(bmc: FakeBmc, json_output: bool = False, api_version: str = "v1-1") -> CommandHandler:
        settings = ClientSettings(
            host=BMC_HOST,
            api_version=api_version,
            token_file=token_file,
            poll_initial_delay=0,
            poll_interval=0,
        )
        return CommandHandler(
            settings,
            json_output=json_output,
            prompter=prompter,
            display=display,
            out=Console(file=output, width=200),
            http=bmc.client(),
        )

    return factory


# ── Plain commands ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_power_status_printed(make_handler, output: io.StringIO):
    body = {"response": [{"result": [{"node1": "1", "node2": "0", "node3": "0", "node4": "1"}]}]}
    bmc = FakeBmc(api=lambda request: httpx.Response(200, json=body))

    async with make_handler(bmc) as handler:
        assert await handler.power(PowerCmd.STATUS) == body

    text = output.getvalue()
    assert "node1: On" in text
    assert "node2: off" in text


@pytest.mark.asyncio
async def test_power_status_keys_are_printed_verbatim(make_handler, output: io.StringIO):
    body = {"response": [{"result": [{"node[/x]": "1"}]}]}
    bmc = FakeBmc(api=lambda request: httpx.Response(200, json=body))

    async with make_handler(bmc) as handler:
        await handler.power(PowerCmd.STATUS)

    assert "node[/x]: On" in output.getvalue()


@pytest.mark.asyncio
async def test_json_output_prints_raw_body(make_handler, output: io.StringIO):
    bmc = FakeBmc(api=lambda request: ok_result())

    async with make_handler(bmc, json_output=True) as handler:
        await handler.reboot()

    assert json.loads(output.getvalue()) == {"response": [{"result": "ok"}]}


@pytest.mark.asyncio
async def test_unexpected_payload_falls_back_to_raw(make_handler, output: io.StringIO):
    bmc = FakeBmc(api=lambda request: httpx.Response(200, json={"response": [{"unexpected": 1}]}))

    async with make_handler(bmc) as handler:
        await handler.info()

    text = output.getvalue()
    assert '{"unexpected": 1}' in text
    assert "`result`" in text


@pytest.mark.asyncio
async def test_error_envelope_printed_then_raised(make_handler, output: io.StringIO):
    bmc = FakeBmc(api=lambda request: httpx.Response(500, json={"response": [{"result": "node busy"}]}))

    async with make_handler(bmc) as handler:
        with pytest.raises(UnexpectedStatus) as exc_info:
            await handler.eth_reset()

    assert exc_info.value.status_code == 500
    assert "node busy" in output.getvalue()


@pytest.mark.asyncio
async def test_error_without_envelope(make_handler):
    bmc = FakeBmc(api=lambda request: httpx.Response(502, text="bad gateway"))

    async with make_handler(bmc) as handler:
        with pytest.raises(UnexpectedStatus, match="bad gateway"):
            await handler.info()


@pytest.mark.asyncio
async def test_advanced_normal_clears_usb_boot_then_resets(make_handler):
    bmc = FakeBmc(api=lambda request: ok_result())

    async with make_handler(bmc) as handler:
        await handler.advanced(ModeCmd.NORMAL, 3)

    types = [r.url.params["type"] for r in bmc.api_requests]
    assert types == ["clear_usb_boot", "reset"]
    assert all(r.url.params["node"] == "2" for r in bmc.api_requests)


@pytest.mark.asyncio
async def test_advanced_msd(make_handler):
    bmc = FakeBmc(api=lambda request: ok_result())

    async with make_handler(bmc) as handler:
        await handler.advanced(ModeCmd.MSD, 1)

    assert bmc.api_requests[0].url.params["type"] == "node_to_msd"


@pytest.mark.asyncio
async def test_prompted_token_is_cached(make_handler, token_file: Path, prompter: FakePrompter):
    bmc = FakeBmc()

    async with make_handler(bmc) as handler:
        await handler.info()

    assert prompter.prompts == ["User", "Password"]
    assert token_file.read_text(encoding="utf-8") == "token-1"


# ── Flash flows ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_flash_streams_image_and_waits_for_done(make_handler, tmp_path: Path, display: FakeDisplay):
    image = tmp_path / "os.img"
    data = bytes(i % 256 for i in range(200_000))
    image.write_bytes(data)
    bmc = FlashingBmc(size=len(data))

    async with make_handler(bmc) as handler:
        state = await handler.flash(image, 2, sha256="abc")

    assert isinstance(state, Done)
    assert bmc.negotiation is not None
    params = bmc.negotiation.url.params
    assert params["file"] == "os.img"
    assert params["length"] == "200000"
    assert params["node"] == "1"
    assert params["sha256"] == "abc"
    assert [len(c) for c in bmc.chunks] == [65535, 65535, 65535, 3395]
    assert b"".join(bmc.chunks) == data
    uploads = [r for r in bmc.requests if r.url.path.startswith("/api/bmc/upload/")]
    assert uploads
    assert all(r.method == "POST" and not r.url.query for r in uploads)
    assert display.count("verifying") == 1
    assert display.count("done") == 1


@pytest.mark.asyncio
async def test_flash_error_reported_by_bmc(make_handler, tmp_path: Path):
    image = tmp_path / "os.img"
    image.write_bytes(b"x" * 1000)

    def api(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/api/bmc/upload/"):
            return httpx.Response(200)
        if request.url.params.get("opt") == "set":
            return httpx.Response(200, json={"handle": 1})
        return httpx.Response(200, json={"Error": "emmc not found"})

    async with make_handler(FakeBmc(api=api)) as handler:
        with pytest.raises(FlashError, match="emmc not found"):
            await handler.flash(image, 1)


@pytest.mark.asyncio
async def test_flash_rejected_chunk(make_handler, tmp_path: Path):
    image = tmp_path / "os.img"
    image.write_bytes(b"x" * 1000)

    def api(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/api/bmc/upload/"):
            return httpx.Response(400, text="upload aborted")
        if request.url.params.get("opt") == "set":
            return httpx.Response(200, json={"handle": 1})
        return httpx.Response(200, json={"Transferring": {"id": 1, "size": 1000, "bytes_written": 0}})

    async with make_handler(FakeBmc(api=api)) as handler:
        with pytest.raises(UploadError, match="upload aborted"):
            await handler.flash(image, 1)


@pytest.mark.asyncio
async def test_negotiation_refused(make_handler, tmp_path: Path):
    image = tmp_path / "os.img"
    image.write_bytes(b"x")
    bmc = FakeBmc(api=lambda request: httpx.Response(400, text="node is busy"))

    async with make_handler(bmc) as handler:
        with pytest.raises(UnexpectedStatus, match="node is busy"):
            await handler.flash(image, 1)


@pytest.mark.asyncio
async def test_flash_v1_uses_bulk_multipart(make_handler, tmp_path: Path, output: io.StringIO):
    image = tmp_path / "os.img"
    image.write_bytes(b"small image")
    bmc = FakeBmc(api=lambda request: ok_result())

    async with make_handler(bmc, api_version="v1") as handler:
        assert await handler.flash(image, 4) is None

    request = bmc.api_requests[0]
    assert request.url.scheme == "http"
    assert request.method == "POST"
    assert request.url.params["node"] == "3"
    assert request.headers["Content-Type"].startswith("multipart/form-data")
    assert "version 1" in output.getvalue()


@pytest.mark.asyncio
async def test_firmware_streams_with_length(make_handler, tmp_path: Path):
    image = tmp_path / "fw.swu"
    image.write_bytes(b"f" * 70_000)
    bmc = FlashingBmc(size=70_000, handle=2)

    async with make_handler(bmc) as handler:
        assert isinstance(await handler.firmware(image), Done)

    params = bmc.negotiation.url.params
    assert params["type"] == "firmware"
    assert params["length"] == "70000"
    assert "node" not in params
    assert len(bmc.chunks) == 2


@pytest.mark.asyncio
async def test_local_flash_only_watches(make_handler):
    answers = iter([{"handle": 4}, {"Done": None}])
    bmc = FakeBmc(api=lambda request: httpx.Response(200, json=next(answers)))

    async with make_handler(bmc) as handler:
        assert isinstance(await handler.flash(Path("/mnt/sdcard/os.img"), 1, local=True), Done)

    negotiation = bmc.api_requests[0]
    assert "local" in negotiation.url.params
    assert negotiation.url.params["file"] == "/mnt/sdcard/os.img"
    assert all(not r.url.path.startswith("/api/bmc/upload") for r in bmc.api_requests)


@pytest.mark.asyncio
async def test_missing_image(make_handler, tmp_path: Path):
    async with make_handler(FakeBmc()) as handler:
        with pytest.raises(UploadError, match="cannot open file"):
            await handler.flash(tmp_path / "nope.img", 1)
