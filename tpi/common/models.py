"""Pydantic models for tpi."""

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from tpi.common.constants import API_BASE_PATH, API_SCHEMES, API_VERSION_V1, API_VERSION_V1_1


class PowerCmd(str, Enum):
    """Power actions."""

    ON = "on"
    OFF = "off"
    RESET = "reset"
    STATUS = "status"


class UsbCmd(str, Enum):
    """USB routing modes."""

    HOST = "host"
    DEVICE = "device"
    FLASH = "flash"
    STATUS = "status"


class GetSet(str, Enum):
    GET = "get"
    SET = "set"


class ModeCmd(str, Enum):
    """Advanced node modes."""

    NORMAL = "normal"
    MSD = "msd"


class CoolingCmd(str, Enum):
    STATUS = "status"
    SET = "set"


class EthCmd(str, Enum):
    """On-board Ethernet switch actions."""

    RESET = "reset"


class ApiVersion(str, Enum):
    """BMC API version. Older firmware only speaks v1."""

    V1 = API_VERSION_V1
    V1_1 = API_VERSION_V1_1


class Endpoint(BaseModel):
    """Where the BMC legacy API lives. Fixed for the whole session."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(..., description="Host name or address, optionally with :port")
    api_version: str = Field(API_VERSION_V1_1, description="API version flag (v1 or v1-1)")
    base_path: str = Field(API_BASE_PATH, description="Path of the legacy API")

    @property
    def scheme(self) -> str:
        return API_SCHEMES[self.api_version]

    @property
    def url(self) -> str:
        """Base URL of the legacy API, without query string."""
        return f"{self.scheme}://{self.host}/{self.base_path.strip('/')}"

    def url_for(self, *segments: str) -> str:
        """Base URL with extra path segments appended."""
        if not segments:
            return self.url
        return "/".join([self.url, *(str(s).strip("/") for s in segments)])


class Credential(BaseModel):
    """Username/password pair, either half may be missing."""

    model_config = ConfigDict(frozen=True)

    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.username is not None and self.password is not None

    @property
    def is_empty(self) -> bool:
        return self.username is None and self.password is None


class LoginRequest(BaseModel):
    """Body of ``POST /authenticate``."""

    username: str
    password: str


class LoginResponse(BaseModel):
    """Successful login answer."""

    id: str = Field(..., description="Bearer token")


class FlashHandle(BaseModel):
    """Answer to a flash/firmware negotiation request."""

    handle: int = Field(..., ge=0, description="Server-assigned upload handle")


class Transferring(BaseModel):
    """The BMC is still receiving or writing the image."""

    id: int = Field(..., description="Handle of the transfer")
    size: int = Field(..., description="Total image size in bytes")
    bytes_written: int = Field(0, description="Bytes written so far")

    @property
    def progress(self) -> float:
        """Progress percentage."""
        if self.size == 0:
            return 100.0
        return (self.bytes_written / self.size) * 100

    @property
    def is_written(self) -> bool:
        """All bytes are written; the BMC is verifying."""
        return self.bytes_written >= self.size


class Done(BaseModel):
    """Flashing finished successfully."""

    pass


class TransferError(BaseModel):
    """Flashing failed on the BMC side."""

    message: str = Field(..., description="Error reported by the BMC")


TransferState = Union[Transferring, Done, TransferError]
