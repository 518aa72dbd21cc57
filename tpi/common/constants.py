"""Constants for tpi."""

# Default BMC hostname (mDNS)
DEFAULT_HOST_NAME = "turingpi.local"

# All legacy API calls go through this path
API_BASE_PATH = "/api/bmc"

# Sub-paths under API_BASE_PATH
AUTHENTICATE_PATH = "authenticate"
UPLOAD_PATH = "upload"

# API versions and the scheme each one talks
API_VERSION_V1 = "v1"
API_VERSION_V1_1 = "v1-1"
API_SCHEMES = {
    API_VERSION_V1: "http",
    API_VERSION_V1_1: "https",
}

# Flow-control window: max bytes per streamed chunk
WINDOW_SIZE = 65535

# Bounded chunk queue between reader and sender
CHUNK_QUEUE_CAPACITY = 256

# Progress polling cadence (seconds)
POLL_INITIAL_DELAY = 3.0
POLL_INTERVAL = 0.5

# HTTP timeout (seconds)
DEFAULT_TIMEOUT = 30.0

# Cached bearer token file name, stored in the per-user cache dir
TOKEN_FILE_NAME = "tpi_token"

# Compute module slots on the board
NODE_COUNT = 4

# Message shown when a 403 carries no body
FORBIDDEN_FALLBACK = "could not authenticate"


class QueryKeys:
    OPT = "opt"
    TYPE = "type"
    NODE = "node"
    FILE = "file"
    LENGTH = "length"
    SHA256 = "sha256"
    SKIP_CRC = "skip_crc"
    LOCAL = "local"
    CMD = "cmd"
    MODE = "mode"


class Opt:
    GET = "get"
    SET = "set"


class RequestType:
    POWER = "power"
    RESET = "reset"
    USB = "usb"
    FLASH = "flash"
    FIRMWARE = "firmware"
    UART = "uart"
    NETWORK = "network"
    COOLING = "cooling"
    OTHER = "other"
    REBOOT = "reboot"
    CLEAR_USB_BOOT = "clear_usb_boot"
    NODE_TO_MSD = "node_to_msd"
