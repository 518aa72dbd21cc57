"""Shared fixtures: a scripted BMC behind ``httpx.MockTransport``."""

from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest

from tpi.client.auth import Authenticator
from tpi.client.credentials import CredentialStore
from tpi.client.request import RequestChannel
from tpi.common.models import Credential, Endpoint

BMC_HOST = "bmc.test"
LOGIN_PATH = "/api/bmc/authenticate"

Handler = Callable[[httpx.Request], httpx.Response]


def ok_result(result: str = "ok") -> httpx.Response:
    return httpx.Response(200, json={"response": [{"result": result}]})


# ── Fakes ──────────────────────────────────────────────────────


class FakePrompter:
    """Answers credential prompts without a terminal."""

    def __init__(self, user: str = "root", password: str = "turing") -> None:
        self.user = user
        self.password = password
        self.prompts: list[str] = []

    def read_line(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.user

    def read_secret(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.password


class FakeDisplay:
    """Records what the progress monitor asks to render."""

    def __init__(self) -> None:
        self.events: list[tuple] = []

    def start(self, total: int) -> None:
        self.events.append(("start", total))

    def advance(self, bytes_written: int) -> None:
        self.events.append(("advance", bytes_written))

    def verifying(self) -> None:
        self.events.append(("verifying",))

    def done(self) -> None:
        self.events.append(("done",))

    def close(self) -> None:
        self.events.append(("close",))

    def count(self, name: str) -> int:
        return sum(1 for event in self.events if event[0] == name)


class FakeBmc:
    """Legacy API stand-in: login, bearer checks, then a scripted ``api`` handler.

    Every successful login issues a new token ``token-<n>``. Requests whose
    bearer token was never issued (or was revoked) get ``401``.
    """

    def __init__(
        self,
        api: Optional[Handler] = None,
        login_status: int = 200,
        login_text: str = "wrong credentials",
    ) -> None:
        self.api: Handler = api or (lambda request: ok_result())
        self.login_status = login_status
        self.login_text = login_text
        self.valid_tokens: set[str] = set()
        self.always_unauthorized = False
        self.logins = 0
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.path == LOGIN_PATH:
            self.logins += 1
            if self.login_status != 200:
                return httpx.Response(self.login_status, text=self.login_text)
            token = f"token-{self.logins}"
            self.valid_tokens.add(token)
            return httpx.Response(200, json={"id": token})

        auth = request.headers.get("Authorization", "")
        token = auth[len("Bearer ") :] if auth.startswith("Bearer ") else ""
        if self.always_unauthorized or token not in self.valid_tokens:
            return httpx.Response(401)
        return self.api(request)

    @property
    def api_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path != LOGIN_PATH]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


# ── Fixtures ───────────────────────────────────────────────────


@pytest.fixture
def endpoint() -> Endpoint:
    return Endpoint(host=BMC_HOST)


@pytest.fixture
def token_file(tmp_path: Path) -> Path:
    return tmp_path / "cache" / "tpi_token"


@pytest.fixture
def store(token_file: Path) -> CredentialStore:
    return CredentialStore(token_file)


@pytest.fixture
def prompter() -> FakePrompter:
    return FakePrompter()


@pytest.fixture
def display() -> FakeDisplay:
    return FakeDisplay()


@pytest.fixture
def make_channel(endpoint: Endpoint, store: CredentialStore, prompter: FakePrompter):
    """Build a :class:`RequestChannel` talking to a :class:`FakeBmc`."""

    def factory(bmc: FakeBmc, credential: Optional[Credential] = None) -> RequestChannel:
        http = bmc.client()
        authenticator = Authenticator(http, endpoint, credential=credential, store=store, prompter=prompter)
        return RequestChannel(endpoint, authenticator, http)

    return factory
