"""Bearer token acquisition: explicit credentials, cached token or prompt."""

import logging
from typing import Callable, Optional, Protocol

import httpx
import typer
from pydantic import ValidationError

from tpi.client.credentials import CredentialStore
from tpi.common.constants import AUTHENTICATE_PATH, FORBIDDEN_FALLBACK
from tpi.common.errors import Forbidden, ProtocolError, UnexpectedStatus
from tpi.common.models import Credential, Endpoint, LoginRequest, LoginResponse

logger = logging.getLogger("tpi.client.auth")


class Prompter(Protocol):
    """Interactive source for missing credential halves."""

    def read_line(self, prompt: str) -> str: ...

    def read_secret(self, prompt: str) -> str: ...


class TerminalPrompter:
    """Prompt on the controlling terminal.

    The secret prompt does not echo. Ctrl+C raises ``click.Abort`` which
    aborts the whole command.
    """

    def read_line(self, prompt: str) -> str:
        return typer.prompt(prompt)  # type: ignore[no-any-return]

    def read_secret(self, prompt: str) -> str:
        return typer.prompt(prompt, hide_input=True)  # type: ignore[no-any-return]


class Authenticator:
    """Obtain bearer tokens for one BMC endpoint.

    Order of preference:

    1. Both username and password given: log in, never cache the token.
    2. Cached token on disk (skipped when ``force_login`` is set).
    3. Prompt for whatever half is missing, log in, and cache the token
       when no credential was supplied at all.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        endpoint: Endpoint,
        credential: Optional[Credential] = None,
        store: Optional[CredentialStore] = None,
        prompter: Optional[Prompter] = None,
        warn: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.http = http
        self.endpoint = endpoint
        self.credential = credential or Credential()
        self.store = store or CredentialStore()
        self.prompter: Prompter = prompter or TerminalPrompter()
        self._warn = warn or logger.warning

    async def obtain_token(self, force_login: bool = False) -> str:
        """Return a bearer token, logging in if needed."""
        cred = self.credential
        if cred.is_complete:
            return await self.login(cred.username, cred.password)  # type: ignore[arg-type]

        if not force_login:
            cached = self.store.load()
            if cached:
                logger.debug("Using cached token from %s", self.store.path)
                return cached

        username = cred.username if cred.username is not None else self.prompter.read_line("User")
        password = cred.password if cred.password is not None else self.prompter.read_secret("Password")
        token = await self.login(username, password)

        if cred.is_empty:
            try:
                self.store.save(token)
            except OSError as e:
                self._warn(f"failed to write to cache file {self.store.path}: {e}")
        return token

    async def login(self, username: str, password: str) -> str:
        """Exchange a username/password for a bearer token.

        Raises:
            Forbidden: The BMC rejected the credentials (403).
            UnexpectedStatus: Any other non-200 answer.
            ProtocolError: 200 without a string ``id``.
        """
        body = LoginRequest(username=username, password=password).model_dump()
        url = self.endpoint.url_for(AUTHENTICATE_PATH)
        logger.debug("POST %s (user %s)", url, username)
        resp = await self.http.post(url, json=body)

        if resp.status_code == 200:
            try:
                return LoginResponse.model_validate(resp.json()).id
            except (ValueError, ValidationError) as e:
                raise ProtocolError(f"API error: expected `id` attribute in login response: {resp.text}") from e
        if resp.status_code == 403:
            raise Forbidden(resp.text or FORBIDDEN_FALLBACK)
        raise UnexpectedStatus(
            f"Unexpected status code {resp.status_code} {resp.reason_phrase}",
            status_code=resp.status_code,
            body=resp.text,
        )
