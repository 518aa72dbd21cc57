"""Cached bearer token on local disk."""

import logging
from pathlib import Path
from typing import Optional

from tpi.common.config import default_cache_dir
from tpi.common.constants import TOKEN_FILE_NAME

logger = logging.getLogger("tpi.client.credentials")


class CredentialStore:
    """Read, write and delete the cached bearer token.

    The file holds the raw token string and nothing else. Only the token is
    ever stored here, never the username or password it was derived from.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else default_cache_dir() / TOKEN_FILE_NAME

    def load(self) -> Optional[str]:
        """Return the cached token, or None when it cannot be read."""
        try:
            token = self.path.read_text(encoding="utf-8")
        except OSError as e:
            logger.debug("No cached token at %s: %s", self.path, e)
            return None
        return token or None

    def save(self, token: str) -> None:
        """Write (or overwrite) the cached token.

        Raises:
            OSError: The file could not be written.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(token, encoding="utf-8")
        logger.debug("Cached token at %s", self.path)

    def delete(self) -> None:
        """Remove the cached token. Missing file and I/O errors are ignored."""
        try:
            self.path.unlink()
            logger.debug("Deleted cached token %s", self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug("Could not delete cached token %s: %s", self.path, e)
