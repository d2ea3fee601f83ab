import logging
import os
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class SecureTokenStore(Protocol):
    """Holds the bearer credential for the FX provider."""

    def get(self) -> str | None: ...

    def set(self, token: str) -> None: ...

    def clear(self) -> None: ...


class InMemoryTokenStore:
    def __init__(self, token: str | None = None):
        self._token = token or None

    def get(self) -> str | None:
        return self._token

    def set(self, token: str) -> None:
        self._token = token.strip() or None

    def clear(self) -> None:
        self._token = None


class FileTokenStore:
    """Token persisted in a file readable only by the current user (mode 0600)."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def get(self) -> str | None:
        try:
            token = self.path.read_text(encoding='utf-8').strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f'Could not read FX token file {self.path}: {e}')
            return None
        return token or None

    def set(self, token: str) -> None:
        token = token.strip()
        if not token:
            self.clear()
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as fh:
            fh.write(token)
        os.replace(tmp_path, self.path)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
