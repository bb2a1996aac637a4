from __future__ import annotations

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict
from pathlib import Path

from auth.models import TokenState


class TokenStore(ABC):
    """Holds the one authoritative access token.

    Implementations replace the whole ``TokenState`` at once, so a reader sees
    either the previous or the new token/expiry pair.
    """

    @abstractmethod
    async def read(self) -> TokenState | None:
        raise NotImplementedError

    @abstractmethod
    async def write(self, state: TokenState) -> None:
        raise NotImplementedError

    @abstractmethod
    async def clear(self) -> None:
        raise NotImplementedError


class MemoryTokenStore(TokenStore):
    def __init__(self, state: TokenState | None = None) -> None:
        self._lock = threading.Lock()
        self._state = state

    async def read(self) -> TokenState | None:
        with self._lock:
            return self._state

    async def write(self, state: TokenState) -> None:
        with self._lock:
            self._state = state

    async def clear(self) -> None:
        with self._lock:
            self._state = None


class FileTokenStore(TokenStore):
    def __init__(self, path: str | Path = ".token.json") -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    async def read(self) -> TokenState | None:
        with self._lock:
            if not self._path.exists():
                return None
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise RuntimeError("Token store file is invalid; expected top-level JSON object.")
        return TokenState.from_payload(raw)

    async def write(self, state: TokenState) -> None:
        with self._lock:
            self._write(asdict(state))

    async def clear(self) -> None:
        with self._lock:
            self._path.unlink(missing_ok=True)

    def _write(self, payload: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{self._path.name}.",
            suffix=".tmp",
            dir=self._path.parent,
        )
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
