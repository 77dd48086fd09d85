"""Per-project token persistence with a hard token-shape gate.

The persistent medium is a plain key-value store (``KeyValueStore``); this
module adds project scoping and the invariant that nothing which fails the
compact-token shape check is ever written or returned.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from desktop.errors import InvalidTokenShape

_log = logging.getLogger(__name__)

TOKENS_KEY = "tokens"
TOKENS_UPDATED_AT_KEY = "tokensUpdatedAt"

# Three URL-safe base64 segments; the signature segment may be empty.
_TOKEN_SHAPE = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*$")


def is_token_shaped(token: Any) -> bool:
    return isinstance(token, str) and _TOKEN_SHAPE.fullmatch(token) is not None


def token_preview(token: str | None) -> str:
    if not token:
        return "<none>"
    return f"{token[:8]}... (len={len(token)})"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Key-value stores ────────────────────────────────────────────────────────

class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """A JSON document on disk, rewritten atomically on every change."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            _log.warning("Ignoring unreadable store %s: %s", self.path, exc)
            return {}
        if not isinstance(payload, dict):
            _log.warning("Ignoring store %s: top-level value is not an object", self.path)
            return {}
        return payload

    def _dump(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".settings-", suffix=".json", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        payload = self._load()
        payload[key] = value
        self._dump(payload)

    def delete(self, key: str) -> None:
        payload = self._load()
        if key in payload:
            del payload[key]
            self._dump(payload)


# ── Credential store ────────────────────────────────────────────────────────

@dataclass
class TokenRecord:
    project_key: str
    token: str
    last_validated_at: datetime | None = None
    last_validation_result: bool | None = None


class CredentialStore:
    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        # Validation bookkeeping is not persisted.
        self._validations: dict[str, tuple[str, datetime, bool]] = {}

    def _tokens(self) -> dict[str, dict[str, str]]:
        raw = self._store.get(TOKENS_KEY, {})
        if not isinstance(raw, dict):
            _log.warning("Stored %r is not a mapping, treating as empty", TOKENS_KEY)
            return {}
        return dict(raw)

    def _write(self, tokens: dict[str, dict[str, str]]) -> None:
        self._store.set(TOKENS_KEY, tokens)
        self._store.set(TOKENS_UPDATED_AT_KEY, _utc_now().isoformat())

    def get(self, project_key: str) -> str | None:
        entry = self._tokens().get(project_key)
        if entry is None:
            return None
        token = entry.get("token") if isinstance(entry, dict) else entry
        if not is_token_shaped(token):
            _log.error(
                "Stored token for %s fails the shape check, deleting it (%s)",
                project_key, token_preview(token if isinstance(token, str) else None),
            )
            self.clear(project_key)
            return None
        return token

    def set(self, project_key: str, token: str) -> None:
        """Persist ``token`` for ``project_key``; raises ``InvalidTokenShape``
        without writing anything when the token is malformed."""
        if not is_token_shaped(token):
            _log.error("Refusing to store malformed token for %s", project_key)
            raise InvalidTokenShape(token if isinstance(token, str) else None)
        tokens = self._tokens()
        tokens[project_key] = {"token": token}
        self._write(tokens)
        self._validations.pop(project_key, None)
        _log.info("Stored token for %s: %s", project_key, token_preview(token))

    def clear(self, project_key: str) -> None:
        tokens = self._tokens()
        self._validations.pop(project_key, None)
        if tokens.pop(project_key, None) is None:
            return
        self._write(tokens)
        _log.info("Cleared token for %s", project_key)

    def clear_all(self) -> None:
        self._validations.clear()
        self._store.delete(TOKENS_KEY)
        self._store.delete(TOKENS_UPDATED_AT_KEY)

    def updated_at(self) -> datetime | None:
        raw = self._store.get(TOKENS_UPDATED_AT_KEY)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except (TypeError, ValueError):
            return None

    def record_validation(self, project_key: str, ok: bool) -> None:
        token = self.get(project_key)
        if token is None:
            return
        self._validations[project_key] = (token, _utc_now(), ok)

    def record(self, project_key: str) -> TokenRecord | None:
        token = self.get(project_key)
        if token is None:
            return None
        rec = TokenRecord(project_key=project_key, token=token)
        validation = self._validations.get(project_key)
        if validation is not None and validation[0] == token:
            rec.last_validated_at = validation[1]
            rec.last_validation_result = validation[2]
        return rec
