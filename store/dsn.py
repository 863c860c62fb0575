"""
store/dsn.py -- Connection descriptor parsing.

Descriptors look like URLs:

    scheme://[user:pass@]host[:port]/dbname?readonly=true&opt=value   (servers)
    scheme:///relative/path/to/file.db                                (embedded)
    scheme:////absolute/path/to/file.db                               (embedded)

The scheme selects the backend; the readonly query option selects the open
mode. Every other query option is kept in DSN.options for the backend.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import parse_qsl, unquote, urlsplit

from core.errors import DSNParseError, InvalidDSN

MOCK = "mock"
SQLITE = "sqlite"
SQLITE3 = "sqlite3"

_TRUE = {"1", "t", "true", "y", "yes", "on"}
_FALSE = {"0", "f", "false", "n", "no", "off", ""}


def _parse_bool(name: str, value: str) -> bool:
    key = value.strip().lower()
    if key in _TRUE:
        return True
    if key in _FALSE:
        return False
    raise DSNParseError(f"could not parse dsn: invalid boolean {value!r} for {name}")


@dataclass
class DSN:
    scheme: str
    host: str = ""
    port: int | None = None
    path: str = ""
    user: str = ""
    password: str = ""
    readonly: bool = False
    options: dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, url: str) -> DSN:
        if not url or not url.strip():
            raise InvalidDSN()
        try:
            parts = urlsplit(url.strip())
            port = parts.port
        except ValueError as exc:
            raise DSNParseError(f"could not parse dsn: {exc}") from exc

        if not parts.scheme:
            raise InvalidDSN()

        options: dict[str, str] = {}
        readonly = False
        for key, value in parse_qsl(parts.query, keep_blank_values=True):
            if key == "readonly":
                readonly = _parse_bool(key, value)
            else:
                options[key] = value

        # scheme:///rel keeps "/rel" as the path; drop one slash so that
        # scheme:////abs is the only way to spell an absolute path.
        path = unquote(parts.path)
        if path.startswith("/"):
            path = path[1:]

        return cls(
            scheme=parts.scheme.lower(),
            host=parts.hostname or "",
            port=port,
            path=path,
            user=unquote(parts.username or ""),
            password=unquote(parts.password or ""),
            readonly=readonly,
            options=options,
        )

    def __str__(self) -> str:
        # Never render the password; this string ends up in logs.
        auth = f"{self.user}@" if self.user else ""
        port = f":{self.port}" if self.port else ""
        mode = "?readonly=true" if self.readonly else ""
        return f"{self.scheme}://{auth}{self.host}{port}/{self.path}{mode}"
