from __future__ import annotations

import json as jsonlib
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlencode, urlsplit

from pydantic import TypeAdapter

if TYPE_CHECKING:
    from typing_extensions import Self

JSON_CONTENT_TYPE = "application/json"

_ANY_ADAPTER: TypeAdapter[Any] = TypeAdapter(Any)


class Headers(Mapping[str, str]):
    """Read-only, case-insensitive view of request headers."""

    __slots__ = ("_items",)

    def __init__(self, items: Mapping[str, str] | None = None) -> None:
        self._items = {key.lower(): value for key, value in (items or {}).items()}

    def __getitem__(self, key: str) -> str:
        return self._items[key.lower()]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"Headers({self._items!r})"


QueryValue = str | list[str]


@dataclass(kw_only=True)
class Request:
    """An incoming HTTP request as seen by route handlers.

    ``body`` holds the raw payload when it is already available; adapters
    reading the payload lazily pass ``receive`` instead. ``json()`` parses the
    payload at most once and keeps the result in ``parsed_body``.
    """

    method: str
    path: str
    headers: Headers = field(default_factory=Headers)
    query: dict[str, QueryValue] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None
    receive: Callable[[], Awaitable[bytes]] | None = field(default=None, repr=False)
    state: dict[str, Any] = field(default_factory=dict, repr=False)
    source: str | None = None
    """Name of the controller or middleware currently handling the request."""
    parsed_body: Any = field(default=None, init=False, repr=False)
    _body_parsed: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        if not isinstance(self.headers, Headers):
            self.headers = Headers(self.headers)

    @classmethod
    def from_url(
        cls,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        body: bytes | None = None,
        json: Any = None,
    ) -> Self:
        """Build a request from a path with an optional query string.

        Passing ``json`` encodes it as the body and sets the JSON content
        type and length headers.
        """
        parts = urlsplit(url)
        query: dict[str, QueryValue] = {}
        for key, values in parse_qs(parts.query, keep_blank_values=True).items():
            query[key] = values[0] if len(values) == 1 else values

        all_headers = dict(headers or {})
        if json is not None:
            body = jsonlib.dumps(json).encode()
            all_headers.setdefault("content-type", JSON_CONTENT_TYPE)
        if body is not None:
            all_headers.setdefault("content-length", str(len(body)))

        return cls(
            method=method,
            path=parts.path or "/",
            headers=Headers(all_headers),
            query=query,
            body=body,
        )

    @property
    def url(self) -> str:
        if not self.query:
            return self.path
        return f"{self.path}?{urlencode(self.query, doseq=True)}"

    @property
    def content_type(self) -> str | None:
        return self.headers.get("content-type")

    @property
    def content_length(self) -> int | None:
        raw = self.headers.get("content-length")
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    @property
    def is_json(self) -> bool:
        return JSON_CONTENT_TYPE in (self.content_type or "")

    async def read(self) -> bytes:
        if self.body is None and self.receive is not None:
            self.body = await self.receive()
        return self.body or b""

    async def json(self) -> Any:
        """Parse the JSON body once; later calls return the cached result.

        Raises:
            ValueError: If the payload is not valid JSON.

        """
        if not self._body_parsed:
            raw = await self.read()
            self.parsed_body = jsonlib.loads(raw)
            self._body_parsed = True
        return self.parsed_body


@dataclass(kw_only=True)
class Response:
    """A handler result ready to be written back to the client."""

    status: HTTPStatus | int = HTTPStatus.OK
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def media_type(self) -> str:
        if isinstance(self.body, (bytes, str)):
            return self.headers.get("content-type", "text/plain")
        return self.headers.get("content-type", JSON_CONTENT_TYPE)

    def render(self) -> bytes:
        """Serialize ``body``: bytes and text as is, anything else as JSON."""
        if self.body is None:
            return b""
        if isinstance(self.body, bytes):
            return self.body
        if isinstance(self.body, str):
            return self.body.encode()
        return _ANY_ADAPTER.dump_json(self.body)

    def json(self) -> Any:
        return jsonlib.loads(self.render() or b"null")
