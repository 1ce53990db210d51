"""
Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
SPDX-License-Identifier: Apache-2.0
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeAlias
from urllib.parse import parse_qsl

DEFAULT_PORTS: dict[str, int] = {"http": 80, "https": 443}

QueryInput: TypeAlias = Mapping[str, str] | Sequence[tuple[str, str]] | str | None


@dataclass
class Field:
    """A single HTTP header, possibly carrying several values."""

    name: str
    values: list[str] = field(default_factory=list)

    def add(self, value: str) -> None:
        self.values.append(value)

    def as_string(self, delimiter: str = ",") -> str:
        return delimiter.join(self.values)


class Fields:
    """Header collection with case-insensitive lookup.

    The most recently set spelling of a name is kept for output, so a caller
    setting ``X-Amz-Target`` last gets ``X-Amz-Target`` back on the signed
    request.
    """

    def __init__(self, initial: Iterable[Field] | Mapping[str, str] | None = None):
        self._entries: dict[str, Field] = {}
        if initial is None:
            return
        if isinstance(initial, Mapping):
            for name, value in initial.items():
                self.set_field(Field(name=name, values=[value]))
        else:
            for entry in initial:
                self.set_field(entry)

    def set_field(self, field: Field) -> None:
        """Set ``field``, replacing any existing field with the same name."""
        self._entries[field.name.lower()] = field

    def get_field(self, name: str) -> Field | None:
        return self._entries.get(name.lower())

    def remove_field(self, name: str) -> None:
        self._entries.pop(name.lower(), None)

    def as_dict(self) -> dict[str, str]:
        return {entry.name: entry.as_string() for entry in self}

    def __getitem__(self, name: str) -> Field:
        return self._entries[name.lower()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._entries

    def __iter__(self) -> Iterator[Field]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"Fields({list(self._entries.values())!r})"


@dataclass(kw_only=True)
class SigningRequest:
    """The logical request handed to :class:`~aws_gateway_signer.SigV4Signer`."""

    method: str
    host: str
    region: str
    service: str
    path: str = "/"
    query: QueryInput = None
    headers: Fields | Mapping[str, str] | None = None
    body: bytes | str = b""
    port: int = 443
    timestamp: datetime | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.headers, Fields):
            self.headers = Fields(self.headers)
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")

    @property
    def fields(self) -> Fields:
        assert isinstance(self.headers, Fields)
        return self.headers

    def query_pairs(self) -> list[tuple[str, str]]:
        """Return the query as ``(name, value)`` pairs in caller order."""
        query = self.query
        if not query:
            return []
        if isinstance(query, str):
            return parse_qsl(query.lstrip("?"), keep_blank_values=True)
        if isinstance(query, Mapping):
            return [(str(key), str(value)) for key, value in query.items()]
        return [(str(key), str(value)) for key, value in query]

    @property
    def netloc(self) -> str:
        if self.port == DEFAULT_PORTS["https"]:
            return self.host
        return f"{self.host}:{self.port}"


@dataclass(kw_only=True)
class SignedRequest:
    """A fully signed request, ready for the upstream transport."""

    method: str
    target_host: str
    target_port: int
    target_path: str
    headers: dict[str, str]
    body: bytes
    scheme: str = "https"

    @property
    def url(self) -> str:
        netloc = self.target_host
        if DEFAULT_PORTS.get(self.scheme) != self.target_port:
            netloc = f"{netloc}:{self.target_port}"
        return f"{self.scheme}://{netloc}{self.target_path}"


def normalize_target(target: str) -> str:
    """Drop an empty trailing query separator, so ``"/?"`` becomes ``"/"``."""
    if target.endswith("?"):
        target = target[:-1]
    return target or "/"
