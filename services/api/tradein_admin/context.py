# services/api/tradein_admin/context.py

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from fastapi import Request

from .fingerprint import generate_fingerprint, get_client_ip


def _frozen(d: dict) -> Mapping[str, str]:
    return MappingProxyType(dict(d))


@dataclass(frozen=True)
class RequestContext:
    """
    What the auth core needs from an HTTP request, captured once at the edge.
    Header names are lower-cased.
    """

    headers: Mapping[str, str] = field(default_factory=lambda: _frozen({}))
    cookies: Mapping[str, str] = field(default_factory=lambda: _frozen({}))
    method: str = "GET"
    path: str = "/"
    peer: str | None = None

    @classmethod
    def build(
        cls,
        headers: Mapping[str, str] | None = None,
        cookies: Mapping[str, str] | None = None,
        *,
        method: str = "GET",
        path: str = "/",
        peer: str | None = None,
    ) -> "RequestContext":
        return cls(
            headers=_frozen({k.lower(): v for k, v in (headers or {}).items()}),
            cookies=_frozen(dict(cookies or {})),
            method=method.upper(),
            path=path,
            peer=peer,
        )

    @classmethod
    def from_request(cls, request: Request) -> "RequestContext":
        return cls.build(
            dict(request.headers),
            dict(request.cookies),
            method=request.method,
            path=request.url.path,
            peer=request.client.host if request.client else None,
        )

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    def cookie(self, name: str) -> str | None:
        return self.cookies.get(name) or None

    @property
    def client_ip(self) -> str:
        return get_client_ip(self.headers)

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    @property
    def fingerprint(self) -> str:
        return generate_fingerprint(self.headers)
