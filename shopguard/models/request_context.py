# shopguard/models/request_context.py
"""
Transport-neutral view of an inbound request.

The security stores only need headers, cookies and the peer address, so they
take a RequestContext instead of a FastAPI Request. Tests build one directly.
"""

import hashlib
import ipaddress
from typing import Dict, Optional

from fastapi import Request
from pydantic import BaseModel, Field, field_validator

# Checked in order; the first header holding a valid address wins
CLIENT_IP_HEADERS = (
    "cf-connecting-ip",
    "x-forwarded-for",
    "x-real-ip",
    "x-client-ip",
    "x-forwarded",
    "forwarded-for",
    "forwarded",
)


def _is_valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def _first_address(header_value: str) -> str:
    candidate = header_value.split(",")[0].strip()
    # RFC 7239 style: for=1.2.3.4;proto=https
    if "=" in candidate:
        for part in candidate.split(";"):
            key, _, value = part.partition("=")
            if key.strip().lower() == "for":
                return value.strip().strip('"').strip("[]")
    return candidate


class RequestContext(BaseModel):
    headers: Dict[str, str] = Field(default_factory=dict)
    cookies: Dict[str, str] = Field(default_factory=dict)
    client_host: Optional[str] = None
    method: str = "GET"
    path: str = "/"

    @field_validator("headers")
    @classmethod
    def lowercase_header_names(cls, value: Dict[str, str]) -> Dict[str, str]:
        return {k.lower(): v for k, v in value.items()}

    @classmethod
    def from_request(cls, request: Request) -> "RequestContext":
        return cls(
            headers=dict(request.headers),
            cookies=dict(request.cookies),
            client_host=request.client.host if request.client else None,
            method=request.method,
            path=request.url.path,
        )

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)

    def cookie(self, name: str) -> Optional[str]:
        return self.cookies.get(name)

    @property
    def client_ip(self) -> str:
        for header_name in CLIENT_IP_HEADERS:
            value = self.headers.get(header_name)
            if not value:
                continue
            candidate = _first_address(value)
            if _is_valid_ip(candidate):
                return candidate
        if self.client_host and _is_valid_ip(self.client_host):
            return self.client_host
        return "unknown"

    @property
    def user_agent(self) -> str:
        return self.header("user-agent") or "unknown"

    @property
    def device_fingerprint(self) -> str:
        """Weak continuity signal from UA and accept headers, not a security boundary"""
        raw = "".join([
            self.header("user-agent"),
            self.header("accept-language"),
            self.header("accept-encoding"),
        ])
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]

    def with_cookie(self, name: str, value: str) -> "RequestContext":
        """Copy of this context carrying one more cookie"""
        cookies = dict(self.cookies)
        cookies[name] = value
        return self.model_copy(update={"cookies": cookies})
