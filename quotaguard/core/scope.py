"""Scope resolution: which counter a request is charged against.

Each rule names a scope type; the resolver turns (rule, request) into a scope
key such as ``route:/hello`` or ``ip:203.0.113.5``. Two requests share a
quota iff they resolve to the same key for the same rule.

Client address source:
    The CLIENT_IP scope uses the direct socket peer. ``X-Forwarded-For`` is
    set by the client and trivially spoofed, so it is only consulted when
    ``trust_forwarded_for`` is enabled, which is safe only behind a proxy
    that overwrites the header.

Unresolvable requests:
    When the attribute a scope needs is absent (no peer address, no API key
    header) the ``unresolved`` policy decides: ``SHARED`` charges a single
    ``<prefix>:unknown`` bucket, ``BYPASS`` skips the rule for that request.
"""

from __future__ import annotations

import hashlib
import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Mapping

from fastapi import Request

from quotaguard.core.config import UnresolvedScopePolicy
from quotaguard.core.rules import Rule, ScopeType
from quotaguard.utils.path_normalizer import normalize_path

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"

_KEY_PREFIXES = {
    ScopeType.ROUTE: "route",
    ScopeType.CLIENT_IP: "ip",
    ScopeType.API_KEY: "api_key",
}


@dataclass(frozen=True)
class RequestInfo:
    """The request attributes the rate limiter reads.

    Attributes:
        method: HTTP method.
        path: Request path (raw; normalization happens during resolution).
        client_host: Direct socket peer address, if known.
        headers: Request headers with lower-cased names.
    """

    method: str
    path: str
    client_host: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_request(cls, request: Request) -> "RequestInfo":
        return cls(
            method=request.method,
            path=request.url.path,
            client_host=request.client.host if request.client else None,
            headers={name.lower(): value for name, value in request.headers.items()},
        )


def hash_identifier(value: str) -> str:
    """Hash an API key or scope key so raw values never reach the store or logs."""
    return hashlib.sha256(value.encode()).hexdigest()[:16]


def _canonical_ip(host: str) -> str:
    try:
        return ipaddress.ip_address(host).compressed
    except ValueError:
        return host


class ScopeResolver:
    """Derive scope keys from requests, one rule at a time."""

    def __init__(
        self,
        *,
        trust_forwarded_for: bool = False,
        api_key_header: str = "X-API-Key",
        unresolved: UnresolvedScopePolicy = UnresolvedScopePolicy.SHARED,
    ) -> None:
        self.trust_forwarded_for = trust_forwarded_for
        self.api_key_header = api_key_header.lower()
        self.unresolved = unresolved

    def resolve(self, request: RequestInfo, rule: Rule) -> str | None:
        """Resolve the scope key for ``request`` under ``rule``.

        Never raises for a well-formed request.

        Args:
            request: Request attribute snapshot.
            rule: Rule whose scope type drives the resolution.

        Returns:
            Scope key, or None when the attribute is missing and the
            unresolved policy is BYPASS.
        """
        if rule.scope is ScopeType.ROUTE:
            value: str | None = normalize_path(request.path)
        elif rule.scope is ScopeType.CLIENT_IP:
            value = self._client_ip(request)
        elif rule.scope is ScopeType.API_KEY:
            api_key = request.headers.get(self.api_key_header, "").strip()
            value = hash_identifier(api_key) if api_key else None
        else:  # pragma: no cover - ScopeType is closed
            raise ValueError(f"unsupported scope type: {rule.scope}")

        prefix = _KEY_PREFIXES[rule.scope]
        if value is not None:
            return f"{prefix}:{value}"

        logger.debug(
            "rate_limit.scope_unresolved",
            extra={
                "rule": rule.name,
                "scope": rule.scope.value,
                "policy": self.unresolved.value,
            },
        )
        if self.unresolved is UnresolvedScopePolicy.BYPASS:
            return None
        return f"{prefix}:{UNKNOWN}"

    def _client_ip(self, request: RequestInfo) -> str | None:
        if self.trust_forwarded_for:
            forwarded_for = request.headers.get("x-forwarded-for", "")
            first = forwarded_for.split(",")[0].strip()
            if first:
                return _canonical_ip(first)

        if request.client_host:
            return _canonical_ip(request.client_host)
        return None
