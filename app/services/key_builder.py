"""Composite throttle key construction.

A key identifies the (client, user, route, tier) combination being counted.
Empty components are dropped before joining, so two requests share a counter
iff every present component matches exactly.
"""

from __future__ import annotations

from typing import Mapping

KEY_DELIMITER = ":"
UNKNOWN_CLIENT = "unknown"

CDN_IP_HEADER = "cf-connecting-ip"
REAL_IP_HEADER = "x-real-ip"
FORWARDED_FOR_HEADER = "x-forwarded-for"


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        # Plain dicts are case-sensitive; Starlette headers already are not.
        value = headers.get(name.title())
    return (value or "").strip()


def extract_client_ip(
    headers: Mapping[str, str],
    client_host: str | None,
    *,
    trust_proxy_headers: bool = True,
) -> str:
    """Resolve the originating client IP.

    Precedence: CDN header > real-IP header > first forwarded-for entry >
    connection address. Proxy headers are ignored when not trusted.

    Args:
        headers: Request headers.
        client_host: Address of the direct peer, if known.
        trust_proxy_headers: Whether the service sits behind a trusted proxy.

    Returns:
        str: Client IP, or ``"unknown"`` when nothing is available.
    """

    if trust_proxy_headers:
        cdn_ip = _header(headers, CDN_IP_HEADER)
        if cdn_ip:
            return cdn_ip

        real_ip = _header(headers, REAL_IP_HEADER)
        if real_ip:
            return real_ip

        forwarded = _header(headers, FORWARDED_FOR_HEADER)
        if forwarded:
            return forwarded.split(",")[0].strip() or UNKNOWN_CLIENT

    return client_host or UNKNOWN_CLIENT


def build_throttle_key(
    client_ip: str | None,
    user_id: str | int | None,
    route_identity: str | None,
    tier_name: str,
) -> str:
    """Join the present key components with a fixed delimiter.

    Examples:
        >>> build_throttle_key("10.0.0.1", None, "auth.login", "auth")
        '10.0.0.1:auth.login:auth'
        >>> build_throttle_key("10.0.0.1", 42, "auth.login", "auth")
        '10.0.0.1:42:auth.login:auth'
    """

    parts = [client_ip, user_id, route_identity, tier_name]
    return KEY_DELIMITER.join(str(p) for p in parts if p is not None and str(p) != "")


class KeyBuilder:
    """Builds throttle keys with a fixed proxy-trust policy."""

    def __init__(self, *, trust_proxy_headers: bool = True) -> None:
        self.trust_proxy_headers = trust_proxy_headers

    def client_ip(self, headers: Mapping[str, str], client_host: str | None) -> str:
        return extract_client_ip(
            headers,
            client_host,
            trust_proxy_headers=self.trust_proxy_headers,
        )

    def build(
        self,
        *,
        client_ip: str,
        user_id: str | int | None,
        route_identity: str | None,
        tier_name: str,
    ) -> str:
        return build_throttle_key(client_ip, user_id, route_identity, tier_name)
