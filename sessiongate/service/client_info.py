from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Mapping, Optional

_IPV4_MAPPED_PREFIX = "::ffff:"


def normalize_ip(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    ip = raw.strip()
    if ip.lower().startswith(_IPV4_MAPPED_PREFIX):
        ip = ip[len(_IPV4_MAPPED_PREFIX):]
    return ip or None


@dataclass(frozen=True)
class ClientInfo:
    """Caller network identity recorded on sessions and login history."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_headers(
        cls, headers: Mapping[str, str], peer_ip: Optional[str] = None
    ) -> "ClientInfo":
        # First hop of X-Forwarded-For is the original client
        forwarded = headers.get("x-forwarded-for")
        ip = normalize_ip(forwarded.split(",")[0]) if forwarded else None
        return cls(
            ip_address=ip or normalize_ip(peer_ip),
            user_agent=headers.get("user-agent") or None,
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self))
