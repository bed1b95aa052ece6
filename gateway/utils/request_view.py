from dataclasses import dataclass, field
from typing import Mapping, Optional

from fastapi import Request


@dataclass
class RequestView:
    """
    Framework-independent snapshot of an inbound request: the parts the
    webhook checks need (headers, raw body, peer address, route).
    Header lookups are case-insensitive.
    """
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    client_host: Optional[str] = None
    path: str = ""
    method: str = "POST"

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str) -> Optional[str]:
        value = self.headers.get(name.lower())
        return value if value else None


async def request_view_from(request: Request) -> RequestView:
    body = await request.body()
    return RequestView(
        headers=dict(request.headers),
        body=body,
        client_host=request.client.host if request.client else None,
        path=request.url.path,
        method=request.method,
    )
