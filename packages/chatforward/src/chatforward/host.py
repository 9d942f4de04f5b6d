"""
Host Capabilities

The narrow interface the gateway needs from the proxy it runs inside.
Event subscription and player bookkeeping stay with the host; the gateway
only delivers text to servers and asks who is online.
"""

from dataclasses import dataclass
from typing import List, Optional, Protocol, Union, runtime_checkable


@dataclass(frozen=True)
class BackendServer:
    """Typed handle for a backend server registered with the proxy."""

    name: str

    def __str__(self) -> str:
        return self.name


ServerRef = Union[str, BackendServer]


def server_name(server: ServerRef) -> str:
    """Name of a server given either its name or its handle."""
    if isinstance(server, BackendServer):
        return server.name
    return server


@runtime_checkable
class ProxyHost(Protocol):
    """Capabilities the hosting proxy provides."""

    def send_to_server(self, server: str, text: str) -> bool:
        """
        Send raw text to every player connected to `server`.

        Returns False if the proxy does not know the server.
        """
        ...

    def list_players(self, server: Optional[str] = None) -> Optional[List[str]]:
        """
        Names of players connected to `server`, or to the whole proxy when
        `server` is None.

        Returns None if the proxy does not know the server.
        """
        ...
