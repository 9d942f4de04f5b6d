"""
Standalone Runner

Connects to the orchestration service with a console host that prints
delivered messages instead of sending them to players. Useful for
checking a config file and token against a live service.

    python -m chatforward [config.yml]
"""

import asyncio
import logging
from typing import Dict, List, Optional

from .config import ChatConfig, load_config
from .service import ForwardService

logger = logging.getLogger(__name__)


class ConsoleHost:
    """ProxyHost that logs deliveries and reports configured servers as empty."""

    def __init__(self, chat: ChatConfig):
        self._players: Dict[str, List[str]] = {server: [] for server in chat.servers}

    def send_to_server(self, server: str, text: str) -> bool:
        if server not in self._players:
            return False
        print(f"[{server}] {text}")
        return True

    def list_players(self, server: Optional[str] = None) -> Optional[List[str]]:
        if server is None:
            return [player for players in self._players.values() for player in players]
        if server not in self._players:
            return None
        return list(self._players[server])


def run(config_path: str = "config.yml") -> None:
    """Run the gateway until interrupted (blocking)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(_run(config_path))
    except KeyboardInterrupt:
        logger.info("Interrupted")


async def _run(config_path: str) -> None:
    config = load_config(config_path)
    service = ForwardService(config, ConsoleHost(config.chat))
    service.connect()

    try:
        while True:
            await asyncio.sleep(1)
    finally:
        await service.shutdown()


def main() -> None:
    import sys

    args = [arg for arg in sys.argv[1:] if not arg.startswith("--")]
    run(args[0] if args else "config.yml")


if __name__ == "__main__":
    main()
