#!/usr/bin/env python3
"""
Simple demonstration of collabrpc in a single process.

Two sides, a "UI" and a "Plugin", talk over an in-process channel. Each
side offers its own methods and calls the other's through a proxy.
"""

import asyncio
import logging
import sys
import os

# Add the parent directory to the path to import collabrpc
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from collabrpc import LocalChannel, RemoteCallError, collab

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class Document:
    """The plugin side: owns the document."""

    def __init__(self):
        self.nodes = []

    def count_nodes(self) -> int:
        return len(self.nodes)

    async def create_rectangle(self, width: float, height: float) -> dict:
        """Pretend creating a node takes a while."""
        await asyncio.sleep(0.05)
        node = {"id": len(self.nodes) + 1, "type": "RECTANGLE", "width": width, "height": height}
        self.nodes.append(node)
        return node

    def delete_node(self, node_id: int) -> None:
        raise PermissionError(f"Node {node_id} is locked")


def make_ui_methods(proxies):
    """The UI side: asks the user questions and can call back into the plugin."""

    async def confirm(question: str) -> bool:
        logger.info(f"UI asked: {question}")
        return await proxies["plugin"].count_nodes() < 10

    return {"confirm": confirm}


async def main():
    ui_end, plugin_end = LocalChannel.pair("UI", "Plugin")

    # The plugin starts first and gets a proxy for the UI.
    ui = collab(Document(), plugin_end)

    # The UI starts second; its methods need the proxy it gets back.
    proxies = {}
    plugin = collab(make_ui_methods(proxies), ui_end)
    proxies["plugin"] = plugin

    with plugin:
        node = await plugin.create_rectangle(100, 40)
        logger.info(f"Created {node}")

        # Calls made at the same time are matched to their own returns.
        nodes = await asyncio.gather(*(plugin.create_rectangle(i, i) for i in range(3)))
        logger.info(f"Created {[n['id'] for n in nodes]}")

        logger.info(f"Plugin asked UI, answer: {await ui.confirm('Add another?')}")

        try:
            await plugin.delete_node(1)
        except RemoteCallError as e:
            logger.info(f"delete_node failed remotely: {e}")

        try:
            await plugin.undo()
        except RemoteCallError as e:
            logger.info(f"undo failed remotely: {e}")

    ui.cleanup_proxy()


if __name__ == "__main__":
    asyncio.run(main())
