#!/usr/bin/env python3
"""
Simple example demonstrating collabrpc over WebSocket.

Run "python example_basic.py server" in one terminal and
"python example_basic.py client" in another.
"""

import asyncio
import sys
import logging
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from collabrpc import RemoteCallError, WebSocketCollabServer, websocket_collab

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class Calculator:
    """Methods the server offers to each client."""

    def __init__(self):
        self.operations_count = 0

    def add(self, a: float, b: float) -> float:
        self.operations_count += 1
        return a + b

    async def fibonacci(self, length: int) -> list:
        """Generate a Fibonacci sequence, yielding to the loop as it goes."""
        result = [0, 1][:max(length, 0)]
        while len(result) < length:
            await asyncio.sleep(0)
            result.append(result[-1] + result[-2])
        return result

    def divide(self, a: float, b: float) -> float:
        return a / b


async def greet_client(client):
    """Call back into the client as soon as it connects."""
    name = await client.get_name()
    logger.info(f"Client says its name is {name}")


async def run_server():
    server = WebSocketCollabServer("localhost", 8765, Calculator, on_connect=greet_client)
    logger.info("Starting server on ws://localhost:8765")
    await server.serve_forever()


async def run_client():
    client_methods = {"get_name": lambda: "example client"}
    async with websocket_collab("ws://localhost:8765", client_methods) as calculator:
        logger.info(f"add(2, 3) = {await calculator.add(2, 3)}")
        logger.info(f"fibonacci(10) = {await calculator.fibonacci(10)}")
        try:
            await calculator.divide(1, 0)
        except RemoteCallError as e:
            logger.info(f"divide(1, 0) failed: {e}")


if __name__ == "__main__":
    if len(sys.argv) != 2 or sys.argv[1] not in ("server", "client"):
        print("usage: example_basic.py server|client")
        sys.exit(1)
    asyncio.run(run_server() if sys.argv[1] == "server" else run_client())
