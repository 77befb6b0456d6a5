"""
Smoke check for a running bridge.

Hits /health, reads the opening events of /sse, then relays a tools/list
request through /mcp. Exits non-zero on the first failure.
"""
import argparse
import asyncio
import os
import sys
import time

import anyio
import httpx

BRIDGE_URL = os.environ.get("BRIDGE_URL", f"http://localhost:{os.environ.get('PORT', '8080')}")


async def check_health(client: httpx.AsyncClient) -> dict:
    resp = await client.get("/health")
    resp.raise_for_status()
    return resp.json()


async def check_sse(
    client: httpx.AsyncClient, max_events: int = 2, timeout: float = 5.0
) -> list[str]:
    events: list[str] = []
    with anyio.move_on_after(timeout):
        async with client.stream(
            "GET", "/sse", headers={"Accept": "text/event-stream"}
        ) as resp:
            resp.raise_for_status()
            async for line in resp.aiter_lines():
                if line.startswith("event:"):
                    events.append(line.partition(":")[2].strip())
                    if len(events) >= max_events:
                        break
    return events


async def check_relay(client: httpx.AsyncClient) -> dict:
    request = {
        "jsonrpc": "2.0",
        "id": f"test-{int(time.time() * 1000)}",
        "method": "tools/list",
        "params": {},
    }
    resp = await client.post("/mcp", json=request)
    resp.raise_for_status()
    return resp.json()


async def run(url: str) -> bool:
    async with httpx.AsyncClient(base_url=url, timeout=35.0) as client:
        try:
            health = await check_health(client)
            print(f"Health check response: {health}")

            events = await check_sse(client)
            print(f"SSE events received: {events}")
            if "connected" not in events:
                print("SSE stream did not send a connected event", file=sys.stderr)
                return False

            response = await check_relay(client)
            print(f"MCP request response: {response}")
        except httpx.HTTPError as exc:
            print(f"Smoke check failed: {exc!r}", file=sys.stderr)
            return False
    return True


def main() -> None:
    parser = argparse.ArgumentParser(description="Smoke-check a running MATLAB MCP Bridge")
    parser.add_argument("--url", default=BRIDGE_URL, help=f"bridge base URL (default {BRIDGE_URL})")
    args = parser.parse_args()
    if not asyncio.run(run(args.url)):
        sys.exit(1)
    print("All checks passed")


if __name__ == "__main__":
    main()
