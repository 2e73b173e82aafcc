"""Startup readiness checks: is the endpoint answering, and are blocks being produced."""

import asyncio
import json
import logging

import httpx
import websockets

log = logging.getLogger("stressnet.probe")

PROBE_TIMEOUT = 3.0


async def probe_rpc(url: str, max_retries: int = 30, retry_delay: float = 2.0,
                    transport: httpx.AsyncBaseTransport | None = None) -> int:
    """Call eth_blockNumber until the endpoint responds; returns the block height."""
    payload = {"jsonrpc": "2.0", "id": 1, "method": "eth_blockNumber", "params": []}

    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=PROBE_TIMEOUT, transport=transport) as http:
                r = await http.post(url, json=payload)
                r.raise_for_status()
                height = int(r.json()["result"], 16)
                log.info("RPC %s responding at block %s (attempt %s/%s)", url, height, attempt, max_retries)
                return height
        except (httpx.HTTPError, KeyError, ValueError) as e:
            if attempt < max_retries:
                log.info("RPC %s not ready yet (attempt %s/%s): %s - retrying in %ss...",
                         url, attempt, max_retries, e.__class__.__name__, retry_delay)
                await asyncio.sleep(retry_delay)
            else:
                log.error("RPC %s failed after %s attempts", url, max_retries)
                raise
    raise ValueError("max_retries must be at least 1")


async def wait_for_blocks(url: str, count: int) -> None:
    """Subscribe to newHeads over WebSocket and return after ``count`` new blocks."""
    if count <= 0:
        return
    log.info("Connecting to WebSocket %s to wait for %s blocks...", url, count)
    async with websockets.connect(url, ping_interval=20, ping_timeout=20, close_timeout=1) as ws:
        await ws.send(json.dumps({"jsonrpc": "2.0", "id": 1, "method": "eth_subscribe", "params": ["newHeads"]}))
        seen = 0
        async for raw in ws:
            msg = json.loads(raw)
            if "error" in msg:
                raise RuntimeError(f"eth_subscribe failed on {url}: {msg['error']}")
            if msg.get("method") != "eth_subscription":
                continue
            head = msg["params"]["result"]
            seen += 1
            log.info("Block %s (%s/%s)", int(head["number"], 16), seen, count)
            if seen >= count:
                log.info("Observed %s new blocks on %s. Chain is progressing.", seen, url)
                return
    raise ConnectionError(f"WebSocket {url} closed before {count} blocks arrived")
