"""Lightweight smoke checks for a running relay hub.

Usage:
    python -m listen_sync_hub.smoke --hub http://localhost:8001

The script performs non-destructive checks:
- GET /config and /health
- GET /v1/time as a latency probe
- POST a seek event to a throwaway session and read it back from the event log

Exits with code 0 on success, non-zero on first failure.
"""

from __future__ import annotations

import argparse
import logging
import time
from typing import Any
from uuid import uuid4

import httpx

logger = logging.getLogger("smoke")


def _build_client(timeout: float = 5.0) -> httpx.Client:
    return httpx.Client(timeout=timeout)


def _get_json(client: httpx.Client, url: str) -> Any:
    resp = client.get(url)
    resp.raise_for_status()
    return resp.json()


def _post_json(client: httpx.Client, url: str, body: dict[str, Any]) -> dict[str, Any]:
    resp = client.post(url, json=body)
    resp.raise_for_status()
    payload = resp.json()
    assert isinstance(payload, dict)
    return payload


def check_hub(client: httpx.Client, base: str, *, session_id: str | None = None) -> float:
    """Run every check against ``base``; returns the probe round trip in ms."""

    cfg = _get_json(client, f"{base}/config")
    logger.info("hub /config ok: %s", {k: cfg.get(k) for k in ("apiVersion", "maxConnectionsPerSession")})
    health = _get_json(client, f"{base}/health")
    assert health.get("status") == "ok"
    logger.info("hub /health ok: %s", health)

    started = time.perf_counter()
    server_time = _get_json(client, f"{base}/v1/time").get("serverTime")
    rtt_ms = (time.perf_counter() - started) * 1000
    assert isinstance(server_time, int)
    logger.info("hub /v1/time ok: serverTime=%s rtt=%.1fms", server_time, rtt_ms)

    session_id = session_id or f"smoke-{uuid4().hex[:8]}"
    event = {
        "sessionId": session_id,
        "type": "seek",
        "timestamp": server_time,
        "position": 0.0,
        "senderDeviceId": "smoke",
    }
    ack = _post_json(client, f"{base}/v1/sessions/{session_id}/events", event)
    assert ack.get("accepted") is True
    logger.info("hub publish ok: %s", ack)

    events = _get_json(client, f"{base}/v1/sessions/{session_id}/events?limit=1")
    assert events and events[-1].get("senderDeviceId") == "smoke"
    logger.info("hub event log ok: %d event(s)", len(events))
    return rtt_ms


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run smoke checks against a Listen Sync hub")
    parser.add_argument("--hub", default="http://localhost:8001", help="Hub base URL")
    parser.add_argument("--timeout", type=float, default=5.0, help="HTTP timeout seconds")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s - %(message)s")

    try:
        with _build_client(timeout=args.timeout) as client:
            check_hub(client, args.hub.rstrip("/"))
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("smoke failed: %s", exc)
        return 1
    logger.info("smoke passed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
