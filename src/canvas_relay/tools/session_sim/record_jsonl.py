from __future__ import annotations

import argparse
import asyncio
import json
import time
from collections import Counter
from pathlib import Path

import websockets

from canvas_relay.protocol.constants import T_CANVAS_UPDATE


def _now_ms() -> int:
    return int(time.time() * 1000)


def _summarize(msg: dict) -> str:
    t = msg.get("type")
    # canvas snapshots are large base64 blobs; keep the console readable
    brief = {k: (f"<{len(v)} chars>" if isinstance(v, str) and len(v) > 120 else v) for k, v in msg.items()}
    return f"[record] type={t} msg={brief}"


async def record(ws_url: str, out_path: Path, *, echo: bool, skip_snapshots: bool = False) -> Counter:
    """
    Record every frame a relay session receives as JSONL: {"ts": <ms>, "msg": {...}}.

    Keepalive pings are protocol-level and answered by the websockets client.
    """
    seen: Counter = Counter()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("a", encoding="utf-8") as f:
        async with websockets.connect(ws_url, max_size=2**24) as ws:
            while True:
                raw = await ws.recv()
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                msg = json.loads(raw)
                if not isinstance(msg, dict):
                    continue
                t = msg.get("type")
                seen[t] += 1
                if skip_snapshots and t == T_CANVAS_UPDATE:
                    continue
                if echo:
                    print(_summarize(msg))
                f.write(json.dumps({"ts": _now_ms(), "msg": msg}, ensure_ascii=False) + "\n")
                f.flush()
    return seen


def main() -> None:
    ap = argparse.ArgumentParser(description="Record relay WS traffic to a JSONL file.")
    ap.add_argument("--ws", required=True, help="WebSocket URL, e.g. ws://127.0.0.1:8000/ws")
    ap.add_argument("--out", required=True, help="Output JSONL path")
    ap.add_argument("--print", action="store_true", help="Print received messages to stdout")
    ap.add_argument("--skip-snapshots", action="store_true", help="Do not store CANVAS_UPDATE frames")
    args = ap.parse_args()

    try:
        asyncio.run(record(args.ws, Path(args.out), echo=args.print, skip_snapshots=args.skip_snapshots))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
