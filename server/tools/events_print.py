from __future__ import annotations

import argparse
import asyncio
import json

import websockets


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Print bellserver /events notifications")
    parser.add_argument("--url", default="ws://127.0.0.1:8765/events")
    parser.add_argument("--no-status", action="store_true", help="Hide periodic status messages")
    return parser


def _format(obj: dict) -> str:
    kind = obj.get("type")
    device = obj.get("device") or {}
    if kind == "ring":
        return f"RING   {device.get('name')} ({device.get('uuid')}) {obj.get('label')} p={obj.get('probability'):.3f}"
    if kind == "device_online":
        return f"ONLINE {device.get('name')} ({device.get('uuid')})"
    if kind == "status":
        active = [d["name"] for d in obj.get("devices", []) if d.get("active")]
        return f"STATUS devices={len(obj.get('devices', []))} active={active}"
    return json.dumps(obj)


async def main() -> None:
    args = build_parser().parse_args()
    async with websockets.connect(args.url) as ws:
        async for msg in ws:
            obj = json.loads(msg)
            if args.no_status and obj.get("type") == "status":
                continue
            print(_format(obj))


if __name__ == "__main__":
    asyncio.run(main())
