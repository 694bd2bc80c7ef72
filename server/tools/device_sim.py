from __future__ import annotations

import argparse
import asyncio
import random
import time

import websockets

from bellserver.class_map import default_index
from bellserver.protocol import encode_hello, encode_probabilities


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Simulate a sound classification device talking to bellserver")
    parser.add_argument("--server", default="ws://127.0.0.1:8765/", help="ws://host:port/")
    parser.add_argument("--name", default="sim-device")
    parser.add_argument("--uuid", default="SIM-0001")
    parser.add_argument(
        "--label",
        action="append",
        default=[],
        metavar="LABEL=SCORE",
        help="Class and score to push, e.g. --label Music=0.9 --label Knock=0.45 (repeatable)",
    )
    parser.add_argument("--noise", type=int, default=5, help="Extra random low-score classes per batch")
    parser.add_argument("--interval-ms", type=int, default=500)
    parser.add_argument("--count", type=int, default=10, help="Number of batches to send")
    return parser


def _parse_labels(items: list[str]) -> list[tuple[int, float]]:
    index = default_index()
    by_label = {label: i for i, label in enumerate(index.labels) if label}
    records: list[tuple[int, float]] = []
    for item in items:
        label, sep, score = item.rpartition("=")
        if not sep or label not in by_label:
            raise SystemExit(f"Unknown label spec {item!r}")
        records.append((by_label[label], float(score)))
    return records


async def main() -> None:
    args = build_parser().parse_args()
    fixed = _parse_labels(args.label)
    num_classes = len(default_index())
    async with websockets.connect(args.server) as ws:
        await ws.send(encode_hello(args.name, args.uuid))

        interval_s = max(0, args.interval_ms) / 1000.0
        next_time = time.monotonic()
        for _ in range(max(0, args.count)):
            noise = [(random.randrange(num_classes), random.random() * 0.1) for _ in range(max(0, args.noise))]
            await ws.send(encode_probabilities(fixed + noise))
            next_time += interval_s
            sleep = next_time - time.monotonic()
            if sleep > 0:
                await asyncio.sleep(sleep)


if __name__ == "__main__":
    asyncio.run(main())
