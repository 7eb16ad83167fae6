#!/usr/bin/env python3
"""Live probe for Home Assistant entities.

Connects with ``HassConfig.from_env()``, starts one data source per entity
given on the command line and prints every emission until interrupted.
On exit the pipeline's debug dump is printed, which shows how many raw
events were coalesced, throttled or dropped.

Example::

    ENTITYFEED_URL=http://homeassistant.local:8123 ENTITYFEED_TOKEN=... \\
        python scripts/entity_probe.py sensor.cpu_temperature --history-hours 1
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from entityfeed import (  # noqa: E402
    DataSourceManager,
    EntityFeedError,
    HassClient,
    HassConfig,
    Overlay,
    OverlayUpdate,
    PipelineRegistry,
    RetryPolicy,
)

_LOG = logging.getLogger("entity_probe")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Print throttled live updates of Home Assistant entities")
    parser.add_argument("entities", nargs="+", help="Entity ids to follow, e.g. sensor.cpu_temperature")
    parser.add_argument("--attribute", help="Follow this attribute instead of the state")
    parser.add_argument("--min-emit-ms", type=float, default=None, help="Minimum spacing between emissions")
    parser.add_argument("--coalesce-ms", type=float, default=None, help="Quiet period before flushing")
    parser.add_argument("--max-delay-ms", type=float, default=None, help="Upper bound for withholding an update")
    parser.add_argument("--window", default="60s", help="Rolling window, seconds or duration like 5m")
    parser.add_argument("--history-hours", type=float, default=0.0, help="Preload this much history (0 = off)")
    parser.add_argument("--transport", choices=("websocket", "mqtt"), default=None, help="Live transport")
    parser.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds (0 = until Ctrl+C)")
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser.parse_args()


def _source_record(entity_id: str, args: argparse.Namespace) -> dict[str, Any]:
    record: dict[str, Any] = {"entity": entity_id, "windowSeconds": args.window}
    if args.attribute:
        record["attribute"] = args.attribute
    if args.min_emit_ms is not None:
        record["minEmitMs"] = args.min_emit_ms
    if args.coalesce_ms is not None:
        record["coalesceMs"] = args.coalesce_ms
    if args.max_delay_ms is not None:
        record["maxDelayMs"] = args.max_delay_ms
    if args.history_hours > 0:
        record["history"] = {"preload": True, "hours": args.history_hours}
    return record


def _print_update(overlay: Overlay, update: OverlayUpdate) -> None:
    stamp = time.strftime("%H:%M:%S", time.localtime(update.timestamp / 1000))
    millis = update.timestamp % 1000
    marker = " (buffered)" if update.replay else ""
    points = len(update.history) if update.history is not None else 0
    print(f"[probe] {stamp}.{millis:03d} {update.entity_id:<40} {update.value:>12g}  buffer={points}{marker}")


async def run(args: argparse.Namespace) -> int:
    overrides: dict[str, Any] = {}
    if args.transport:
        overrides["live_transport"] = args.transport
    config = HassConfig.from_env(**overrides)

    registry = PipelineRegistry()
    async with HassClient(config) as client:
        manager = DataSourceManager(
            client,
            name="probe",
            registry=registry,
            retry_policy=RetryPolicy.from_config(config),
        )
        records = {entity_id: _source_record(entity_id, args) for entity_id in args.entities}
        started = await manager.initialize_from_config(records)
        print(f"[probe] {started}/{len(records)} data sources started via {config.live_transport}")

        for name in records:
            manager.subscribe_overlay({"id": f"probe:{name}", "source": name, "type": "sparkline"}, _print_update)

        try:
            if args.duration > 0:
                await asyncio.sleep(args.duration)
            else:
                await asyncio.Event().wait()
        finally:
            print(json.dumps(registry.describe(), indent=2, default=str))
            manager.destroy()
    return 0


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\n[probe] Done.")
        code = 0
    except EntityFeedError as exc:
        _LOG.error("Probe failed: %s", exc)
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
