#!/usr/bin/env python3
"""
Long-running worker service for the returns desk.

Drains the offline operation queue whenever the POS server is reachable and
refreshes the local sale cache / inventory mirror every `snapshot_interval_s`.
"""

import argparse
import sys
import time
import traceback

from returns_desk.app.api_client import ApiClient
from returns_desk.app.config import config_int, load_config
from returns_desk.app.logs import json_log
from returns_desk.workers.snapshot_refresh import run_snapshot_refresh
from returns_desk.workers.sync_drainer import run_sync_drainer


def run_pass(cfg: dict, client: ApiClient, last_refresh_at: float, now: float) -> tuple[bool, float]:
    """One loop iteration. Returns (did_work, last_refresh_at)."""
    if cfg.get("force_offline") or not client.is_online():
        return False, last_refresh_at

    did_work = False
    try:
        stats = run_sync_drainer(cfg, client)
        did_work = bool(stats.get("synced"))
    except Exception as ex:
        # Never crash the worker loop due to queue errors.
        json_log("error", "worker.drain.error", store_id=cfg.get("store_id"), error=str(ex))
        traceback.print_exc(file=sys.stderr)

    if now - last_refresh_at >= config_int(cfg, "snapshot_interval_s"):
        try:
            run_snapshot_refresh(cfg, client)
            last_refresh_at = now
        except Exception as ex:
            json_log("error", "worker.snapshot.error", store_id=cfg.get("store_id"), error=str(ex))
            traceback.print_exc(file=sys.stderr)
    return did_work, last_refresh_at


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default=None, help="Path to the device config.json")
    parser.add_argument("--sleep", type=float, default=5.0)
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    last_refresh_at = 0.0
    while True:
        # Re-read each pass so config edits apply without a restart.
        cfg = load_config(args.config)
        client = ApiClient.from_config(cfg)
        did_work, last_refresh_at = run_pass(cfg, client, last_refresh_at, time.time())

        if args.once:
            break

        # If we synced anything, loop again quickly; otherwise back off.
        time.sleep(0 if did_work else args.sleep)


if __name__ == "__main__":
    main()
