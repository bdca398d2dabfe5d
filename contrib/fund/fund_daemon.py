#!/usr/bin/env python3
# Copyright (c) 2025 The BATHRON 2.0 developers
# Distributed under the MIT software license

"""
Fund Daemon - Automated deposit detection, sweep and allocation

Each cycle:
  1. Watch recent blocks for deposits to awaiting positions
  2. Sweep funded positions that were not swept yet
  3. Mint + allocate custody token for swept positions

Each step is isolated: one failing position (or step) never stops the loop.
Everything it does is also safe to run next to the HTTP server.
"""

import argparse
import logging
import time

from fundnet import FundConfig, FundError, build_services, load_env_file
from fundnet.pipeline import InlineExecutor

log = logging.getLogger(__name__)


class FundDaemon:
    def __init__(self, services, poll_interval: int = 30, backlog: int = 10):
        self.services = services
        self.poll_interval = poll_interval
        self.backlog = backlog

    def watch(self) -> int:
        result = self.services.watcher.scan()
        if result["updates"]:
            log.info(f"Watcher funded {len(result['updates'])} position(s) "
                     f"(blocks {result['from_block']}-{result['to_block']})")
        return len(result["updates"])

    def cycle(self):
        """One pass: watch -> sweep backlog -> mint backlog."""
        steps = (
            ("watch", self.watch),
            ("sweep", lambda: self.services.sweeper.sweep_pending(self.backlog)),
            ("mint", lambda: self.services.minter.mint_pending(self.backlog)),
        )
        for name, step in steps:
            try:
                step()
            except FundError as e:
                log.warning(f"{name} step: {e.kind}: {e}")
            except Exception as e:
                log.error(f"Error in {name} step: {e}")

    def run(self):
        """Main daemon loop"""
        config = self.services.config
        log.info("=" * 60)
        log.info("Fund Daemon starting...")
        log.info(f"  Chain RPC: {config.rpc_url} (chain {config.chain_id})")
        log.info(f"  Deposit token: {config.deposit_token}")
        log.info(f"  Watch window: {config.watch_blocks} blocks, chunk {config.watch_chunk}")
        log.info(f"  Poll interval: {self.poll_interval}s")
        log.info("=" * 60)

        if not self.services.store.ping():
            log.error("Position store unreachable")
            return

        while True:
            try:
                self.cycle()
            except KeyboardInterrupt:
                log.info("Shutting down...")
                break

            try:
                time.sleep(self.poll_interval)
            except KeyboardInterrupt:
                log.info("Shutting down...")
                break


# =============================================================================
# MAIN
# =============================================================================

def main():
    parser = argparse.ArgumentParser(description="Fund Network settlement daemon")
    parser.add_argument("--poll", type=int, default=30, help="Poll interval in seconds")
    parser.add_argument("--backlog", type=int, default=10, help="Max positions per sweep/mint pass")
    parser.add_argument("--env-file", default=".env", help="Optional KEY=VALUE file")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    load_env_file(args.env_file)
    config = FundConfig.from_env()

    # The daemon drives sweep/mint itself; watcher wins chain inline
    services = build_services(config, executor=InlineExecutor(config.stage_attempts, config.rpc_backoff))
    daemon = FundDaemon(services, poll_interval=args.poll, backlog=args.backlog)

    if args.once:
        daemon.cycle()
    else:
        daemon.run()


if __name__ == "__main__":
    main()
