#!/usr/bin/env python3
# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Protocol marketplace server.

Config from env vars: MARKET_DB, MARKET_HOST, MARKET_PORT, MARKET_LOG_LEVEL,
MARKET_SWEEP_INTERVAL, plus MARKET_FEE_PERCENT / MARKET_HANDLER_TIMEOUT
(see SettlementConfig.from_env).
"""

import logging
import os
import sys
import threading
import time

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from server.app import create_app
from server.disputes import DisputeAdjudicator
from server.settlement import SettlementConfig, SettlementEngine
from server.store import LedgerStore

DB_PATH = os.environ.get("MARKET_DB", "market.db")
HOST = os.environ.get("MARKET_HOST", "0.0.0.0")
PORT = int(os.environ.get("MARKET_PORT", "8000"))
LOG_LEVEL = os.environ.get("MARKET_LOG_LEVEL", "INFO").upper()
SWEEP_INTERVAL = int(os.environ.get("MARKET_SWEEP_INTERVAL", "60"))

logger = logging.getLogger("market")


def run_sweeper(engine: SettlementEngine, interval: int):
    """Background thread: refund invocations a crashed process left PENDING."""
    while True:
        time.sleep(interval)
        try:
            resolved = engine.sweep_abandoned()
            if resolved:
                logger.warning("sweeper resolved %d abandoned invocation(s)", len(resolved))
        except Exception:
            logger.exception("sweeper pass failed")


def main():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    db_dir = os.path.dirname(DB_PATH)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    config = SettlementConfig.from_env()
    store = LedgerStore(DB_PATH)
    engine = SettlementEngine(store, config=config)
    adjudicator = DisputeAdjudicator(store)
    app = create_app(store=store, engine=engine, adjudicator=adjudicator)

    # Anything still PENDING at startup was abandoned by the previous process
    resolved = engine.sweep_abandoned(older_than=0)
    if resolved:
        logger.warning("refunded %d invocation(s) left PENDING by a previous run", len(resolved))

    if SWEEP_INTERVAL > 0:
        threading.Thread(target=run_sweeper, args=(engine, SWEEP_INTERVAL), daemon=True).start()

    logger.info("fee %d%%, handler deadline %.0fs, listening on %s:%d",
                config.fee_percent, config.handler_timeout, HOST, PORT)
    uvicorn.run(app, host=HOST, port=PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
