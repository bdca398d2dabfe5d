#!/usr/bin/env python3
# Copyright (c) 2025 The BATHRON 2.0 developers
# Distributed under the MIT software license

"""
Fund Network Server - REST API for custodial deposit settlement

Endpoints:
  POST     /api/fund/issue-address  - New position + single-use deposit address
  POST     /api/fund/confirm        - Verify a deposit tx ({ref, tx_hash, owner_id?})
  GET|POST /api/fund/watch          - Scan recent blocks for deposits ({ref?, address?})
  POST     /api/fund/sweep          - Sweep one funded position to treasury ({ref?})
  POST     /api/fund/mint           - Mint + allocate custody token ({ref})
  POST     /api/fund/bind           - Attach an owner to positions ({owner_id, refs})
  POST     /api/fund/positions      - Position records ({refs} or {owner_id})
  GET      /api/fund/summary        - Counts and totals (?owner_id=...)
  GET      /health                  - Server up
  GET      /health/chain            - Chain RPC connectivity
"""

import argparse
import logging
import os
import time

from flask import Flask, jsonify, request
from flask_cors import CORS

from fundnet import FundConfig, FundError, build_services, load_env_file
from fundnet.key_vault import mask_secret

log = logging.getLogger(__name__)


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _params() -> dict:
    """JSON body for POST, query string for GET."""
    if request.method == "GET":
        return request.args.to_dict()
    return _body()


def create_app(services) -> Flask:
    app = Flask(__name__)
    CORS(app)

    @app.errorhandler(FundError)
    def handle_fund_error(e: FundError):
        if e.http_status >= 500:
            log.error(f"{request.path}: {e.kind}: {e}")
        else:
            log.info(f"{request.path}: {e.kind}: {e}")
        return jsonify(e.to_dict()), e.http_status

    # =========================================================================
    # HEALTH ENDPOINTS
    # =========================================================================

    @app.route('/health')
    def health():
        """Simple health check - returns ok if server is running"""
        return jsonify({'ok': True, 'timestamp': int(time.time())})

    @app.route('/health/chain')
    def health_chain():
        """Check chain RPC connectivity"""
        result = services.chain_health()
        return jsonify(result), (200 if result['ok'] else 503)

    # =========================================================================
    # FUND API
    # =========================================================================

    @app.route('/api/fund/issue-address', methods=['POST'])
    def api_issue_address():
        return jsonify(services.issuer.issue())

    @app.route('/api/fund/confirm', methods=['POST'])
    def api_confirm():
        data = _body()
        return jsonify(services.verifier.confirm(
            data.get('ref'), data.get('tx_hash'), owner_id=data.get('owner_id')))

    @app.route('/api/fund/watch', methods=['GET', 'POST'])
    def api_watch():
        data = _params()
        return jsonify(services.watcher.scan(ref=data.get('ref') or None,
                                             address=data.get('address') or None))

    @app.route('/api/fund/sweep', methods=['POST'])
    def api_sweep():
        return jsonify(services.sweeper.sweep(_body().get('ref') or None))

    @app.route('/api/fund/mint', methods=['POST'])
    def api_mint():
        return jsonify(services.minter.mint(_body().get('ref')))

    @app.route('/api/fund/bind', methods=['POST'])
    def api_bind():
        data = _body()
        return jsonify(services.bind(data.get('owner_id'), data.get('refs')))

    @app.route('/api/fund/positions', methods=['POST'])
    def api_positions():
        data = _body()
        return jsonify(services.list_positions(refs=data.get('refs'), owner_id=data.get('owner_id')))

    @app.route('/api/fund/summary')
    def api_summary():
        return jsonify(services.summary(request.args.get('owner_id')))

    return app


# =============================================================================
# MAIN
# =============================================================================

def main():
    parser = argparse.ArgumentParser(description="Fund Network REST server")
    parser.add_argument("--port", type=int, default=None, help="HTTP port (default FUND_HTTP_PORT)")
    parser.add_argument("--env-file", default=".env", help="Optional KEY=VALUE file")
    parser.add_argument("--debug", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s'
    )

    if load_env_file(args.env_file):
        log.info(f"Loaded {os.path.abspath(args.env_file)}")

    config = FundConfig.from_env()
    services = build_services(config)
    if config.pipeline_mode == "background":
        services.pipeline.executor.start()

    port = args.port or config.http_port
    log.info(f"Starting Fund Server on port {port}")
    log.info(f"Chain RPC: {config.rpc_url} (chain {config.chain_id})")
    log.info(f"Deposit token: {config.deposit_token or '(unset)'}")
    log.info(f"Treasury: {config.treasury_address or '(unset)'}")
    log.info(f"Key secret: {mask_secret(config.key_enc_secret, 2, 2)}")
    log.info(f"Pipeline: {config.pipeline_mode}")

    create_app(services).run(host='0.0.0.0', port=port, debug=False)


if __name__ == '__main__':
    main()
