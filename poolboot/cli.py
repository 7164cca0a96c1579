#!/usr/bin/env python3
"""
Pool Bootstrap - Command Line

Usage:
    poolboot run --config poolboot.json [--ledger out.json] [--pair LABEL ...] [--debug]
    poolboot status --config poolboot.json

The signing key is read from POOLBOOT_PRIVATE_KEY (or a .env file).
`run` exits 1 when any pair ended in FAILED.
"""

import argparse
import json
import logging
from typing import List, Optional

from .chain_client import ChainClient
from .config import ConfigError, PRIVATE_KEY_ENV, load_config, load_private_key
from .status import inspect_pairs
from .workflow import AccountJob, WorkflowLedger, WorkflowOrchestrator, run_accounts

log = logging.getLogger("poolboot")


def mask_secret(secret: str, visible_prefix: int = 6, visible_suffix: int = 4) -> str:
    """Mask a secret for safe logging. Never log full keys."""
    if not secret or len(secret) <= visible_prefix + visible_suffix:
        return "***"
    return f"{secret[:visible_prefix]}...{secret[-visible_suffix:]}"


def make_client(config, private_key: Optional[str]) -> ChainClient:
    return ChainClient(
        config.rpc_url,
        private_key,
        chain_id=config.chain_id,
        receipt_timeout=config.receipt_timeout,
        gas=config.gas,
    )


def cmd_run(args) -> int:
    config = load_config(args.config)
    specs = config.build_specs(labels=args.pair or None)
    if not specs:
        log.warning("No pairs configured, nothing to do")
        return 0

    key = load_private_key()
    if not key:
        log.error(f"No signing key: set {PRIVATE_KEY_ENV} in the environment or .env")
        return 1
    log.info(f"Signing key {mask_secret(key)}")
    chain = make_client(config, key)

    ledger = WorkflowLedger(metadata={
        "sender": chain.address,
        "chain_id": config.chain_id,
        "rpc_url": config.rpc_url,
    })

    jobs = None
    if config.accounts:
        jobs = _account_jobs(config, chain, specs)
        if jobs is None:
            return 1

    # The ledger is written even when the run is interrupted
    try:
        if jobs:
            run_accounts(jobs, config.settings, ledger)
        else:
            WorkflowOrchestrator(chain, config.settings, ledger).run(specs)
    finally:
        ledger.save(args.ledger or config.ledger_file)
    summary = ", ".join(f"{k}={v}" for k, v in sorted(ledger.summary().items()))
    log.info(f"Done: {summary}")
    return 1 if ledger.failed() else 0


def _account_jobs(config, default_chain: ChainClient, specs) -> Optional[List[AccountJob]]:
    """Split specs between configured accounts; unassigned pairs go to the default key."""
    by_label = {s.pair_id: s for s in specs}
    jobs = []
    assigned = set()
    for account in config.accounts:
        job_specs = [by_label[label] for label in account.pairs if label in by_label]
        if not job_specs:
            continue
        key = load_private_key(account.key_env)
        if not key:
            log.error(f"No signing key in {account.key_env}")
            return None
        log.info(f"Account {account.key_env}: key {mask_secret(key)}, {len(job_specs)} pair(s)")
        jobs.append(AccountJob(make_client(config, key), job_specs))
        assigned.update(s.pair_id for s in job_specs)

    rest = [s for s in specs if s.pair_id not in assigned]
    if rest:
        jobs.append(AccountJob(default_chain, rest))
    return jobs


def cmd_status(args) -> int:
    config = load_config(args.config)
    specs = config.build_specs(labels=args.pair or None)
    chain = make_client(config, None)
    report = inspect_pairs(chain, config.settings, specs)
    print(json.dumps(report, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", "-c", default="poolboot.json", help="Config file path")
    common.add_argument("--pair", "-p", action="append", metavar="LABEL", help="Only this pair (repeatable)")
    common.add_argument("--debug", action="store_true", help="Verbose logging")

    parser = argparse.ArgumentParser(description="Pool Bootstrap - AMM liquidity and oracle registration")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", parents=[common], help="Bootstrap configured pairs")
    run.add_argument("--ledger", "-l", help="Ledger output path (default: config ledger_file)")
    run.set_defaults(func=cmd_run)

    status = sub.add_parser("status", parents=[common], help="Show on-chain state of configured pairs")
    status.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    try:
        return args.func(args)
    except ConfigError as e:
        log.error(f"Config error: {e}")
        return 1


if __name__ == "__main__":
    exit(main())
