#!/usr/bin/env python3
"""
Walk one provider/buyer relationship through the real platform.

Negotiates terms, submits leads until the weekly cap stops the provider,
settles the payouts through a fake processor, reverses one of them and
prints the resulting balances.

Usage:
    python3 scripts/demo_connection_flow.py
    python3 scripts/demo_connection_flow.py --database-url sqlite:///demo.db
    python3 scripts/demo_connection_flow.py --config path/to/leadpay.yaml --verbose
"""

import argparse
import logging
import sys
from pathlib import Path
from uuid import uuid4

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from leadpay_config import get_active_config  # noqa: E402
from leadpay_kernel.db.engine import (  # noqa: E402
    create_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from leadpay_kernel.db.immutability import register_immutability_listeners  # noqa: E402
from leadpay_kernel.domain.actors import Actor  # noqa: E402
from leadpay_kernel.exceptions import CapExceededError  # noqa: E402
from leadpay_kernel.logging_config import configure_logging  # noqa: E402
from leadpay_services.notifications import NotificationDispatcher  # noqa: E402
from leadpay_services.payouts import ProcessorReceipt  # noqa: E402
from leadpay_services.platform import LeadPayPlatform  # noqa: E402


class DemoProcessor:
    """Accepts every payout."""

    def __init__(self):
        self._count = 0

    def execute_payout(self, transaction):
        self._count += 1
        return ProcessorReceipt(payment_id=f"pi_demo_{self._count}", transfer_id=f"tr_demo_{self._count}")


def _print_balance(label, balance):
    print(
        f"  {label:<9} available={balance.available_balance:>8}  "
        f"pending={balance.pending_balance:>8}  "
        f"earned={balance.total_earnings:>8}  paid_out={balance.total_payouts:>8}"
    )


def run(platform: LeadPayPlatform) -> None:
    provider = Actor.provider(uuid4())
    buyer = Actor.buyer(uuid4())

    print("\n1. Negotiation")
    request = platform.request_connection(provider, buyer.account_id, message="Auto leads, West Coast")
    print(f"  request {request.id} -> {request.status.value}")
    request = platform.set_terms(
        buyer,
        request.id,
        {"ratePerLead": "75", "leadTypes": ["auto"], "weeklyLeadCap": 3},
    )
    print(f"  terms proposed -> {request.status.value}")
    connection = platform.accept_terms(provider, request.id)
    print(f"  connection {connection.id} -> {connection.status.value}")

    print("\n2. Lead submissions")
    submitted = []
    for n in range(1, 6):
        lead_id = f"lead-{n}"
        try:
            result = platform.check_and_record_lead_submission(provider, connection.id, lead_id)
        except CapExceededError as exc:
            print(f"  {lead_id}: denied ({exc.reset_hint})")
            break
        submitted.append(result)
        print(
            f"  {lead_id}: ${result.transaction.amount} pending, "
            f"{result.cap_status.weekly_remaining} left this week"
        )

    status = platform.get_cap_status(connection.id)
    print(f"  cap status: can_submit={status.can_submit} message={status.message!r}")

    print("\n3. Settlement")
    for result in submitted:
        settled = platform.settle_payout(result.transaction.id)
        print(f"  {settled.id} -> {settled.status.value} ({settled.processor_payment_id})")

    print("\n4. Reversal")
    reversal = platform.reverse_transaction(submitted[0].transaction.id, "duplicate lead")
    print(f"  reversed {reversal.original.id}, adjustment {reversal.reversal.id} ${reversal.reversal.amount}")

    print("\n5. Balances")
    _print_balance("provider", platform.reconcile_balance(provider.account_id))
    _print_balance("buyer", platform.reconcile_balance(buyer.account_id))

    ended = platform.terminate_connection(buyer, connection.id, reason="Demo finished")
    print(f"\nconnection -> {ended.status.value}")


def main() -> int:
    parser = argparse.ArgumentParser(description="LeadPay connection flow demo")
    parser.add_argument("--database-url", help="defaults to the configured database.url")
    parser.add_argument("--config", help="platform YAML (defaults to LEADPAY_CONFIG or packaged defaults)")
    parser.add_argument("--verbose", action="store_true", help="emit structured logs to stderr")
    args = parser.parse_args()

    configure_logging(level=logging.INFO if args.verbose else logging.WARNING)

    config = get_active_config(args.config)
    url = args.database_url or config.database.url
    engine = init_engine_from_url(url, echo=config.database.echo)
    create_tables(engine)
    register_immutability_listeners()

    dispatcher = NotificationDispatcher()
    platform = LeadPayPlatform(
        get_session_factory(),
        config=config,
        dispatcher=dispatcher,
        processor=DemoProcessor(),
    )
    print(f"LeadPay demo on {engine.dialect.name} (config {config.config_id} v{config.version})")
    try:
        run(platform)
        dispatcher.flush()
    finally:
        dispatcher.shutdown()
        reset_engine()
    return 0


if __name__ == "__main__":
    sys.exit(main())
