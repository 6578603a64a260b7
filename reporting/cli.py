#!/usr/bin/env python3
"""
Operator CLI for the settlement service.

Usage:
    python -m reporting.cli seed [seed_json]
    python -m reporting.cli issue-token <user_id> [--ttl-hours N]
    python -m reporting.cli invoice-pdf <invoice_id_or_number> [-o out.pdf]
    python -m reporting.cli reconcile [--older-than SECONDS]

All commands work against DATA_DIR (or --data-dir). Without one the
repositories are in-memory and nothing survives the command.

Examples:
    # Load demo users and a listing
    DATA_DIR=data python -m reporting.cli seed

    # Token for an API caller
    DATA_DIR=data TOKEN_SECRET=... python -m reporting.cli issue-token USR-AGENT-1
"""

import argparse
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

from core.settlement import (
    NotFoundError,
    Property,
    SettlementServices,
    UserRole,
    build_services,
)
from reporting.invoice_pdf import render_invoice_pdf
from utils.config import Config
from utils.logging_setup import setup_logging
from web.auth import issue_access_token


DEMO_SEED: dict = {
    "users": [
        {"user_id": "USR-ADMIN-1", "name": "Operations", "email": "ops@example.com", "role": "admin"},
        {
            "user_id": "USR-AGENT-1",
            "name": "Alex Agent",
            "email": "alex.agent@example.com",
            "role": "agent",
            "bank_account_number": "062-000 12345678",
        },
        {"user_id": "USR-SELLER-1", "name": "Sam Seller", "email": "sam.seller@example.com", "role": "seller"},
        {"user_id": "USR-BUYER-1", "name": "Bailey Buyer", "email": "bailey.buyer@example.com", "role": "buyer"},
    ],
    "properties": [
        {
            "title": "12 Harbour Street",
            "price": "750000",
            "owner_id": "USR-SELLER-1",
            "address": "12 Harbour Street, Sydney NSW 2000",
            "agent_id": "USR-AGENT-1",
            "contact_email": "sam.seller@example.com",
        },
    ],
}


def _services(args) -> SettlementServices:
    config = Config.load()
    if getattr(args, "data_dir", None):
        config.data_dir = args.data_dir
    return build_services(config)


def seed_from_dict(services: SettlementServices, data: dict) -> dict:
    """
    Load users and properties into the repositories.

    Users and listing slugs that already exist are skipped. Returns the created IDs.
    """
    created = {"users": [], "properties": []}

    for user_data in data.get("users", []):
        user_id = user_data.get("user_id")
        if user_id and services.directory.get(user_id) is not None:
            continue
        user = services.directory.add(
            name=user_data["name"],
            email=user_data["email"],
            role=UserRole(user_data["role"]),
            user_id=user_id,
            bank_account_number=user_data.get("bank_account_number"),
            phone=user_data.get("phone"),
        )
        created["users"].append(user.user_id)

    for prop_data in data.get("properties", []):
        prop = Property.create(
            title=prop_data["title"],
            price=prop_data["price"],
            owner_id=prop_data["owner_id"],
            address=prop_data.get("address", ""),
            agent_id=prop_data.get("agent_id"),
            contact_email=prop_data.get("contact_email"),
            slug=prop_data.get("slug"),
        )
        if services.properties.get_by_ref(prop.slug) is not None:
            continue
        services.properties.add(prop)
        created["properties"].append(prop.property_id)

    return created


def cmd_seed(args):
    """Load demo data or a seed JSON file."""
    if args.seed_file:
        input_path = Path(args.seed_file)
        if not input_path.exists():
            print(f"Error: File not found: {input_path}", file=sys.stderr)
            return 1
        try:
            data = json.loads(input_path.read_text())
        except json.JSONDecodeError as e:
            print(f"Error: Invalid JSON: {e}", file=sys.stderr)
            return 1
    else:
        data = DEMO_SEED

    services = _services(args)
    try:
        created = seed_from_dict(services, data)
    except (KeyError, ValueError) as e:
        print(f"Error: Invalid seed data: {e}", file=sys.stderr)
        return 1

    print(f"Users created: {', '.join(created['users']) or 'none'}")
    for property_id in created["properties"]:
        prop = services.properties.get(property_id)
        print(f"Property created: {property_id} ({prop.slug})")
    return 0


def cmd_issue_token(args):
    """Print a bearer token for a directory user."""
    services = _services(args)
    if not services.config.token_secret:
        print("Error: TOKEN_SECRET must be set to issue tokens", file=sys.stderr)
        return 1

    user = services.directory.get(args.user_id)
    if user is None:
        print(f"Error: User not found: {args.user_id}", file=sys.stderr)
        return 1

    ttl = args.ttl_hours or services.config.token_ttl_hours
    print(issue_access_token(user, services.config.token_secret, ttl_hours=ttl))
    return 0


def cmd_invoice_pdf(args):
    """Render a stored invoice to a PDF file."""
    services = _services(args)
    try:
        invoice = services.ledger.require(args.invoice)
    except NotFoundError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    output: Optional[str] = args.output or f"{invoice.invoice_number}.pdf"
    pdf = render_invoice_pdf(
        invoice,
        agent=services.directory.get(invoice.agent_id),
        counterparty=services.directory.get(invoice.counterparty_id),
    )
    Path(output).write_bytes(pdf)
    print(f"Invoice written: {output}")
    return 0


def cmd_reconcile(args):
    """Resume unfinished settlements and deliver due notifications."""
    services = _services(args)
    outcomes = services.engine.reconcile(older_than=timedelta(seconds=args.older_than))
    for outcome in outcomes:
        print(f"{outcome['entry_id']}: {outcome['status']}")
    stats = services.dispatcher.deliver_pending()
    print(f"Notifications: {stats['sent']} sent, {stats['retrying']} retrying, {stats['dead_letter']} dead")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Settlement service operator tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m reporting.cli seed
    python -m reporting.cli issue-token USR-AGENT-1
    python -m reporting.cli invoice-pdf INV-2026-000001 -o invoice.pdf
        """,
    )
    parser.add_argument("--data-dir", help="Override DATA_DIR")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at LOG_LEVEL instead of WARNING")

    subparsers = parser.add_subparsers(dest="command", required=True)

    seed_parser = subparsers.add_parser("seed", help="Load demo data or a seed JSON file")
    seed_parser.add_argument("seed_file", nargs="?", help="Path to seed JSON")
    seed_parser.set_defaults(func=cmd_seed)

    token_parser = subparsers.add_parser("issue-token", help="Issue a bearer token")
    token_parser.add_argument("user_id", help="Directory user ID")
    token_parser.add_argument("--ttl-hours", type=int, default=None, help="Token lifetime")
    token_parser.set_defaults(func=cmd_issue_token)

    pdf_parser = subparsers.add_parser("invoice-pdf", help="Render an invoice PDF")
    pdf_parser.add_argument("invoice", help="Invoice ID or number")
    pdf_parser.add_argument("-o", "--output", help="Output path")
    pdf_parser.set_defaults(func=cmd_invoice_pdf)

    reconcile_parser = subparsers.add_parser("reconcile", help="Resume unfinished settlements")
    reconcile_parser.add_argument("--older-than", type=int, default=60, help="Seconds")
    reconcile_parser.set_defaults(func=cmd_reconcile)

    return parser


def main(argv: Optional[list[str]] = None):
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    # Keep stdout clean for command output such as tokens
    config = Config.load()
    setup_logging(config.log_level if args.verbose else "WARNING", config.log_format)
    logging.getLogger(__name__).debug("CLI config: %s", config.to_dict())

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
