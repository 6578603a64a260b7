"""
Tests for invoice PDF rendering and the operator CLI

Tests covering:
1. PDF renders for seller, buyer and paid invoices
2. CLI seed is repeatable against a data directory
3. CLI issues verifiable tokens
4. CLI writes invoice PDFs and runs reconciliation
"""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from core.settlement import (
    CounterpartyRole,
    InvoiceCategory,
    Property,
    TransitionRequest,
    build_services,
)
from reporting import InvoicePdfGenerator, render_invoice_pdf
from reporting import cli
from utils.config import Config
from web.auth import verify_access_token


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def data_dir(monkeypatch):
    """Temporary DATA_DIR shared by CLI invocations."""
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv("DATA_DIR", tmpdir)
        monkeypatch.delenv("EMAIL_WEBHOOK_URL", raising=False)
        # Leave pytest's log capture alone
        monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)
        yield Path(tmpdir)


@pytest.fixture
def buyer_invoice(services, listing):
    return services.ledger.get_or_create(
        category=InvoiceCategory.BUYER_PAYMENT,
        prop=listing,
        counterparty_role=CounterpartyRole.BUYER,
        counterparty_id="buyer-1",
        agent_id="agent-1",
    ).invoice


@pytest.fixture
def seller_invoice(services, listing):
    return services.ledger.get_or_create(
        category=InvoiceCategory.SETTLEMENT_COMMISSION,
        prop=listing,
        counterparty_role=CounterpartyRole.SELLER,
        counterparty_id="seller-1",
        agent_id="agent-1",
    ).invoice


# =============================================================================
# PDF
# =============================================================================


class TestInvoicePdf:
    """ReportLab rendering."""

    def test_seller_invoice(self, services, seller_invoice):
        pdf = render_invoice_pdf(
            seller_invoice,
            agent=services.directory.get("agent-1"),
            counterparty=services.directory.get("seller-1"),
        )
        assert pdf.startswith(b"%PDF")
        assert len(pdf) > 1000

    def test_buyer_invoice_with_instructions(self, services, buyer_invoice):
        pdf = InvoicePdfGenerator().generate_to_buffer(
            buyer_invoice,
            services.directory.get("agent-1"),
            services.directory.get("buyer-1"),
        )
        assert pdf.startswith(b"%PDF")

    def test_paid_invoice_without_parties(self, services, seller_invoice):
        """Missing directory entries fall back to IDs."""
        services.ledger.record_payment(seller_invoice.invoice_id, "6050.00", reference="EFT-1")
        pdf = render_invoice_pdf(seller_invoice)
        assert pdf.startswith(b"%PDF")

    def test_escapes_markup_in_titles(self, services, users):
        prop = services.properties.add(Property.create(
            title="Unit 4 <Rear> & Garden",
            price="350000",
            owner_id="seller-1",
            agent_id="agent-1",
        ))
        invoice = services.ledger.get_or_create(
            category=InvoiceCategory.SETTLEMENT_COMMISSION,
            prop=prop,
            counterparty_role=CounterpartyRole.SELLER,
            counterparty_id="seller-1",
            agent_id="agent-1",
        ).invoice
        assert render_invoice_pdf(invoice).startswith(b"%PDF")


# =============================================================================
# CLI
# =============================================================================


class TestCli:
    """Operator commands against a data directory."""

    def test_seed_is_repeatable(self, data_dir, capsys):
        assert cli.main(["seed"]) == 0
        first = capsys.readouterr().out
        assert "USR-AGENT-1" in first
        assert "Property created" in first

        assert cli.main(["seed"]) == 0
        second = capsys.readouterr().out
        assert "Users created: none" in second
        assert "Property created" not in second

    def test_seed_missing_file(self, data_dir, capsys):
        assert cli.main(["seed", str(data_dir / "missing.json")]) == 1
        assert "File not found" in capsys.readouterr().err

    def test_issue_token(self, data_dir, monkeypatch, capsys):
        monkeypatch.setenv("TOKEN_SECRET", "cli-secret")
        cli.main(["seed"])
        capsys.readouterr()

        assert cli.main(["issue-token", "USR-AGENT-1", "--ttl-hours", "2"]) == 0
        token = capsys.readouterr().out.strip()

        access = verify_access_token(token, "cli-secret")
        assert access.user_id == "USR-AGENT-1"
        assert access.role == "agent"

    def test_issue_token_requires_secret(self, data_dir, monkeypatch, capsys):
        monkeypatch.delenv("TOKEN_SECRET", raising=False)
        cli.main(["seed"])

        assert cli.main(["issue-token", "USR-AGENT-1"]) == 1
        assert "TOKEN_SECRET" in capsys.readouterr().err

    def test_issue_token_unknown_user(self, data_dir, monkeypatch, capsys):
        monkeypatch.setenv("TOKEN_SECRET", "cli-secret")
        assert cli.main(["issue-token", "USR-NOBODY"]) == 1
        assert "User not found" in capsys.readouterr().err

    def test_invoice_pdf(self, data_dir, capsys):
        cli.main(["seed"])
        services = build_services(Config(data_dir=str(data_dir), email_webhook_url=None))
        agent = services.directory.get("USR-AGENT-1")
        prop = services.properties.get_by_ref("12-harbour-street")
        result = services.engine.transition(prop.property_id, TransitionRequest(status="settled"), agent)
        number = result.invoice.invoice.invoice_number
        output = data_dir / "out.pdf"
        capsys.readouterr()

        assert cli.main(["invoice-pdf", number, "-o", str(output)]) == 0
        assert output.read_bytes().startswith(b"%PDF")
        assert str(output) in capsys.readouterr().out

    def test_invoice_pdf_unknown(self, data_dir, capsys):
        assert cli.main(["invoice-pdf", "INV-1999-000001"]) == 1
        assert "not found" in capsys.readouterr().err

    def test_reconcile(self, data_dir, capsys):
        cli.main(["seed"])
        capsys.readouterr()

        assert cli.main(["reconcile", "--older-than", "0"]) == 0
        assert "Notifications: 0 sent" in capsys.readouterr().out

    def test_seed_from_dict_skips_existing(self, services):
        data = {
            "users": [{"user_id": "u-1", "name": "Una", "email": "una@example.com", "role": "seller"}],
            "properties": [{"title": "5 Seed St", "price": "100", "owner_id": "u-1"}],
        }
        assert cli.seed_from_dict(services, data)["users"] == ["u-1"]
        assert cli.seed_from_dict(services, data) == {"users": [], "properties": []}
