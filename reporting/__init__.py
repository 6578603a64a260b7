"""
Reporting module for the settlement service.

Renders stored invoices as PDFs and hosts the operator CLI.

Usage:
    from reporting import render_invoice_pdf

    pdf_bytes = render_invoice_pdf(invoice, agent=agent, counterparty=seller)
"""

from .invoice_pdf import InvoicePdfGenerator, render_invoice_pdf

__all__ = [
    "InvoicePdfGenerator",
    "render_invoice_pdf",
]
