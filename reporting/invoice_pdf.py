"""
Settlement Invoice PDF Generator

Renders a stored invoice as a one-page A4 document: parties, line items,
GST breakdown, totals, payments received and payment instructions.

Library Choice: ReportLab
- Pure Python, no system dependencies
- Deterministic output (same invoice = same layout)

Amounts are taken from the stored invoice; nothing is recalculated here.
"""

from __future__ import annotations

from io import BytesIO
from typing import Final, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_LEFT, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas
from reportlab.platypus import HRFlowable, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from core.settlement.directory import User
from core.settlement.invoice import Invoice, InvoiceStatus
from utils.formatting import format_currency, format_percent


# =============================================================================
# Constants
# =============================================================================

GENERATOR_VERSION: Final[str] = "1.0"
ISSUER_NAME: Final[str] = "Settlement Services"

CATEGORY_TITLES: Final[dict[str, str]] = {
    "settlement_commission": "Tax Invoice - Settlement Commission",
    "platform_commission": "Tax Invoice - Platform Commission",
    "buyer_payment": "Deposit Invoice",
    "other": "Tax Invoice",
}


class InvoicePalette:
    """Print-friendly colours."""

    BLACK = colors.Color(0.1, 0.1, 0.1)
    CHARCOAL = colors.Color(0.2, 0.2, 0.22)
    SLATE = colors.Color(0.35, 0.38, 0.42)
    GRAY = colors.Color(0.5, 0.5, 0.5)
    LIGHT_GRAY = colors.Color(0.85, 0.85, 0.85)
    PALE_GRAY = colors.Color(0.95, 0.95, 0.95)
    WHITE = colors.white
    ACCENT = colors.Color(0.15, 0.25, 0.4)
    PAID = colors.Color(0.15, 0.4, 0.25)
    WARNING = colors.Color(0.6, 0.4, 0.1)


# =============================================================================
# Style Configuration
# =============================================================================


def get_invoice_styles() -> dict:
    styles = getSampleStyleSheet()

    styles.add(ParagraphStyle(
        name="InvoiceTitle",
        parent=styles["Normal"],
        fontSize=18,
        leading=22,
        textColor=InvoicePalette.CHARCOAL,
        alignment=TA_LEFT,
        fontName="Helvetica-Bold",
        spaceAfter=4 * mm,
    ))

    styles.add(ParagraphStyle(
        name="InvoiceMeta",
        parent=styles["Normal"],
        fontSize=9,
        leading=12,
        textColor=InvoicePalette.SLATE,
        alignment=TA_RIGHT,
        fontName="Helvetica",
    ))

    styles.add(ParagraphStyle(
        name="InvoiceLabel",
        parent=styles["Normal"],
        fontSize=8,
        leading=10,
        textColor=InvoicePalette.GRAY,
        fontName="Helvetica-Bold",
        spaceAfter=1 * mm,
    ))

    styles.add(ParagraphStyle(
        name="InvoiceBody",
        parent=styles["Normal"],
        fontSize=9,
        leading=12,
        textColor=InvoicePalette.BLACK,
        fontName="Helvetica",
    ))

    styles.add(ParagraphStyle(
        name="InvoiceSection",
        parent=styles["Normal"],
        fontSize=11,
        leading=14,
        textColor=InvoicePalette.ACCENT,
        fontName="Helvetica-Bold",
        spaceBefore=6 * mm,
        spaceAfter=2 * mm,
    ))

    styles.add(ParagraphStyle(
        name="InvoiceNote",
        parent=styles["Normal"],
        fontSize=8,
        leading=11,
        textColor=InvoicePalette.SLATE,
        fontName="Helvetica-Oblique",
    ))

    return styles


# =============================================================================
# Generator
# =============================================================================


class InvoicePdfGenerator:
    """Builds invoice PDFs in memory."""

    PAGE_WIDTH, PAGE_HEIGHT = A4
    MARGIN_LEFT = 18 * mm
    MARGIN_RIGHT = 18 * mm
    MARGIN_TOP = 18 * mm
    MARGIN_BOTTOM = 22 * mm

    def __init__(self):
        self.styles = get_invoice_styles()

    def generate_to_buffer(
        self,
        invoice: Invoice,
        agent: Optional[User] = None,
        counterparty: Optional[User] = None,
    ) -> bytes:
        """Generate the PDF and return it as bytes."""
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            leftMargin=self.MARGIN_LEFT,
            rightMargin=self.MARGIN_RIGHT,
            topMargin=self.MARGIN_TOP,
            bottomMargin=self.MARGIN_BOTTOM,
            title=f"Invoice {invoice.invoice_number}",
            author=ISSUER_NAME,
            subject=invoice.property_title,
        )

        story = []
        story.extend(self._build_header(invoice))
        story.extend(self._build_parties(invoice, agent, counterparty))
        story.extend(self._build_line_items(invoice))
        story.extend(self._build_totals(invoice))
        if invoice.payments:
            story.extend(self._build_payments(invoice))
        story.extend(self._build_payment_instructions(invoice))

        doc.build(story, onFirstPage=self._draw_footer, onLaterPages=self._draw_footer)
        return buffer.getvalue()

    def _draw_footer(self, canvas_obj: canvas.Canvas, doc):
        canvas_obj.saveState()
        canvas_obj.setFont("Helvetica", 7)
        canvas_obj.setFillColor(InvoicePalette.GRAY)
        canvas_obj.drawString(self.MARGIN_LEFT, self.MARGIN_BOTTOM - 10 * mm, ISSUER_NAME.upper())
        canvas_obj.drawRightString(
            self.PAGE_WIDTH - self.MARGIN_RIGHT,
            self.MARGIN_BOTTOM - 10 * mm,
            f"{doc.page}",
        )
        canvas_obj.restoreState()

    def _money(self, invoice: Invoice, amount) -> str:
        if invoice.display_currency == "A$":
            return format_currency(amount, "AUD")
        return f"{invoice.display_currency}{amount:,.2f}"

    # =========================================================================
    # Sections
    # =========================================================================

    def _build_header(self, invoice: Invoice) -> list:
        title = CATEGORY_TITLES.get(invoice.category.value, "Tax Invoice")
        meta_lines = [
            f"<b>Invoice</b> {escape(invoice.invoice_number)}",
            f"Issued {invoice.invoice_date.strftime('%d %b %Y')}",
            f"Due {invoice.due_date.strftime('%d %b %Y')} ({escape(invoice.payment_terms)})",
            f"Status {invoice.status.value.upper()}",
        ]
        header = Table(
            [[
                Paragraph(escape(title), self.styles["InvoiceTitle"]),
                Paragraph("<br/>".join(meta_lines), self.styles["InvoiceMeta"]),
            ]],
            colWidths=[100 * mm, 74 * mm],
        )
        header.setStyle(TableStyle([
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ("LEFTPADDING", (0, 0), (-1, -1), 0),
            ("RIGHTPADDING", (0, 0), (-1, -1), 0),
        ]))
        return [
            header,
            HRFlowable(width="100%", thickness=0.5, color=InvoicePalette.LIGHT_GRAY),
            Spacer(1, 4 * mm),
        ]

    def _party_block(self, label: str, user: Optional[User], fallback_id: str) -> list:
        lines = [Paragraph(label, self.styles["InvoiceLabel"])]
        if user is None:
            lines.append(Paragraph(escape(fallback_id), self.styles["InvoiceBody"]))
            return lines
        lines.append(Paragraph(f"<b>{escape(user.name)}</b>", self.styles["InvoiceBody"]))
        lines.append(Paragraph(escape(user.email), self.styles["InvoiceBody"]))
        if user.phone:
            lines.append(Paragraph(escape(user.phone), self.styles["InvoiceBody"]))
        return lines

    def _build_parties(
        self,
        invoice: Invoice,
        agent: Optional[User],
        counterparty: Optional[User],
    ) -> list:
        bill_to = self._party_block(
            f"BILL TO ({invoice.counterparty_role.value.upper()})",
            counterparty,
            invoice.counterparty_id,
        )
        issued_by = self._party_block("AGENT", agent, invoice.agent_id)
        property_block = [
            Paragraph("PROPERTY", self.styles["InvoiceLabel"]),
            Paragraph(f"<b>{escape(invoice.property_title)}</b>", self.styles["InvoiceBody"]),
            Paragraph(escape(invoice.property_address or ""), self.styles["InvoiceBody"]),
        ]
        if invoice.settlement_date:
            property_block.append(Paragraph(
                f"Settled {invoice.settlement_date.strftime('%d %b %Y')}",
                self.styles["InvoiceBody"],
            ))

        table = Table([[bill_to, issued_by, property_block]], colWidths=[58 * mm, 58 * mm, 58 * mm])
        table.setStyle(TableStyle([
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ("LEFTPADDING", (0, 0), (-1, -1), 0),
        ]))
        return [table]

    def _build_line_items(self, invoice: Invoice) -> list:
        elements = [Paragraph("Details", self.styles["InvoiceSection"])]

        rows = [["Description", "Qty", "Unit Price", "Amount"]]
        for item in invoice.line_items:
            rows.append([
                Paragraph(escape(item.description), self.styles["InvoiceBody"]),
                str(item.quantity),
                self._money(invoice, item.unit_price),
                self._money(invoice, item.total_price),
            ])

        table = Table(rows, colWidths=[100 * mm, 14 * mm, 30 * mm, 30 * mm])
        table.setStyle(TableStyle([
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 9),
            ("BACKGROUND", (0, 0), (-1, 0), InvoicePalette.CHARCOAL),
            ("TEXTCOLOR", (0, 0), (-1, 0), InvoicePalette.WHITE),
            ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
            ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
            ("LINEBELOW", (0, 1), (-1, -1), 0.5, InvoicePalette.LIGHT_GRAY),
            ("TOPPADDING", (0, 0), (-1, -1), 2 * mm),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 2 * mm),
        ]))
        elements.append(table)
        elements.append(Paragraph(
            f"Property value {self._money(invoice, invoice.property_value)} at "
            f"{format_percent(invoice.commission_rate)}",
            self.styles["InvoiceNote"],
        ))
        return elements

    def _build_totals(self, invoice: Invoice) -> list:
        rows = [
            ["Subtotal", self._money(invoice, invoice.subtotal)],
            [f"GST ({format_percent(invoice.tax.gst_rate, 0)})", self._money(invoice, invoice.tax.gst_amount)],
        ]
        for name, rate, amount in invoice.tax.other:
            rows.append([f"{name} ({format_percent(rate)})", self._money(invoice, amount)])
        rows.append(["Total", self._money(invoice, invoice.total_amount)])
        if invoice.payments:
            rows.append(["Paid", self._money(invoice, invoice.amount_paid)])
            rows.append(["Amount Due", self._money(invoice, invoice.amount_due)])

        total_row = 2 + len(invoice.tax.other)
        table = Table(rows, colWidths=[40 * mm, 34 * mm], hAlign="RIGHT")
        style = [
            ("FONTSIZE", (0, 0), (-1, -1), 9),
            ("ALIGN", (1, 0), (1, -1), "RIGHT"),
            ("LINEABOVE", (0, total_row), (-1, total_row), 0.75, InvoicePalette.CHARCOAL),
            ("FONTNAME", (0, total_row), (-1, total_row), "Helvetica-Bold"),
        ]
        if invoice.status == InvoiceStatus.PAID:
            style.append(("TEXTCOLOR", (0, -1), (-1, -1), InvoicePalette.PAID))
        elif invoice.is_overdue:
            style.append(("TEXTCOLOR", (0, -1), (-1, -1), InvoicePalette.WARNING))
        table.setStyle(TableStyle(style))
        return [Spacer(1, 4 * mm), table]

    def _build_payments(self, invoice: Invoice) -> list:
        elements = [Paragraph("Payments Received", self.styles["InvoiceSection"])]
        rows = [["Date", "Method", "Reference", "Amount"]]
        for payment in invoice.payments:
            rows.append([
                payment.received_at.strftime("%d %b %Y"),
                payment.method.replace("_", " ").title(),
                payment.reference or "",
                self._money(invoice, payment.amount),
            ])
        table = Table(rows, colWidths=[30 * mm, 40 * mm, 74 * mm, 30 * mm])
        table.setStyle(TableStyle([
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 8),
            ("BACKGROUND", (0, 0), (-1, 0), InvoicePalette.PALE_GRAY),
            ("ALIGN", (-1, 0), (-1, -1), "RIGHT"),
            ("LINEBELOW", (0, 0), (-1, -1), 0.5, InvoicePalette.LIGHT_GRAY),
        ]))
        elements.append(table)
        return elements

    def _build_payment_instructions(self, invoice: Invoice) -> list:
        elements = [Paragraph("Payment", self.styles["InvoiceSection"])]

        for method in invoice.payment_methods:
            details = method.get("details", {})
            if method.get("type") == "bank_transfer":
                lines = [
                    f"Account name: {details.get('account_name') or '-'}",
                    f"Bank: {details.get('bank_name') or '-'}",
                    f"Account number: {details.get('account_number') or '-'}",
                    f"Reference: {details.get('reference') or '-'}",
                ]
                elements.append(Paragraph(
                    "<br/>".join(escape(line) for line in lines),
                    self.styles["InvoiceBody"],
                ))
                elements.append(Spacer(1, 2 * mm))

        if not invoice.payment_methods:
            elements.append(Paragraph(
                f"Please pay within {escape(invoice.payment_terms or 'the stated terms')} "
                f"quoting invoice number {escape(invoice.invoice_number)}.",
                self.styles["InvoiceBody"],
            ))

        if invoice.public_notes:
            elements.append(Spacer(1, 2 * mm))
            elements.append(Paragraph(escape(invoice.public_notes), self.styles["InvoiceNote"]))
        return elements


def render_invoice_pdf(
    invoice: Invoice,
    agent: Optional[User] = None,
    counterparty: Optional[User] = None,
) -> bytes:
    """Render an invoice to PDF bytes."""
    return InvoicePdfGenerator().generate_to_buffer(invoice, agent, counterparty)
