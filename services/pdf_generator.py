"""
Receipt PDF Generator
Renders SIP execution, deposit and periodic report receipts as PDF documents
"""

import io
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.platypus import (
    SimpleDocTemplate,
    Paragraph,
    Spacer,
    HRFlowable,
    Table,
    TableStyle,
)

logger = logging.getLogger(__name__)

BRAND_COLOR = colors.HexColor("#1B998B")
PLATFORM_NAME = "Stride"


def _styles():
    styles = getSampleStyleSheet()
    title = ParagraphStyle(
        "ReceiptTitle",
        parent=styles["Heading1"],
        fontSize=18,
        spaceAfter=16,
        alignment=TA_CENTER,
        textColor=BRAND_COLOR,
    )
    heading = ParagraphStyle(
        "ReceiptHeading",
        parent=styles["Heading2"],
        fontSize=13,
        spaceBefore=12,
        spaceAfter=8,
        textColor=BRAND_COLOR,
    )
    footer = ParagraphStyle(
        "ReceiptFooter",
        parent=styles["Normal"],
        fontSize=8,
        alignment=TA_CENTER,
        textColor=colors.grey,
    )
    return title, heading, footer


def _key_value_table(rows: Sequence[Sequence[str]]) -> Table:
    table = Table([list(r) for r in rows], colWidths=[2.2 * inch, 4.3 * inch])
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, -1), colors.HexColor("#F5F7F8")),
                ("TEXTCOLOR", (0, 0), (0, -1), BRAND_COLOR),
                ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 10),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.HexColor("#DDE3E6")),
            ]
        )
    )
    return table


class ReceiptPDFGenerator:
    """Generate receipt documents for the receipt archiver"""

    @staticmethod
    def render(title: str, fields: Dict[str, Any], line_items: Optional[List[Dict[str, Any]]] = None,
               generated_at: Optional[datetime] = None) -> bytes:
        """
        Render a receipt.

        Args:
            title: Document heading (e.g. "SIP Execution Receipt")
            fields: Ordered label -> value pairs shown in the summary table
            line_items: Optional rows for period reports (date, type, amount, status)
            generated_at: Timestamp printed in the footer

        Returns:
            bytes: PDF content
        """
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=0.75 * inch,
            leftMargin=0.75 * inch,
            topMargin=0.9 * inch,
            bottomMargin=0.9 * inch,
            title=title,
        )
        title_style, heading_style, footer_style = _styles()

        content = [
            Paragraph(f"{PLATFORM_NAME} - {title}", title_style),
            HRFlowable(width="100%", thickness=1, color=BRAND_COLOR),
            Spacer(1, 12),
            _key_value_table([(str(label), "-" if value is None else str(value)) for label, value in fields.items()]),
        ]

        if line_items:
            content.append(Paragraph("Transactions", heading_style))
            header = ["Date", "Type", "Amount", "Status"]
            rows = [header] + [
                [str(item.get("date", "")), str(item.get("type", "")), str(item.get("amount", "")), str(item.get("status", ""))]
                for item in line_items
            ]
            table = Table(rows, colWidths=[1.7 * inch, 1.6 * inch, 1.6 * inch, 1.6 * inch], repeatRows=1)
            table.setStyle(
                TableStyle(
                    [
                        ("BACKGROUND", (0, 0), (-1, 0), BRAND_COLOR),
                        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                        ("FONTSIZE", (0, 0), (-1, -1), 9),
                        ("GRID", (0, 0), (-1, -1), 0.25, colors.HexColor("#DDE3E6")),
                    ]
                )
            )
            content.append(table)

        stamp = (generated_at or datetime.utcnow()).strftime("%Y-%m-%d %H:%M UTC")
        content.append(Spacer(1, 24))
        content.append(Paragraph(f"Generated {stamp}. This receipt is issued for your records.", footer_style))

        doc.build(content)
        pdf_bytes = buffer.getvalue()
        buffer.close()
        logger.debug(f"📄 RECEIPT_RENDERED: {title} ({len(pdf_bytes)} bytes)")
        return pdf_bytes
