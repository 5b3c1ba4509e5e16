# artifacts.py
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from io import BytesIO
from typing import Any, Callable, Dict

from reportlab.pdfgen import canvas
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib import colors
from reportlab.graphics.barcode import qr
from reportlab.graphics.shapes import Drawing
from reportlab.graphics import renderPDF


@dataclass(frozen=True)
class Artifact:
    filename: str
    content: bytes
    mime_type: str = "application/pdf"


class TicketRenderer(ABC):
    @abstractmethod
    def render_ticket(
        self, code: str, tier_name: str, event: Dict[str, Any], email: str
    ) -> Artifact: ...


# =====================================================================
# LAYOUT
# =====================================================================
PAGE_W, PAGE_H = A4
QR_SIZE = 90 * mm
BOX_W = PAGE_W * 0.6
FOOTER_H = 18 * mm

INK = colors.black
PAPER = colors.white
BG = colors.Color(0.04, 0.04, 0.04)


def _event_date(event: Dict[str, Any]) -> str:
    ts = event.get("date")
    if ts is None:
        return ""
    if isinstance(ts, str):
        ts = datetime.fromisoformat(ts.replace("Z", "+00:00")).timestamp()
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).strftime(
        "%d %b %Y, %H:%M"
    )


def _draw_qr(c: canvas.Canvas, data: str, x: float, y: float, size: float):
    widget = qr.QrCodeWidget(data)
    x0, y0, x1, y1 = widget.getBounds()
    w, h = x1 - x0, y1 - y0
    d = Drawing(size, size, transform=[size / w, 0, 0, size / h, 0, 0])
    d.add(widget)
    renderPDF.draw(d, c, x, y)


class PdfTicketRenderer(TicketRenderer):
    """
    One A4 page per ticket: QR code (scan target), event name, date,
    buyer email and the ticket code.
    """

    def __init__(
        self,
        qr_target: Callable[[str], str],
        footer: str = "For event info & updates: www.intheflo.xyz",
    ) -> None:
        self.qr_target = qr_target
        self.footer = footer

    def render_ticket(
        self, code: str, tier_name: str, event: Dict[str, Any], email: str
    ) -> Artifact:
        buf = BytesIO()
        c = canvas.Canvas(buf, pagesize=A4)
        c.setTitle(f"Ticket {code}")

        c.setFillColor(BG)
        c.rect(0, 0, PAGE_W, PAGE_H, stroke=0, fill=1)

        qr_x = (PAGE_W - QR_SIZE) / 2
        qr_y = PAGE_H - 40 * mm - QR_SIZE
        c.setFillColor(PAPER)
        c.rect(qr_x - 4 * mm, qr_y - 4 * mm, QR_SIZE + 8 * mm,
               QR_SIZE + 8 * mm, stroke=0, fill=1)
        _draw_qr(c, self.qr_target(code), qr_x, qr_y, QR_SIZE)

        box_x = (PAGE_W - BOX_W) / 2
        box_top = qr_y - 16 * mm
        lines = [
            (event.get("name") or "").upper(),
            f"DATE: {_event_date(event)}",
            tier_name.upper(),
            email.upper(),
            code,
        ]
        box_h = 12 * mm * len(lines) + 8 * mm
        c.setFillColor(PAPER)
        c.rect(box_x, box_top - box_h, BOX_W, box_h, stroke=0, fill=1)

        c.setFillColor(INK)
        c.setFont("Helvetica-Bold", 16)
        y = box_top - 12 * mm
        for line in lines:
            c.drawCentredString(PAGE_W / 2, y, line)
            y -= 12 * mm

        c.setFillColor(INK)
        c.rect(0, 0, PAGE_W, FOOTER_H, stroke=0, fill=1)
        c.setFillColor(PAPER)
        c.setFont("Helvetica-Bold", 12)
        c.drawCentredString(PAGE_W / 2, FOOTER_H / 2 - 4, self.footer)

        c.showPage()
        c.save()
        return Artifact(filename=f"{code}.pdf", content=buf.getvalue())
