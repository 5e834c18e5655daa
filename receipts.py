from decimal import Decimal
from io import BytesIO
from typing import Optional

from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

import models

MARGIN = 50
LINE = 16
COLUMNS = {"item": 50, "qty": 300, "price": 360, "total": 450}


def _money(value) -> str:
    return f"{Decimal(value):.2f}"


class _Writer:
    """위에서 아래로 한 줄씩 내려가며 쓰는 단순 커서. 페이지가 차면 다음 장으로 넘긴다."""

    def __init__(self, pdf: canvas.Canvas):
        self.pdf = pdf
        self.width, self.height = letter
        self.y = self.height - MARGIN

    def ensure_room(self, lines: int = 1) -> None:
        if self.y - lines * LINE < MARGIN:
            self.pdf.showPage()
            self.y = self.height - MARGIN

    def text(self, value: str, size: int = 11, bold: bool = False, center: bool = False, x: float = MARGIN) -> None:
        self.ensure_room()
        self.pdf.setFont("Helvetica-Bold" if bold else "Helvetica", size)
        if center:
            self.pdf.drawCentredString(self.width / 2, self.y, value)
        else:
            self.pdf.drawString(x, self.y, value)
        self.y -= size + 6

    def row(self, cells: dict, size: int = 10, bold: bool = False) -> None:
        self.ensure_room()
        self.pdf.setFont("Helvetica-Bold" if bold else "Helvetica", size)
        for key, value in cells.items():
            self.pdf.drawString(COLUMNS[key], self.y, value)
        self.y -= LINE

    def rule(self) -> None:
        self.pdf.line(MARGIN, self.y + LINE / 2, self.width - MARGIN, self.y + LINE / 2)

    def gap(self, lines: float = 1) -> None:
        self.y -= LINE * lines


def render_receipt(order: models.Order, address: Optional[models.Address], store_name: str = "") -> bytes:
    """주문 영수증 PDF 바이트를 만든다. 상태 없음."""
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=letter)
    pdf.setTitle(f"Receipt #{order.id}")
    w = _Writer(pdf)

    w.text("RECEIPT", size=24, bold=True, center=True)
    w.gap(0.5)
    if store_name:
        w.text(store_name, size=12, center=True)
    w.text("E-commerce Store", size=12, center=True)
    w.gap()

    created = order.created_at.strftime("%Y-%m-%d") if order.created_at else "-"
    w.text(f"Order ID: #{order.id}")
    w.text(f"Date: {created}")
    w.text(f"Status: {order.status}")
    w.text(f"Payment Method: {order.payment_method or 'N/A'}")
    w.gap()

    w.text("Customer Details", size=14, bold=True)
    w.text(f"Email: {order.user.email}")
    if address:
        w.text(f"Name: {address.first_name} {address.last_name}")
        w.text(f"Phone: {address.phone}")
    w.gap()

    if address:
        w.text("Shipping Address", size=14, bold=True)
        w.text(address.address)
        city_line = f"{address.city or ''} {address.postal_code or ''}".strip()
        if city_line:
            w.text(city_line)
        if address.country:
            w.text(address.country)
        w.gap()

    w.text("Order Items", size=14, bold=True)
    w.row({"item": "Item", "qty": "Qty", "price": "Price", "total": "Total"}, bold=True)
    w.rule()
    for item in order.items:
        name = item.variant.product.name
        if item.variant.sku:
            name = f"{name} (SKU: {item.variant.sku})"
        w.row(
            {
                "item": name[:45],
                "qty": str(item.quantity),
                "price": _money(item.price),
                "total": _money(Decimal(item.price) * item.quantity),
            }
        )
    w.rule()
    w.row({"price": "Total:", "total": _money(order.total)}, size=12, bold=True)

    w.gap(2)
    w.text("Thank you for your purchase!", size=10, center=True)

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
