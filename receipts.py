"""
PDF payment receipts.
"""
from datetime import datetime, timezone
from io import BytesIO

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

BRAND = "QuickFix"
TAGLINE = "Professional Service Platform"
MARGIN = 50
LINE = 16


def _fmt_date(value) -> str:
    if not value:
        return "N/A"
    if isinstance(value, datetime):
        return value.strftime("%B %d, %Y %H:%M")
    return str(value)


class _Writer:
    def __init__(self, pdf: canvas.Canvas, top: float):
        self.pdf = pdf
        self.y = top

    def line(self, text: str, font: str = "Helvetica", size: int = 10, center: bool = False, gap: float = LINE):
        self.pdf.setFont(font, size)
        if center:
            self.pdf.drawCentredString(A4[0] / 2, self.y, text)
        else:
            self.pdf.drawString(MARGIN, self.y, text)
        self.y -= gap

    def heading(self, text: str, size: int = 14):
        self.y -= 6
        self.line(text, "Helvetica-Bold", size, gap=LINE + 4)

    def space(self, amount: float = LINE):
        self.y -= amount


def render_receipt(txn: dict, viewer: dict, other_party: dict, viewer_is_sender: bool) -> bytes:
    """Render ``txn`` as a one-page A4 receipt seen from ``viewer``'s side."""
    buf = BytesIO()
    pdf = canvas.Canvas(buf, pagesize=A4)
    pdf.setTitle(f"Receipt {txn['transaction_id']}")
    w = _Writer(pdf, A4[1] - MARGIN - 10)
    currency = txn.get("currency", "BDT")

    w.line(BRAND, "Helvetica-Bold", 24, center=True, gap=26)
    w.line(TAGLINE, "Helvetica", 14, center=True, gap=30)
    w.line("PAYMENT RECEIPT", "Helvetica-Bold", 20, center=True, gap=30)

    w.heading("Transaction Details")
    w.line(f"Transaction ID: {txn['transaction_id']}")
    w.line(f"Date: {_fmt_date(txn.get('created_at'))}")
    w.line(f"Status: {str(txn.get('status', '')).upper()}")
    w.line(f"Payment Method: {txn.get('payment_method') or 'QPay'}")

    amount = float(txn.get("amount", 0))
    base = float(txn.get("base_amount") or amount)
    discount = txn.get("discount_applied", 0) or 0
    w.heading("Payment Information")
    w.line(f"Amount: {currency} {amount:.2f}", "Helvetica-Bold", 16, gap=22)
    w.line(f"Currency: {currency}")
    w.line(f"Description: {txn.get('description', '')}")
    w.line("Payment Breakdown:", "Helvetica-Bold", 12)
    w.line(f"Base Amount: {currency} {base:.2f}")
    w.line(f"Discount Applied: -{discount}%")
    w.line(f"Discount Value: {currency} {base - amount:.2f}")
    w.line(f"Final Amount: {currency} {amount:.2f}")

    w.heading("Your Information")
    w.line(f"Name: {viewer.get('name', '')}")
    w.line(f"Email: {viewer.get('email', '')}")
    w.line(f"Phone: {viewer.get('phone') or 'N/A'}")

    w.heading("Service Provider" if viewer_is_sender else "Client")
    w.line(f"Name: {other_party.get('name', '')}")
    w.line(f"Email: {other_party.get('email', '')}")
    w.line(f"Phone: {other_party.get('phone') or 'N/A'}")

    details = txn.get("service_details") or {}
    if details.get("service_name"):
        w.heading("Service Details")
        w.line(f"Service: {details['service_name']}")
        w.line(f"Provider: {details.get('service_provider') or 'N/A'}")
        w.line(f"Service Date: {_fmt_date(details.get('service_date'))}")

    w.space()
    w.line(f"Total Amount: {currency} {amount:.2f}", "Helvetica-Bold", 12, center=True)
    w.line(f"Thank you for using {BRAND}!", "Helvetica-Bold", 12, center=True)
    w.line("This is an official receipt for your records.", center=True)
    w.line(f"Generated on: {datetime.now(timezone.utc):%Y-%m-%d %H:%M UTC}", center=True)

    pdf.showPage()
    pdf.save()
    return buf.getvalue()
