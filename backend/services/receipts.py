"""PDF receipts for completed payments, stored under a key derived from the payment id."""

import io
from pathlib import Path
from typing import Optional, Protocol

from loguru import logger
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import cm
from reportlab.pdfgen import canvas
from sqlalchemy.engine import Engine
from sqlmodel import Session

from backend.models import Order, Payment, PaymentStatus
from pricing.config.settings import RECEIPTS_DIR


class ReceiptStorage(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> None: ...

    def exists(self, key: str) -> bool: ...


class LocalReceiptStorage:
    def __init__(self, root: Path = RECEIPTS_DIR):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / key

    def put(self, key: str, data: bytes, content_type: str = "application/pdf") -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def read(self, key: str) -> bytes:
        return self._path(key).read_bytes()


def receipt_key(payment: Payment) -> str:
    return f"order-{payment.order_id}/payment-{payment.id}.pdf"


def render_receipt_pdf(payment: Payment, order: Optional[Order] = None) -> bytes:
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    w, h = A4
    y = h - 2 * cm
    c.setFont("Helvetica-Bold", 16)
    c.drawString(2 * cm, y, "AutoAssist+ payment receipt")
    y -= 1.2 * cm
    c.setFont("Helvetica", 12)
    lines = [
        f"Receipt no.: {payment.id}",
        f"Order: #{payment.order_id}" + (f" ({order.category})" if order else ""),
        f"Amount: {payment.amount:.2f} {payment.currency}",
        f"Purpose: {payment.purpose.value}",
        f"Provider: {payment.provider.value} / {payment.method.value}",
        f"Reference: {payment.provider_ref or '-'}",
        f"Paid at (UTC): {payment.completed_at.strftime('%Y-%m-%d %H:%M') if payment.completed_at else '-'}",
    ]
    if payment.tx_hash:
        lines.append(f"Tx: {payment.tx_hash}")
    for line in lines:
        c.drawString(2 * cm, y, line)
        y -= 0.8 * cm
    c.showPage()
    c.save()
    return buf.getvalue()


def generate_receipt(engine: Engine, storage: ReceiptStorage, payment_id: int) -> Optional[str]:
    """
    Render and store the receipt, then remember its key on the payment.
    Safe to run twice: the key is fixed per payment and an existing file is kept.
    """
    with Session(engine) as session:
        payment = session.get(Payment, payment_id)
        if payment is None:
            logger.warning(f"Receipt requested for unknown payment {payment_id}")
            return None
        if payment.status != PaymentStatus.COMPLETED:
            logger.warning(f"Payment {payment_id} is {payment.status.value}, no receipt")
            return None

        key = receipt_key(payment)
        if payment.receipt_ref == key and storage.exists(key):
            return key

        order = session.get(Order, payment.order_id)
        storage.put(key, render_receipt_pdf(payment, order), "application/pdf")
        payment.receipt_ref = key
        session.add(payment)
        session.commit()
        logger.info(f"Receipt stored for payment {payment_id}: {key}")
        return key
