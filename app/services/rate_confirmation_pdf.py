import base64
import io
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

from PyPDF2 import PdfReader, PdfWriter
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from app.utils.dates import to_date


MARGIN = 48
LINE_HEIGHT = 14


def format_date(value) -> str:
    parsed = to_date(value) if value else None
    if not parsed:
        return "TBD"
    return parsed.strftime("%m/%d/%Y")


def format_time(value: str | None) -> str:
    """Converts "14:30" to "2:30 PM"."""
    if not value:
        return "TBD"
    try:
        hours_text, minutes_text = str(value).strip().split(":")[:2]
        hours = int(hours_text)
        minutes = int(minutes_text)
    except (TypeError, ValueError):
        return "TBD"
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        return "TBD"
    suffix = "PM" if hours >= 12 else "AM"
    display_hour = hours % 12 or 12
    return f"{display_hour}:{minutes:02d} {suffix}"


def format_currency(value) -> str:
    if value is None or value == "":
        return "$0.00"
    try:
        amount = Decimal(str(value).replace("$", "").replace(",", "").strip())
    except (InvalidOperation, ValueError):
        return "$0.00"
    return f"${amount:,.2f}"


def decode_signature_data(signature_data: str | None) -> bytes | None:
    """data:image/png;base64,... -> PNG bytes. None when absent, ValueError when malformed."""
    if not signature_data:
        return None
    if "," not in signature_data:
        raise ValueError("invalid_signature_payload")
    header, payload = signature_data.split(",", 1)
    if "base64" not in header:
        raise ValueError("invalid_signature_payload")
    try:
        return base64.b64decode(payload, validate=True)
    except Exception as exc:
        raise ValueError("invalid_signature_payload") from exc


class _Writer:
    def __init__(self, pdf: canvas.Canvas, height: float):
        self.pdf = pdf
        self.y = height - MARGIN

    def heading(self, label: str) -> None:
        self.y -= 8
        self.pdf.setFont("Helvetica-Bold", 11)
        self.pdf.drawString(MARGIN, self.y, label)
        self.y -= LINE_HEIGHT + 2

    def line(self, label: str, value) -> None:
        self.pdf.setFont("Helvetica-Bold", 9)
        self.pdf.drawString(MARGIN, self.y, f"{label}:")
        self.pdf.setFont("Helvetica", 9)
        self.pdf.drawString(MARGIN + 130, self.y, str(value if value not in (None, "") else "-"))
        self.y -= LINE_HEIGHT

    def paragraph(self, text_value: str, width_chars: int = 100) -> None:
        self.pdf.setFont("Helvetica", 9)
        words = (text_value or "").split()
        current = ""
        for word in words:
            if len(current) + len(word) + 1 > width_chars:
                self.pdf.drawString(MARGIN, self.y, current)
                self.y -= LINE_HEIGHT
                current = word
            else:
                current = f"{current} {word}".strip()
        if current:
            self.pdf.drawString(MARGIN, self.y, current)
            self.y -= LINE_HEIGHT


def render_rate_confirmation_pdf(
    *,
    rate_con_number: str,
    organization: dict,
    carrier: dict,
    load: dict,
    version: int = 1,
    generated_at: datetime | None = None,
) -> bytes:
    generated_at = generated_at or datetime.now(timezone.utc)
    output = io.BytesIO()
    width, height = letter
    pdf = canvas.Canvas(output, pagesize=letter)
    pdf.setTitle(f"Rate Confirmation {rate_con_number}")

    pdf.setFont("Helvetica-Bold", 16)
    pdf.drawString(MARGIN, height - MARGIN, "RATE CONFIRMATION")
    pdf.setFont("Helvetica", 9)
    pdf.drawRightString(width - MARGIN, height - MARGIN, f"{rate_con_number}  (v{version})")
    pdf.drawRightString(width - MARGIN, height - MARGIN - 12, f"Issued {format_date(generated_at.date())}")

    writer = _Writer(pdf, height - 24)

    writer.heading("Broker")
    writer.line("Company", organization.get("name"))
    writer.line("MC / DOT", f"{organization.get('mc_number') or '-'} / {organization.get('dot_number') or '-'}")
    writer.line("Address", organization.get("address"))
    writer.line("Phone", organization.get("phone"))
    writer.line("Email", organization.get("email"))

    writer.heading("Carrier")
    writer.line("Company", carrier.get("carrier_name"))
    writer.line("MC / DOT", f"{carrier.get('mc_number') or '-'} / {carrier.get('dot_number') or '-'}")
    writer.line("Contact", carrier.get("primary_contact"))
    writer.line("Dispatch phone", carrier.get("dispatch_phone"))
    writer.line("Dispatch email", carrier.get("dispatch_email"))

    writer.heading("Load")
    writer.line("Load number", load.get("load_number") or load.get("id"))
    writer.line("Origin", f"{load.get('origin_city') or ''}, {load.get('origin_state') or ''}".strip(", "))
    writer.line("Pickup", f"{format_date(load.get('pickup_date'))} {format_time(load.get('pickup_time'))}")
    writer.line(
        "Destination",
        f"{load.get('destination_city') or ''}, {load.get('destination_state') or ''}".strip(", "),
    )
    writer.line("Delivery", f"{format_date(load.get('delivery_date'))} {format_time(load.get('delivery_time'))}")
    writer.line("Commodity", load.get("commodity"))
    writer.line("Weight", f"{int(load['weight_lbs']):,} lbs" if load.get("weight_lbs") else None)
    writer.line("Equipment", (load.get("equipment_type") or "").replace("_", " ").title() or None)

    writer.heading("Rate")
    writer.line("Total carrier pay", format_currency(load.get("rate_to_carrier")))

    if load.get("special_instructions"):
        writer.heading("Special instructions")
        writer.paragraph(load["special_instructions"])

    writer.heading("Terms")
    writer.paragraph(
        "Carrier agrees to transport the above shipment at the stated rate. The rate includes all "
        "charges unless otherwise agreed in writing. Carrier must not broker or re-assign this load. "
        "Payment is issued upon receipt of signed rate confirmation and proof of delivery."
    )

    pdf.setFont("Helvetica", 9)
    pdf.drawString(MARGIN, 120, "Broker signature: ______________________")
    pdf.drawString(width / 2, 120, "Carrier signature: ______________________")
    pdf.showPage()
    pdf.save()
    return output.getvalue()


def stamp_signatures(
    pdf_bytes: bytes,
    *,
    broker_name: str | None,
    carrier_name: str | None,
    broker_signed_at=None,
    carrier_signed_at=None,
    carrier_signature_png: bytes | None = None,
) -> bytes:
    """Overlays the signer names (and carrier signature image) on the last page."""
    reader = PdfReader(io.BytesIO(pdf_bytes))
    if not reader.pages:
        raise ValueError("invalid_pdf_document")

    writer = PdfWriter()
    for page in reader.pages[:-1]:
        writer.add_page(page)

    last_page = reader.pages[-1]
    page_width = float(last_page.mediabox.width)
    page_height = float(last_page.mediabox.height)

    overlay_stream = io.BytesIO()
    overlay = canvas.Canvas(overlay_stream, pagesize=(page_width, page_height))
    overlay.setFont("Helvetica-Oblique", 10)
    if broker_name:
        overlay.drawString(MARGIN + 80, 124, broker_name)
        overlay.setFont("Helvetica", 7)
        overlay.drawString(MARGIN, 108, f"Signed {format_date(broker_signed_at)}")
        overlay.setFont("Helvetica-Oblique", 10)
    if carrier_signature_png:
        overlay.drawImage(
            ImageReader(io.BytesIO(carrier_signature_png)),
            page_width / 2 + 85,
            118,
            width=min(160, page_width * 0.25),
            height=40,
            mask="auto",
            preserveAspectRatio=True,
            anchor="sw",
        )
    elif carrier_name:
        overlay.drawString(page_width / 2 + 85, 124, carrier_name)
    if carrier_name:
        overlay.setFont("Helvetica", 7)
        overlay.drawString(page_width / 2, 108, f"Signed by {carrier_name} {format_date(carrier_signed_at)}")

    overlay.setFont("Helvetica", 8)
    overlay.drawString(MARGIN, 24, f"Electronically signed - {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%SZ')}")
    overlay.save()

    overlay_stream.seek(0)
    last_page.merge_page(PdfReader(overlay_stream).pages[0])
    writer.add_page(last_page)

    output = io.BytesIO()
    writer.write(output)
    return output.getvalue()


def today_stamp(day: date) -> str:
    return day.strftime("%Y%m%d")
