
# Final document assembly with pypdf + reportlab.
# Field geometry arrives as fractions of the page with a top-left origin
# (as placed in the browser); reportlab draws from the bottom-left.

from io import BytesIO
from reportlab.pdfgen import canvas
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader
from pypdf import PdfReader, PdfWriter
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs7

from .audit import AuditTrailDocument, signer_status_label
from .certificates import SigningIdentity
from .models import CHECKBOX_TRUE, FieldType
from .utils import b64png_to_bytes, iso_utc, sha256_bytes


def _to_points(v: dict, width: float, height: float):
    w = v["width"] * width
    h = v["height"] * height
    x = v["x"] * width
    y = height - (v["y"] * height) - h
    return x, y, w, h


def _overlay_page(width, height, draw_ops):
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height))
    for op in draw_ops:
        t = op.get("type")
        if t == "text":
            c.setFont(op.get("font", "Helvetica"), op.get("size", 10))
            c.drawString(op["x"], op["y"], op["text"])
        elif t == "checkbox":
            x, y, s = op["x"], op["y"], op["size"]
            c.rect(x, y, s, s, stroke=1, fill=0)
            if op.get("checked"):
                c.line(x, y, x + s, y + s); c.line(x, y + s, x + s, y)
        elif t == "image":
            c.drawImage(ImageReader(BytesIO(op["png"])), op["x"], op["y"], width=op["w"], height=op["h"], mask='auto')
    c.showPage()
    c.save()
    return buf.getvalue()


def _draw_ops(v: dict, width: float, height: float) -> list:
    value = v.get("value")
    if value is None or (isinstance(value, str) and not value.strip()):
        return []
    x, y, w, h = _to_points(v, width, height)
    field_type = FieldType(v["type"])
    if field_type == FieldType.CHECKBOX:
        size = max(6.0, min(w, h))
        return [{"type": "checkbox", "x": x, "y": y, "size": size, "checked": value == CHECKBOX_TRUE}]
    if field_type in (FieldType.SIGNATURE, FieldType.INITIALS):
        if value.startswith("data:image"):
            return [{"type": "image", "x": x, "y": y, "w": w, "h": h, "png": b64png_to_bytes(value)}]
        # typed signature
        size = max(8.0, min(h * 0.7, 28.0))
        return [{"type": "text", "x": x, "y": y + h * 0.2, "text": value, "font": "Helvetica-Oblique", "size": size}]
    size = max(6.0, min(h * 0.6, 12.0))
    return [{"type": "text", "x": x + 2, "y": y + h * 0.25, "text": str(value), "size": size}]


def _certificate_page(lines: list[str]) -> PdfReader:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    c.setFont("Helvetica-Bold", 14)
    c.drawString(72, 750, "Certificate of Completion")
    c.setFont("Helvetica", 9)
    y = 720
    for line in lines:
        c.drawString(72, y, line[:110])
        y -= 14
        if y < 72:
            c.showPage(); c.setFont("Helvetica", 9); y = 750
    c.showPage(); c.save()
    buf.seek(0)
    return PdfReader(buf)


def assemble_signed_document(original_pdf_bytes: bytes, field_values: list, identity: SigningIdentity):
    """Stamp every filled field and attach the signing identity.

    ``field_values`` holds one dict per field: type, page (0-based), x, y,
    width, height, value. Returns ``(final_bytes, sha256_hex)``.
    """
    reader = PdfReader(BytesIO(original_pdf_bytes))
    writer = PdfWriter()
    num_pages = len(reader.pages)
    for page in reader.pages:
        writer.add_page(page)

    draw_map = {}  # page_index -> [ops]
    for v in field_values:
        p = max(0, min(num_pages - 1, int(v.get("page", 0))))
        page = reader.pages[p]
        ops = _draw_ops(v, float(page.mediabox.width), float(page.mediabox.height))
        if ops:
            draw_map.setdefault(p, []).extend(ops)

    for pidx, ops in draw_map.items():
        page = reader.pages[pidx]
        overlay_pdf = _overlay_page(float(page.mediabox.width), float(page.mediabox.height), ops)
        writer.pages[pidx].merge_page(PdfReader(BytesIO(overlay_pdf)).pages[0])

    cert = identity.certificate
    writer.append_pages_from_reader(_certificate_page([
        f"Original SHA-256: {sha256_bytes(original_pdf_bytes)}",
        f"Signed by: {identity.subject}",
        f"Certificate serial: {cert.serial_number:x}",
        f"Certificate SHA-256 fingerprint: {identity.fingerprint}",
        f"Issuer: {cert.issuer.rfc4514_string()}",
    ]))
    writer.add_metadata({
        "/Producer": "SignDesk",
        "/SignDeskSigner": identity.subject,
        "/SignDeskCertificateSerial": f"{cert.serial_number:x}",
        "/SignDeskCertificateFingerprint": identity.fingerprint,
    })

    out = BytesIO()
    writer.write(out)
    final_bytes = out.getvalue()
    return final_bytes, sha256_bytes(final_bytes)


def detached_signature(data: bytes, identity: SigningIdentity) -> bytes:
    """DER PKCS#7 detached signature over ``data``, certificates included."""
    builder = (
        pkcs7.PKCS7SignatureBuilder()
        .set_data(data)
        .add_signer(identity.certificate, identity.private_key, hashes.SHA256())
    )
    for cert in identity.chain:
        builder = builder.add_certificate(cert)
    return builder.sign(serialization.Encoding.DER, [pkcs7.PKCS7Options.DetachedSignature])


def render_audit_trail(doc: AuditTrailDocument) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    y = 750

    def line(text, font="Helvetica", size=9, gap=13):
        nonlocal y
        if y < 72:
            c.showPage(); y = 750
        c.setFont(font, size)
        c.drawString(72, y, text[:115])
        y -= gap

    line("Audit Trail", "Helvetica-Bold", 16, 24)
    line(f"Document: {doc.document_name}")
    line(f"Certificate ID: {doc.certificate_id}")
    line(f"Created: {iso_utc(doc.created_at)}")
    line(f"Completed: {iso_utc(doc.completed_at) if doc.completed_at else 'In progress'}")
    line(f"Original SHA-256: {doc.document_hash}")
    if doc.final_document_hash:
        line(f"Final SHA-256: {doc.final_document_hash}")
    owner = doc.owner.name or doc.owner.email or "-"
    line(f"Owner: {owner} <{doc.owner.email or '-'}>", gap=20)

    line("Signers", "Helvetica-Bold", 12, 16)
    for s in doc.signers:
        signed = iso_utc(s.signed_at) if s.signed_at else "-"
        line(f"{s.name or s.email} <{s.email}>  {signer_status_label(s.status)}  {signed}  IP {s.ip_address or '-'}")
        if s.signature_hash:
            line(f"    proof {s.signature_hash}", size=7, gap=11)
    y -= 8

    line("Events", "Helvetica-Bold", 12, 16)
    for e in doc.events:
        who = e.actor.name or e.actor.email or "System"
        ip = f"  IP {e.ip_address}" if e.ip_address else ""
        line(f"{iso_utc(e.timestamp)}  {e.label}  {who}{ip}")
    y -= 8
    line(f"Ledger hash chain: {'intact' if doc.chain_valid else 'BROKEN'}", "Helvetica-Bold", 10)

    c.showPage(); c.save()
    return buf.getvalue()
