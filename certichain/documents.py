from io import BytesIO

import qrcode
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas


def qr_png(url: str) -> BytesIO:
    img = qrcode.make(url)
    buf = BytesIO()
    img.save(buf)
    buf.seek(0)
    return buf


def certificate_pdf(certificate, anchor, verification_url: str) -> BytesIO:
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)

    pdf.setFont("Helvetica-Bold", 22)
    pdf.drawCentredString(300, 800, "Certificate of Completion")

    pdf.setFont("Helvetica", 14)
    lines = [
        f"Certificate ID: {certificate.unique_id}",
        f"Student: {certificate.student_name}",
        f"Course: {certificate.course_name}",
        f"Institution: {certificate.institution_name}",
        f"Issue Date: {certificate.issue_date}",
    ]
    if certificate.expiry_date:
        lines.append(f"Expiry Date: {certificate.expiry_date}")
    if certificate.grade:
        lines.append(f"Grade: {certificate.grade}")
    lines.append(f"Status: {certificate.status.upper()}")

    y = 750
    for line in lines:
        pdf.drawString(80, y, line)
        y -= 30

    pdf.setFont("Helvetica", 9)
    if anchor is not None:
        pdf.drawString(80, y - 10, f"Block #{anchor.block_number}  Hash: {anchor.hash}")
    else:
        pdf.drawString(80, y - 10, "Not anchored")
    pdf.drawString(80, y - 25, f"Verify at: {verification_url}")

    pdf.drawImage(ImageReader(qr_png(verification_url)), 400, y - 180, width=130, height=130)

    pdf.showPage()
    pdf.save()

    buffer.seek(0)
    return buffer
