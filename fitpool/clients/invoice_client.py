"""Invoice PDF rendering (reportlab) and SMTP email delivery."""

from __future__ import annotations

import io
import smtplib
import ssl
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import parseaddr

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from fitpool.clients.base import EmailDeliveryError, InvoiceDocument
from fitpool.utils.logger import get_logger


logger = get_logger(__name__)


class ReportlabInvoiceRenderer:
    """Renders a one-page payment invoice."""

    def __init__(self, margin: float = 0.75 * inch) -> None:
        self.margin = margin
        self.brand_color = colors.HexColor("#1E88E5")
        self.dark_gray = colors.HexColor("#333333")

    def render(self, document: InvoiceDocument) -> bytes:
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=self.margin,
            leftMargin=self.margin,
            topMargin=self.margin,
            bottomMargin=self.margin,
            title=f"Invoice {document.invoice_number}",
        )
        styles = getSampleStyleSheet()
        title_style = ParagraphStyle(
            "InvoiceTitle",
            parent=styles["Heading1"],
            fontSize=22,
            textColor=self.brand_color,
            spaceAfter=12,
        )
        body_style = ParagraphStyle(
            "InvoiceBody",
            parent=styles["Normal"],
            fontSize=10,
            textColor=self.dark_gray,
            spaceAfter=4,
        )

        story = [
            Paragraph("INVOICE", title_style),
            Paragraph(f"<b>{document.company_name}</b>", body_style),
            Paragraph(document.company_address, body_style),
            Spacer(1, 0.3 * inch),
        ]

        info_table = Table(
            [
                ["Invoice #:", document.invoice_number],
                ["Date:", document.issued_on.strftime("%B %d, %Y")],
                ["Billed to:", document.customer_name],
                ["Mobile:", document.customer_mobile],
                ["Email:", document.customer_email or "N/A"],
            ],
            colWidths=[1.5 * inch, 4.5 * inch],
        )
        info_table.setStyle(
            TableStyle(
                [
                    ("FONT", (0, 0), (0, -1), "Helvetica-Bold", 10),
                    ("FONT", (1, 0), (1, -1), "Helvetica", 10),
                    ("TEXTCOLOR", (0, 0), (-1, -1), self.dark_gray),
                    ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
                ]
            )
        )
        story.append(info_table)
        story.append(Spacer(1, 0.3 * inch))

        schedule = document.event_date
        if document.event_time:
            schedule = f"{schedule} {document.event_time}"
        amount = f"{document.currency} {document.amount:,.2f}"
        line_items = Table(
            [
                ["Description", "Schedule", "Qty", "Amount"],
                [document.event_title, schedule, "1", amount],
                ["", "", "Total", amount],
            ],
            colWidths=[2.6 * inch, 1.9 * inch, 0.6 * inch, 1.2 * inch],
        )
        line_items.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), self.brand_color),
                    ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                    ("FONT", (0, 0), (-1, 0), "Helvetica-Bold", 10),
                    ("FONT", (0, 1), (-1, -1), "Helvetica", 10),
                    ("FONT", (2, -1), (-1, -1), "Helvetica-Bold", 10),
                    ("ALIGN", (2, 0), (-1, -1), "RIGHT"),
                    ("LINEBELOW", (0, 1), (-1, 1), 0.5, colors.grey),
                    ("BOTTOMPADDING", (0, 0), (-1, -1), 8),
                ]
            )
        )
        story.append(line_items)
        story.append(Spacer(1, 0.3 * inch))
        story.append(
            Paragraph(
                f"Payment ID: {document.payment_id} &nbsp;&nbsp; Order ID: {document.order_id}",
                body_style,
            )
        )
        story.append(Paragraph("Thank you for your payment.", body_style))

        doc.build(story)
        pdf_bytes = buffer.getvalue()
        buffer.close()
        return pdf_bytes


class SmtpEmailSender:
    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        from_address: str,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._from_address = from_address
        self._timeout = timeout_seconds

    def _build(
        self,
        to: str,
        subject: str,
        body: str,
        attachment: tuple[str, bytes] | None,
    ) -> MIMEMultipart:
        msg = MIMEMultipart("mixed")
        msg["Subject"] = subject
        msg["From"] = self._from_address
        msg["To"] = to
        msg.attach(MIMEText(body, "plain"))
        if attachment is not None:
            filename, content = attachment
            part = MIMEBase("application", "pdf")
            part.set_payload(content)
            encoders.encode_base64(part)
            part.add_header("Content-Disposition", f'attachment; filename="{filename}"')
            msg.attach(part)
        return msg

    def send(
        self,
        to: str,
        subject: str,
        body: str,
        attachment: tuple[str, bytes] | None = None,
    ) -> None:
        msg = self._build(to, subject, body, attachment)
        context = ssl.create_default_context()
        try:
            if self._port == 465:
                server = smtplib.SMTP_SSL(
                    self._host, self._port, context=context, timeout=self._timeout
                )
            else:
                server = smtplib.SMTP(self._host, self._port, timeout=self._timeout)
                if self._use_tls:
                    server.starttls(context=context)
            with server:
                if self._username and self._password:
                    server.login(self._username, self._password)
                server.sendmail(parseaddr(self._from_address)[1], [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            raise EmailDeliveryError(f"SMTP delivery to {to} failed: {exc}") from exc
        logger.info("Email sent | to=%s | subject=%s", to, subject)
