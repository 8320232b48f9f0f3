"""
Email gateway: renders an RFP as an HTML invitation and sends it over SMTP.

Configured from SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD and FROM_EMAIL.
One call sends to one recipient; failures are raised as NotificationError so
the caller can decide how to report them.
"""
import html
import logging
import os
import smtplib
import socket
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Optional

from app.errors import NotificationError

logger = logging.getLogger(__name__)

_SMTP_TIMEOUT_SEC = 30


class EmailService:
    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        from_email: Optional[str] = None,
    ):
        self.host = host if host is not None else os.getenv("SMTP_HOST", "").strip()
        self.port = port if port is not None else int(os.getenv("SMTP_PORT", "587"))
        self.user = user if user is not None else os.getenv("SMTP_USER", "").strip()
        self.password = password if password is not None else os.getenv("SMTP_PASSWORD", "")
        self.from_email = from_email or os.getenv("FROM_EMAIL", "").strip() or self.user

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    def _connect(self) -> smtplib.SMTP:
        if not self.configured:
            raise NotificationError(
                "Email not configured. Please set SMTP_HOST, SMTP_USER, and SMTP_PASSWORD"
            )
        if self.port == 465:
            smtp = smtplib.SMTP_SSL(self.host, self.port, timeout=_SMTP_TIMEOUT_SEC)
        else:
            smtp = smtplib.SMTP(self.host, self.port, timeout=_SMTP_TIMEOUT_SEC)
            smtp.starttls()
        smtp.login(self.user, self.password)
        return smtp

    def send(self, to_address: str, subject: str, html_body: str) -> dict[str, Any]:
        """Send one HTML email. Returns {"success": True, "messageId": ...}."""
        msg = EmailMessage()
        msg["From"] = self.from_email
        msg["To"] = to_address
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        msg.set_content("This message requires an HTML capable email client.")
        msg.add_alternative(html_body, subtype="html")
        try:
            with self._connect() as smtp:
                smtp.send_message(msg)
        except NotificationError:
            raise
        except smtplib.SMTPAuthenticationError as e:
            raise NotificationError("Email authentication failed. Check SMTP_USER and SMTP_PASSWORD") from e
        except (smtplib.SMTPConnectError, socket.gaierror, ConnectionError, TimeoutError) as e:
            raise NotificationError(
                f"Cannot connect to SMTP server ({self.host}:{self.port}). Check SMTP_HOST and SMTP_PORT"
            ) from e
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Failed to send email: {e}") from e
        logger.info("Email sent to %s, subject=%r, message_id=%s", to_address, subject, msg["Message-ID"])
        return {"success": True, "messageId": msg["Message-ID"]}

    def verify_connection(self) -> bool:
        """Open, authenticate and close an SMTP session."""
        try:
            with self._connect() as smtp:
                smtp.noop()
        except (NotificationError, smtplib.SMTPException, OSError) as e:
            logger.warning("Email server connection error: %s", e)
            return False
        logger.info("Email server is ready to send messages")
        return True


def rfp_email_subject(rfp: dict[str, Any]) -> str:
    return f"RFP: {rfp['title']}"


def render_rfp_email(vendor_name: str, rfp: dict[str, Any]) -> str:
    """HTML invitation for one vendor. rfp is the serialized RFP (camelCase keys)."""
    e = html.escape
    rows = "".join(
        "<tr><td>{}</td><td>{}</td><td>{}</td></tr>".format(
            e(str(item.get("name", ""))),
            e(str(item.get("quantity", ""))),
            e(", ".join(f"{k}: {v}" for k, v in (item.get("specifications") or {}).items())),
        )
        for item in rfp.get("items") or []
    )
    budget = rfp.get("budget") or {}
    timeline = rfp.get("timeline") or {}
    terms = rfp.get("terms") or {}
    amount = budget.get("amount") or 0
    requirements = rfp.get("requirements") or []
    req_html = ""
    if requirements:
        req_html = "<p><strong>Additional Requirements:</strong></p><ul>{}</ul>".format(
            "".join(f"<li>{e(str(r))}</li>" for r in requirements)
        )
    return f"""<!DOCTYPE html>
<html>
<head>
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
    .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background-color: #4F46E5; color: white; padding: 20px; border-radius: 5px; }}
    .content {{ padding: 20px; background-color: #f9f9f9; border-radius: 5px; margin-top: 20px; }}
    .item {{ background-color: white; padding: 15px; margin: 10px 0; border-radius: 5px; }}
    .footer {{ margin-top: 20px; font-size: 12px; color: #666; }}
    table {{ width: 100%; border-collapse: collapse; margin: 10px 0; }}
    th, td {{ padding: 10px; text-align: left; border-bottom: 1px solid #ddd; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="header">
      <h1>Request for Proposal</h1>
      <p>{e(str(rfp.get("title", "")))}</p>
    </div>
    <div class="content">
      <h2>Dear {e(vendor_name)},</h2>
      <p>We are inviting you to submit a proposal for the following requirement:</p>
      <div class="item">
        <h3>Items Required:</h3>
        <table>
          <thead><tr><th>Item</th><th>Quantity</th><th>Specifications</th></tr></thead>
          <tbody>{rows}</tbody>
        </table>
      </div>
      <div class="item">
        <h3>Budget:</h3>
        <p><strong>{e(str(budget.get("currency", "USD")))} {amount:,.2f}</strong></p>
      </div>
      <div class="item">
        <h3>Timeline:</h3>
        <p><strong>Response Deadline:</strong> {e(str(timeline.get("responseDeadline", "TBD")))}</p>
        <p><strong>Delivery Deadline:</strong> {e(str(timeline.get("deliveryDeadline", "")))}</p>
      </div>
      <div class="item">
        <h3>Terms &amp; Requirements:</h3>
        <p><strong>Payment Terms:</strong> {e(str(terms.get("paymentTerms", "")))}</p>
        <p><strong>Warranty:</strong> {e(str(terms.get("warranty", "")))}</p>
        {req_html}
      </div>
      <p>Please submit your proposal by replying to this email with your best offer including:</p>
      <ul>
        <li>Item-wise pricing</li>
        <li>Total cost</li>
        <li>Delivery timeline</li>
        <li>Payment terms</li>
        <li>Warranty details</li>
        <li>Any other relevant information</li>
      </ul>
    </div>
    <div class="footer">
      <p>This is an automated email from the RFP Management System.</p>
      <p>Please reply to this email with your proposal.</p>
    </div>
  </div>
</body>
</html>"""
