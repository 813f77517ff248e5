import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)


class EmailService:
    """Outbound mail over SMTP (STARTTLS)."""

    def __init__(
        self,
        smtp_host: str = "smtp.gmail.com",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        from_email: str = "",
        from_name: str = "Billing"
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    def send(self, to_address: str, subject: str, html_body: str) -> bool:
        """
        Send one HTML email.

        Returns True on success and False on any delivery failure; a mail
        outage must not fail the billing operation that triggered it.
        """
        if not self.smtp_user or not self.smtp_password:
            logger.warning("Email not configured. SMTP credentials missing.")
            return False

        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = subject
            msg['From'] = f"{self.from_name} <{self.from_email}>"
            msg['To'] = to_address
            msg.attach(MIMEText(html_body, 'html'))

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as server:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_address, msg.as_string())

            logger.info(f"Email sent successfully to {to_address}")
            return True

        except smtplib.SMTPAuthenticationError:
            logger.error("SMTP Authentication failed. Check email credentials.")
            return False
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error: {e}")
            return False
        except OSError as e:
            logger.error(f"Network error sending email: {e}")
            return False


def build_payment_link_email(invoice: Dict[str, Any], link: str, customer_name: Optional[str] = None) -> str:
    """HTML body for a payment-link email."""
    number = invoice.get("document_number", "")
    remaining = invoice.get("remaining_amount", invoice.get("grand_total", 0))
    due = invoice.get("due_date")
    due_line = f"<p>Due date: <strong>{due:%d %b %Y}</strong></p>" if due else ""

    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <style>
            body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
            .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
            .content {{ padding: 30px; background: #f9f9f9; }}
            .button {{ display: inline-block; padding: 12px 30px; background: #1a56db; color: white; text-decoration: none; border-radius: 5px; margin: 20px 0; }}
            .footer {{ padding: 20px; text-align: center; color: #666; font-size: 12px; }}
        </style>
    </head>
    <body>
        <div class="container">
            <div class="content">
                <h2>Invoice {number}</h2>
                <p>Hello {customer_name or 'Customer'},</p>
                <p>Amount due: <strong>&#8377;{remaining:,.2f}</strong></p>
                {due_line}
                <p style="text-align: center;">
                    <a href="{link}" class="button">Pay Now</a>
                </p>
                <p>Or copy and paste this link in your browser:</p>
                <p style="word-break: break-all; color: #1a56db;">{link}</p>
                <p>This link can be used once and expires automatically.</p>
            </div>
            <div class="footer">
                <p>This is an automated message. Please do not reply to this email.</p>
            </div>
        </div>
    </body>
    </html>
    """
