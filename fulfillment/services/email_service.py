"""
Outbound customer messaging transports.

``EmailService`` sends order/delivery update emails over SMTP and
``SMSService`` posts text messages to a Semaphore-style gateway. Both report
failure by returning False; the notification dispatcher decides what to do
with that.
"""

import html
import logging
import re
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import httpx

from fulfillment.config import settings


logger = logging.getLogger(__name__)


STATUS_EMAIL_TEMPLATE = """
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #1f2937;">
    <h2>{headline}</h2>
    <p>Hi {customer_name},</p>
    <p>{body}</p>{button}
</body>
</html>
"""

BUTTON_TEMPLATE = """
    <p style="text-align: center; margin: 24px 0;">
        <a href="{url}" style="background: #f59e0b; color: #ffffff; padding: 12px 24px;
           border-radius: 6px; text-decoration: none;">{label}</a>
    </p>"""


class EmailService:
    """Transactional email over SMTP."""

    def __init__(
        self,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        from_email: str = "",
        from_name: str = "Construction Supply",
        use_tls: bool = True,
        timeout: int = 10,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.sender = f"{from_name} <{from_email or smtp_user}>"
        self.envelope_from = from_email or smtp_user
        self.use_tls = use_tls
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)

    def _compose(self, to_email: str, subject: str, html_body: str, text_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to_email
        # Plain part first; clients prefer the last alternative they can render
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message. Returns False (and logs) when SMTP is unconfigured or fails."""
        if not self.is_configured:
            logger.warning(f"SMTP not configured, skipping email '{subject}'")
            return False

        msg = self._compose(to_email, subject, html_body, text_body)
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.envelope_from, [to_email], msg.as_string())
        except smtplib.SMTPAuthenticationError:
            logger.error("SMTP authentication failed, check SMTP_USER/SMTP_PASSWORD")
            return False
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email '{subject}' to {to_email}: {e}")
            return False

        logger.info(f"Email '{subject}' sent to {to_email}")
        return True

    def send_status_email(
        self,
        to_email: str,
        customer_name: str,
        subject: str,
        headline: str,
        body: str,
        link_url: Optional[str] = None,
        link_label: Optional[str] = None,
    ) -> bool:
        """Order/delivery update with an optional call-to-action link."""
        label = link_label or "View order"
        button = BUTTON_TEMPLATE.format(url=html.escape(link_url), label=html.escape(label)) if link_url else ""
        html_body = STATUS_EMAIL_TEMPLATE.format(
            headline=html.escape(headline),
            customer_name=html.escape(customer_name),
            body=html.escape(body),
            button=button,
        )

        text_body = f"Hi {customer_name},\n\n{body}"
        if link_url:
            text_body += f"\n\n{label}: {link_url}"

        return self.send_email(to_email, subject, html_body, text_body)


class SMSService:
    """SMS over a Semaphore-style HTTP form API."""

    def __init__(
        self,
        api_url: str = "",
        api_key: str = "",
        sender_name: Optional[str] = None,
        timeout: int = 10,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.sender_name = sender_name
        self.timeout = timeout

    @staticmethod
    def format_phone_number(phone: str) -> str:
        """Normalize PH mobile numbers to 639XXXXXXXXX; unknown formats pass through as digits."""
        digits = re.sub(r"[^0-9]", "", phone or "")
        if len(digits) == 10 and digits.startswith("9"):
            return "63" + digits
        if len(digits) == 11 and digits.startswith("09"):
            return "63" + digits[1:]
        return digits

    async def send_sms(self, phone: Optional[str], message: str) -> bool:
        """Send one SMS. Returns True when the gateway accepted it; never raises."""
        if not self.api_key:
            logger.warning("SMS gateway not configured, skipping SMS")
            return False
        if not phone:
            logger.warning("No phone number for SMS, skipping")
            return False

        number = self.format_phone_number(phone)
        form = {"apikey": self.api_key, "number": number, "message": message}
        if self.sender_name:
            form["sendername"] = self.sender_name

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.api_url, data=form)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"SMS gateway returned {e.response.status_code}: {e.response.text}")
            return False
        except httpx.HTTPError as e:
            logger.error(f"Failed to reach SMS gateway: {e}")
            return False

        logger.info(f"SMS sent to ********{number[-4:]}")
        return True


def get_email_service() -> EmailService:
    return EmailService(
        smtp_host=settings.SMTP_HOST,
        smtp_port=settings.SMTP_PORT,
        smtp_user=settings.SMTP_USER,
        smtp_password=settings.SMTP_PASSWORD,
        from_email=settings.SMTP_FROM_EMAIL,
        from_name=settings.SMTP_FROM_NAME,
        use_tls=settings.SMTP_USE_TLS,
    )


def get_sms_service() -> SMSService:
    return SMSService(
        api_url=settings.SMS_API_URL,
        api_key=settings.SMS_API_KEY,
        sender_name=settings.SMS_SENDER_NAME,
        timeout=settings.SMS_TIMEOUT_SECONDS,
    )
