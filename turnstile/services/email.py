import aiosmtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
import logging

from turnstile.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


def _button(path: str, label: str) -> str:
    url = settings.frontend_url.rstrip("/") + path
    return (
        f'<p><a href="{url}" style="background-color: #B45309; color: white; '
        f'padding: 12px 24px; text-decoration: none; border-radius: 6px;">{label}</a></p>'
    )


def _layout(title: str, body: str) -> str:
    return f"""
        <html>
        <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h1 style="color: #B45309;">{title}</h1>
            {body}
            <p>Best,<br>The Turnstile Team</p>
        </body>
        </html>
        """


class EmailService:
    @staticmethod
    async def send_email(to_email: str, subject: str, html_content: str) -> bool:
        """Send an email using SMTP."""
        if not settings.smtp_user or not settings.smtp_password:
            logger.warning("SMTP not configured, skipping email send")
            return False

        message = MIMEMultipart("alternative")
        message["From"] = settings.smtp_user
        message["To"] = to_email
        message["Subject"] = subject

        html_part = MIMEText(html_content, "html")
        message.attach(html_part)

        try:
            await aiosmtplib.send(
                message,
                hostname=settings.smtp_host,
                port=settings.smtp_port,
                username=settings.smtp_user,
                password=settings.smtp_password,
                start_tls=True
            )
            return True
        except Exception as e:
            logger.error(f"Failed to send email: {e}")
            return False

    @staticmethod
    async def send_ticket_purchased(
        to_email: str,
        name: str,
        event_name: str,
        ticket_codes: list[str],
        total_amount: float
    ) -> bool:
        """Send purchase confirmation with every ticket code."""
        rows = "".join(
            f'<li style="font-family: monospace; margin: 4px 0;">{code}</li>'
            for code in ticket_codes
        )
        link = _button("/tickets/mine", "View My Tickets")
        body = f"""
            <p>Hi {name},</p>
            <p>Your booking for <strong>{event_name}</strong> is confirmed.</p>
            <div style="background-color: #F3F4F6; padding: 20px; border-radius: 8px; margin: 20px 0;">
                <p style="margin: 5px 0;"><strong>Tickets:</strong> {len(ticket_codes)}</p>
                <p style="margin: 5px 0;"><strong>Total:</strong> &#8377;{total_amount:.2f}</p>
                <ul>{rows}</ul>
            </div>
            <p>Show the QR code for each ticket at the gate. Every code admits one person once.</p>
            {link}
        """
        return await EmailService.send_email(
            to_email, f"Your tickets for {event_name}", _layout("Booking Confirmed!", body)
        )

    @staticmethod
    async def send_refund_initiated(
        to_email: str,
        name: str,
        refund_reference: str,
        refund_amount: float
    ) -> bool:
        link = _button(f"/refunds/{refund_reference}", "View Refund")
        body = f"""
            <p>Hi {name},</p>
            <p>We have cancelled your ticket and asked the bank to refund
               <strong>&#8377;{refund_amount:.2f}</strong>.</p>
            <p>Refund reference: <code>{refund_reference}</code></p>
            <p>Refunds usually reach your account within 5-7 working days.</p>
            {link}
        """
        return await EmailService.send_email(
            to_email, f"Refund initiated ({refund_reference})", _layout("Refund Initiated", body)
        )

    @staticmethod
    async def send_refund_completed(
        to_email: str,
        name: str,
        refund_reference: str,
        refund_amount: float
    ) -> bool:
        link = _button(f"/refunds/{refund_reference}", "View Refund")
        body = f"""
            <p>Hi {name},</p>
            <p>Your refund of <strong>&#8377;{refund_amount:.2f}</strong> has been processed.</p>
            <p>Refund reference: <code>{refund_reference}</code></p>
            {link}
        """
        return await EmailService.send_email(
            to_email, f"Refund processed ({refund_reference})", _layout("Refund Completed", body)
        )

    @staticmethod
    async def send_refund_failed(
        to_email: str,
        name: str,
        refund_reference: str,
        failure_reason: str
    ) -> bool:
        link = _button(f"/refunds/{refund_reference}", "View Refund")
        body = f"""
            <p>Hi {name},</p>
            <p>Unfortunately your refund could not be completed.</p>
            <p><strong>Reason:</strong> {failure_reason}</p>
            <p>Refund reference: <code>{refund_reference}</code>. Please contact us and quote it.</p>
            {link}
        """
        return await EmailService.send_email(
            to_email, f"Refund failed ({refund_reference})", _layout("Refund Failed", body)
        )
