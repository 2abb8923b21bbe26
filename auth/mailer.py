"""
auth/mailer.py -- SMTP transport for transactional email.

Supports STARTTLS (port 587) and implicit TLS (port 465). Every connection
uses a bounded timeout so a slow mail server cannot hold a request thread
indefinitely.

When SMTP_HOST is empty the mailer runs in dev mode: messages are logged
(with the recipient redacted) instead of sent, which keeps local setups and
tests free of a mail server.

Any transport failure is raised as MailDeliveryError. Whether that failure
matters is the caller's decision; the auth workflow treats every outbound
notification as best-effort.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from html import escape

from auth.errors import MailDeliveryError

logger = logging.getLogger("authx.auth.mailer")


def redact_email(email: str) -> str:
    """Mask an address for logging: alice@example.com -> al***@example.com."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Mailer:
    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        use_tls: bool = True,
        timeout_seconds: int = 10,
        from_address: str = "AuthX <noreply@authx.local>",
        base_url: str = "http://localhost:8000",
        app_name: str = "AuthX",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.use_tls = use_tls
        self.timeout_seconds = timeout_seconds
        self.from_address = from_address
        self.base_url = base_url.rstrip("/")
        self.app_name = app_name

    @classmethod
    def from_settings(cls, settings) -> Mailer:
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            timeout_seconds=settings.smtp_timeout_seconds,
            from_address=settings.mail_from,
            base_url=settings.base_url,
            app_name=settings.app_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def send(self, to: str, subject: str, text_body: str, html_body: str) -> None:
        """Deliver one message. Raises MailDeliveryError on any transport failure."""
        if not self.is_configured:
            logger.info("Mail (dev mode, not sent) to=%s subject=%r\n%s", redact_email(to), subject, text_body)
            return

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")

        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout_seconds
                ) as server:
                    self._login(server)
                    server.send_message(msg)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            # OSError covers refused connections and socket timeouts
            logger.error(
                "Mail delivery failed to=%s host=%s:%s error=%s: %s",
                redact_email(to),
                self.smtp_host,
                self.smtp_port,
                type(exc).__name__,
                exc,
            )
            raise MailDeliveryError(str(exc)) from exc

        logger.info("Mail sent to=%s subject=%r", redact_email(to), subject)

    def _login(self, server: smtplib.SMTP) -> None:
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def send_email_verification(self, to: str, token: str, first_name: str) -> None:
        url = f"{self.base_url}/verify-email?token={token}"
        self.send(
            to,
            f"Verify your email - {self.app_name}",
            f"Hi {first_name},\n\n"
            f"Confirm your email address by opening the link below:\n\n{url}\n\n"
            "The link expires in 24 hours. If you did not create an account, ignore this message.\n",
            _html(
                f"Hi {escape(first_name)},",
                "Confirm your email address by clicking the button below.",
                url,
                "Verify email",
                "The link expires in 24 hours. If you did not create an account, ignore this message.",
            ),
        )

    def send_password_reset(self, to: str, token: str, first_name: str) -> None:
        url = f"{self.base_url}/reset-password?token={token}"
        self.send(
            to,
            f"Reset your password - {self.app_name}",
            f"Hi {first_name},\n\n"
            f"A password reset was requested for your account. Open the link below to choose a new password:\n\n"
            f"{url}\n\n"
            "The link expires in 10 minutes. If you did not request a reset, ignore this message.\n",
            _html(
                f"Hi {escape(first_name)},",
                "A password reset was requested for your account.",
                url,
                "Reset password",
                "The link expires in 10 minutes. If you did not request a reset, ignore this message.",
            ),
        )

    def send_welcome(self, to: str, first_name: str) -> None:
        self.send(
            to,
            f"Welcome to {self.app_name}",
            f"Hi {first_name},\n\nYour email address is verified. Welcome aboard!\n",
            _html(
                f"Hi {escape(first_name)},",
                "Your email address is verified. Welcome aboard!",
                self.base_url,
                f"Open {escape(self.app_name)}",
                "",
            ),
        )


def _html(greeting: str, lead: str, url: str, button: str, footer: str) -> str:
    href = escape(url, quote=True)
    return (
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif; color: #333;\">"
        f"<p>{greeting}</p><p>{lead}</p>"
        f"<p><a href=\"{href}\" style=\"background: #667eea; color: #fff; padding: 12px 30px; "
        f"text-decoration: none; border-radius: 5px;\">{button}</a></p>"
        f"<p style=\"color: #666; font-size: 14px;\">{footer}</p>"
        "</body></html>"
    )
