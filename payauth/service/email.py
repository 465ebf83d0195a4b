from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional
from urllib.parse import quote

from payauth.logging import get_logger, hash_email

logger = get_logger(__name__)

RESET_PASSWORD_SUBJECT = "أعادة تعيين كلمة السر"
SMTP_TIMEOUT_SECONDS = 30


class EmailService:
    """Delivers password-reset links over SMTP.

    Without an SMTP host and sender address the reset is only logged, which
    is how local development and the test suite run.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "PayAuth",
        frontend_url: str = "http://localhost:3000",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            frontend_url=settings.frontend_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def reset_link(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password?token={quote(token, safe='')}"

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if not self.smtp_use_tls:
            return smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
        try:
            server.starttls(context=context)
        except (smtplib.SMTPException, OSError):
            server.close()
            raise
        return server

    def _deliver(self, message: EmailMessage) -> bool:
        recipient_hash = hash_email(message["To"])
        if not self.is_configured:
            logger.info("reset_email_logged_only", recipient_hash=recipient_hash)
            return True

        try:
            with self._connect() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)
        except smtplib.SMTPException as exc:
            # Covers rejected credentials and refused recipients alike.
            logger.error(
                "reset_email_rejected",
                recipient_hash=recipient_hash,
                smtp_host=self.smtp_host,
                error_type=type(exc).__name__,
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return False
        except OSError as exc:
            logger.error(
                "reset_email_unreachable",
                recipient_hash=recipient_hash,
                smtp_host=self.smtp_host,
                smtp_port=self.smtp_port,
                error_type=type(exc).__name__,
            )
            return False

        logger.info("reset_email_sent", recipient_hash=recipient_hash)
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        """Mail the reset link; False when the SMTP relay could not take it."""
        reset_url = self.reset_link(token)

        message = EmailMessage()
        message["Subject"] = RESET_PASSWORD_SUBJECT
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email

        html_body = f"""
<!DOCTYPE html>
<html lang="ar" dir="rtl">
<head>
    <meta charset="utf-8">
</head>
<body>
    <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
        <h2 style="color: #4CAF50;">إعادة تعيين كلمة السر</h2>
        <p>لقد طلبت إعادة تعيين كلمة السر الخاصة بك. الرجاء استخدام الرابط التالي لإعادة تعيين كلمة السر الخاصة بك:</p>
        <a href="{reset_url}" style="display: inline-block; padding: 10px 20px; margin: 10px 0; font-size: 16px; color: #fff; background-color: #4CAF50; text-decoration: none; border-radius: 5px;">إعادة تعيين كلمة السر</a>
        <p>إذا لم تطلب إعادة تعيين كلمة السر، يرجى تجاهل هذا البريد الإلكتروني.</p>
    </div>
</body>
</html>
"""

        text_body = f"""إعادة تعيين كلمة السر

لقد طلبت إعادة تعيين كلمة السر الخاصة بك. استخدم الرابط التالي:

{reset_url}

إذا لم تطلب إعادة تعيين كلمة السر، يرجى تجاهل هذا البريد الإلكتروني.
"""
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")
        return self._deliver(message)
