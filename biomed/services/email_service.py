import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from biomed.config import Settings, get_settings
from biomed.exceptions import DispatchFailure

logger = logging.getLogger(__name__)


class EmailService:
    """SMTP sender. Disabled (returns False) until SMTP is configured."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    @property
    def enabled(self) -> bool:
        return self.settings.email_configured

    async def send(self, to: str, subject: str, body: str, html: str | None = None) -> bool:
        if not self.enabled:
            logger.warning(f"Email service not configured, not sent: {subject}")
            return False
        try:
            await asyncio.to_thread(self._send_sync, to, subject, body, html)
        except (smtplib.SMTPException, OSError) as e:
            raise DispatchFailure(f"SMTP delivery to {to} failed: {e}") from e
        logger.info(f"Email sent to {to}: {subject}")
        return True

    def _send_sync(self, to: str, subject: str, body: str, html: str | None):
        cfg = self.settings
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = cfg.smtp_from
        msg["To"] = to
        msg.attach(MIMEText(body, "plain"))
        if html:
            msg.attach(MIMEText(html, "html"))

        with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=30) as server:
            if cfg.smtp_use_tls:
                server.starttls()
            if cfg.smtp_user:
                server.login(cfg.smtp_user, cfg.smtp_password)
            server.sendmail(cfg.smtp_from, [to], msg.as_string())
