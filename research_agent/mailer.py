import asyncio
import html
import logging
import re
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Any, Dict, Optional, Tuple

from .config import SMTPConfig

logger = logging.getLogger("uvicorn.error")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_SUBJECT_CHARS = 200
MAX_BODY_CHARS = 50000


def validate_email_payload(to: str, subject: str, body: str) -> Tuple[bool, Optional[str]]:
    if not EMAIL_RE.match(to or ""):
        return False, "Invalid email address"
    if not subject or not subject.strip():
        return False, "Email subject cannot be empty"
    if len(subject) > MAX_SUBJECT_CHARS:
        return False, f"Email subject too long (max {MAX_SUBJECT_CHARS} characters)"
    if not body or not body.strip():
        return False, "Email body cannot be empty"
    if len(body) > MAX_BODY_CHARS:
        return False, f"Email body too long (max {MAX_BODY_CHARS} characters)"
    return True, None


def _render_html(body: str, project_name: Optional[str], project_description: Optional[str]) -> str:
    paragraphs = "".join(f"<p>{html.escape(p)}</p>" for p in body.split("\n\n") if p.strip())
    header = ""
    if project_name:
        header = f"<h2>{html.escape(project_name)}</h2>"
        if project_description:
            header += f"<p><em>{html.escape(project_description)}</em></p>"
    return f"<html><body>{header}{paragraphs}</body></html>"


class Mailer:
    """SMTP sender. The blocking smtplib session runs in a worker thread."""

    def __init__(self, config: SMTPConfig, enabled: bool = True):
        self.config = config
        self.enabled = enabled

    @property
    def available(self) -> bool:
        return self.enabled and self.config.configured

    def _send_sync(self, message: MIMEMultipart, recipient: str) -> None:
        cfg = self.config
        with smtplib.SMTP(cfg.host, cfg.port, timeout=30) as smtp:
            if cfg.use_tls and cfg.host not in ("127.0.0.1", "localhost"):
                smtp.starttls()
            smtp.login(cfg.user, cfg.password)
            smtp.sendmail(message["From"], [recipient], message.as_string())

    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.config.configured:
            return {"success": False, "error": "SMTP host, user and password must be configured"}
        if not self.enabled:
            return {"success": False, "error": "Email functionality is disabled"}
        ok, error = validate_email_payload(to, subject, body)
        if not ok:
            return {"success": False, "error": error}
        context = context or {}
        sender = self.config.sender or self.config.user
        message = MIMEMultipart("alternative")
        message["From"] = sender
        message["To"] = to
        message["Subject"] = subject
        message_id = make_msgid()
        message["Message-ID"] = message_id
        message.attach(MIMEText(body, "plain"))
        message.attach(
            MIMEText(_render_html(body, context.get("project_name"), context.get("project_description")), "html")
        )
        try:
            await asyncio.to_thread(self._send_sync, message, to)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("Email send to %s failed: %s", to, exc)
            return {"success": False, "error": f"Failed to send email: {exc}"}
        return {"success": True, "message_id": message_id}
