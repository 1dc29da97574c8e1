from __future__ import annotations

import html
import smtplib
import ssl
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Optional, Protocol, Set
from urllib.parse import quote

from invitely.logging import get_logger, redact_email, redact_token_params

logger = get_logger(__name__)


class MailSender(Protocol):
    def send_verification(self, email: str, token: str) -> bool: ...

    def send_reset(self, email: str, token: str) -> bool: ...

    def send_password_changed(self, email: str) -> bool: ...


_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Georgia, 'Times New Roman', serif; line-height: 1.6; color: #3b2f2f;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <h1 style="font-weight: normal;">{title}</h1>
    <p>{intro}</p>
    {action}
    <p>{note}</p>
    <p style="margin-top: 40px; font-size: 12px; color: #7a6a6a;">{sender}</p>
  </div>
</body>
</html>
"""

_ACTION_TEMPLATE = (
    '<p style="margin: 30px 0;"><a href="{url}" style="background: #b5838d; color: #fff; '
    'padding: 12px 24px; border-radius: 6px; text-decoration: none;">{label}</a></p>'
    "<p>If the button doesn't work, paste this link into your browser: {url}</p>"
)


class EmailService:
    """Transactional mail over SMTP.

    Without SMTP settings (local development) messages are logged instead of
    sent. Every method returns False on failure rather than raising.
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
        from_name: str = "Invitely",
        base_url: Optional[str] = None,
        reset_lifetime_minutes: int = 60,
        verification_lifetime_hours: int = 24,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.reset_lifetime_minutes = reset_lifetime_minutes
        self.verification_lifetime_hours = verification_lifetime_hours

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(
        self,
        *,
        title: str,
        intro: str,
        note: str,
        url: Optional[str] = None,
        label: str = "",
    ) -> tuple[str, str]:
        action_html = (
            _ACTION_TEMPLATE.format(url=html.escape(url, quote=True), label=label)
            if url
            else ""
        )
        html_body = _HTML_TEMPLATE.format(
            title=html.escape(title),
            intro=html.escape(intro),
            action=action_html,
            note=html.escape(note),
            sender=html.escape(self.from_name),
        )
        text_parts = [title, "", intro, ""]
        if url:
            text_parts += [url, ""]
        text_parts += [note, "", "---", self.from_name]
        return html_body, "\n".join(text_parts)

    def _deliver(self, msg: MIMEMultipart, to_email: str) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

    def _send_email(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=redact_token_params(text_body)[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            self._deliver(msg, to_email)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_verification(self, email: str, token: str) -> bool:
        url = f"{self.base_url}/verify-email?token={quote(token)}"
        html_body, text_body = self._render(
            title="Confirm your email address",
            intro="Welcome to Invitely! Confirm your email address to start sending invitations.",
            url=url,
            label="Confirm email",
            note=f"This link expires in {self.verification_lifetime_hours} hours.",
        )
        return self._send_email(email, "Confirm your Invitely email", html_body, text_body)

    def send_reset(self, email: str, token: str) -> bool:
        url = f"{self.base_url}/reset-password?token={quote(token)}"
        html_body, text_body = self._render(
            title="Reset your password",
            intro="We received a request to reset your password.",
            url=url,
            label="Choose a new password",
            note=(
                f"This link expires in {self.reset_lifetime_minutes} minutes. "
                "If you didn't request it, you can ignore this email."
            ),
        )
        return self._send_email(email, "Reset your Invitely password", html_body, text_body)

    def send_password_changed(self, email: str) -> bool:
        html_body, text_body = self._render(
            title="Your password was changed",
            intro="The password for your Invitely account was just changed and all sessions were signed out.",
            note="If you didn't make this change, reset your password right away.",
        )
        return self._send_email(
            email, "Your Invitely password was changed", html_body, text_body
        )


class MailDispatcher:
    """Fire-and-forget mail delivery on a small worker pool.

    At most ``max_pending`` sends are queued or running; further submissions
    are dropped with a warning so traffic spikes cannot fan out unbounded.
    Failures are logged and never reach the flow that triggered the send.
    """

    def __init__(self, sender: MailSender, *, workers: int = 4, max_pending: int = 100) -> None:
        self.sender = sender
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="invitely-mail"
        )
        self._slots = threading.BoundedSemaphore(max_pending)
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def _submit(self, kind: str, fn: Callable[..., bool], *args) -> bool:
        if not self._slots.acquire(blocking=False):
            logger.warning("mail_dispatch_dropped", kind=kind, reason="queue_full")
            return False
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError as exc:
            # Executor already shut down
            self._slots.release()
            logger.warning("mail_dispatch_dropped", kind=kind, reason=str(exc))
            return False
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(lambda f: self._finished(kind, f))
        return True

    def _finished(self, kind: str, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        self._slots.release()
        exc = future.exception()
        if exc is not None:
            logger.error(
                "mail_dispatch_failed",
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        elif future.result() is False:
            logger.warning("mail_dispatch_unsent", kind=kind)

    def send_verification(self, email: str, token: str) -> bool:
        return self._submit("verification", self.sender.send_verification, email, token)

    def send_reset(self, email: str, token: str) -> bool:
        return self._submit("reset", self.sender.send_reset, email, token)

    def send_password_changed(self, email: str) -> bool:
        return self._submit("password_changed", self.sender.send_password_changed, email)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every in-flight send to finish (tests, shutdown)."""
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            try:
                future.result(timeout=timeout)
            except Exception:
                # Already logged by _finished
                continue

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
