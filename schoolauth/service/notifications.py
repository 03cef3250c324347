from __future__ import annotations

import asyncio
import html
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from schoolauth.logging import get_logger, redact_email
from schoolauth.service.email import DeliveryResult, EmailService

logger = get_logger(__name__)


class TemplateKind(str, Enum):
    WELCOME = "welcome"
    VERIFICATION = "verification"
    VERIFICATION_RESEND = "verificationResend"
    PASSWORD_RESET = "passwordReset"
    PASSWORD_RESET_CONFIRMATION = "passwordResetConfirmation"


_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 32px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 6px; text-decoration: none; }}
        .footer {{ margin-top: 32px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        {body}
        <div class="footer">
            <p>{app_name}</p>
            <p>Questions? Contact {support_email}</p>
        </div>
    </div>
</body>
</html>
"""


def _button(url: str, label: str) -> str:
    safe = html.escape(url, quote=True)
    return (
        f'<p style="margin: 24px 0;"><a href="{safe}" class="button">{html.escape(label)}</a></p>'
        f"<p>If the button doesn't work, copy and paste this URL: {safe}</p>"
    )


class TemplateRenderer:
    """Builds subject, HTML and plain-text bodies for each template kind."""

    def __init__(
        self,
        *,
        client_base_url: str = "http://localhost:3000",
        app_name: str = "School Management System",
        support_email: str = "support@schoolms.com",
    ) -> None:
        self.client_base_url = client_base_url.rstrip("/")
        self.app_name = app_name
        self.support_email = support_email

    def _wrap(self, heading: str, paragraphs: list[str], extra_html: str = "") -> str:
        body = "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs) + extra_html
        return _LAYOUT.format(
            heading=html.escape(heading),
            body=body,
            app_name=html.escape(self.app_name),
            support_email=html.escape(self.support_email),
        )

    def _text(self, heading: str, paragraphs: list[str], url: Optional[str] = None) -> str:
        parts = [heading, ""] + paragraphs
        if url:
            parts += ["", url]
        parts += ["", "---", self.app_name]
        return "\n".join(parts)

    def render(self, kind: TemplateKind, data: Dict[str, Any]) -> Tuple[str, str, str]:
        name = data.get("name") or "there"
        greeting = f"Hello {name},"
        url: Optional[str] = None

        if kind in (TemplateKind.VERIFICATION, TemplateKind.VERIFICATION_RESEND):
            url = f"{self.client_base_url}/verify-email/{data['token']}"
            subject = "Verify Your Email Address"
            if kind == TemplateKind.VERIFICATION_RESEND:
                subject += " (Resent)"
            heading = "Verify your email"
            lines = [
                greeting,
                f"Thanks for registering with {self.app_name}. Please confirm your email address.",
                "This link will expire in 24 hours.",
            ]
            label = "Verify Email"
        elif kind == TemplateKind.WELCOME:
            url = f"{self.client_base_url}/login"
            subject = f"Welcome to {self.app_name}"
            heading = "Your email is verified"
            lines = [greeting, "Your account is ready. You can now sign in."]
            label = "Sign In"
        elif kind == TemplateKind.PASSWORD_RESET:
            url = f"{self.client_base_url}/reset-password/{data['token']}"
            subject = "Password Reset Request"
            heading = "Reset your password"
            lines = [
                greeting,
                "We received a request to reset your password.",
                "This link will expire in 1 hour.",
                "If you didn't request this, you can safely ignore this email.",
            ]
            label = "Reset Password"
        elif kind == TemplateKind.PASSWORD_RESET_CONFIRMATION:
            verb = "changed" if data.get("changed") else "reset"
            subject = f"Your password has been {verb}"
            heading = f"Password {verb}"
            lines = [
                greeting,
                f"The password for your {self.app_name} account was just {verb}.",
                f"If this wasn't you, contact {self.support_email} immediately.",
            ]
            label = ""
        else:
            raise ValueError(f"unknown template {kind!r}")

        extra = _button(url, label) if url and label else ""
        return subject, self._wrap(heading, lines, extra), self._text(heading, lines, url)


class NotificationDispatcher:
    """Fire-and-forget delivery of templated mail.

    ``send`` reports the outcome and never raises. ``dispatch`` hands the
    send to a worker thread so the request path does not wait on SMTP.
    """

    def __init__(self, transport: EmailService, renderer: Optional[TemplateRenderer] = None) -> None:
        self.transport = transport
        self.renderer = renderer or TemplateRenderer()
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings) -> "NotificationDispatcher":
        return cls(
            EmailService.from_settings(settings),
            TemplateRenderer(
                client_base_url=settings.client_base_url,
                app_name=settings.email_from_name,
                support_email=settings.support_email,
            ),
        )

    def send(self, kind: TemplateKind, recipient: str, data: Optional[Dict[str, Any]] = None) -> DeliveryResult:
        try:
            subject, html_body, text_body = self.renderer.render(kind, data or {})
            result = self.transport.deliver(recipient, subject, html_body, text_body)
        except Exception as exc:
            logger.error(
                "notification_send_failed",
                template=kind.value,
                to=redact_email(recipient),
                error=str(exc),
            )
            return DeliveryResult(success=False, error=str(exc))
        if not result.success:
            logger.warning(
                "notification_not_delivered",
                template=kind.value,
                to=redact_email(recipient),
                error=result.error,
            )
        return result

    def dispatch(self, kind: TemplateKind, recipient: str, data: Optional[Dict[str, Any]] = None) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.send(kind, recipient, data)
            return
        task = loop.create_task(asyncio.to_thread(self.send, kind, recipient, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for in-flight sends; used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
