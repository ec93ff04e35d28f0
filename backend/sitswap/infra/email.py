import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr

import anyio
import httpx

from sitswap.infra.logging import mask_email
from sitswap.settings import Settings, settings

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class EmailNotConfiguredError(RuntimeError):
    pass


class NoopEmailAdapter:
    """Used when no transport is configured. Delivery is logged, not sent."""

    configured = False

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body: str,
        *,
        html: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> bool:  # noqa: D401
        logger.info(
            "email_send_skipped",
            extra={"extra": {"recipient": mask_email(recipient), "subject": subject, "mode": "noop"}},
        )
        return False


class EmailAdapter:
    configured = True

    def __init__(self, app_settings: Settings | None = None, http_client: httpx.AsyncClient | None = None) -> None:
        self.settings = app_settings or settings
        self.http_client = http_client

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body: str,
        *,
        html: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> bool:
        if not recipient:
            return False
        if self.settings.email_mode == "sendgrid":
            await self._send_via_sendgrid(recipient, subject, body, html=html, headers=headers)
        elif self.settings.email_mode == "smtp":
            await self._send_via_smtp(recipient, subject, body, html=html, headers=headers)
        else:
            raise EmailNotConfiguredError("unsupported_email_mode")
        return True

    async def _send_via_sendgrid(
        self,
        to_email: str,
        subject: str,
        body: str,
        *,
        html: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        api_key = self.settings.sendgrid_api_key
        from_email = self.settings.email_from
        if not api_key or not from_email:
            raise EmailNotConfiguredError("sendgrid_not_configured")
        content = [{"type": "text/plain", "value": body}]
        if html:
            content.append({"type": "text/html", "value": html})
        payload = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": from_email},
            "subject": subject,
            "content": content,
        }
        if self.settings.email_from_name:
            payload["from"]["name"] = self.settings.email_from_name
        if headers:
            payload["headers"] = headers
        client = self.http_client or httpx.AsyncClient()
        close_client = self.http_client is None
        try:
            response = await client.post(
                SENDGRID_URL,
                headers={"Authorization": f"Bearer {api_key}"},
                json=payload,
                timeout=self.settings.email_timeout_seconds,
            )
        finally:
            if close_client:
                await client.aclose()
        if response.status_code >= 400:
            raise RuntimeError(f"sendgrid_status_{response.status_code}")

    async def _send_via_smtp(
        self,
        to_email: str,
        subject: str,
        body: str,
        *,
        html: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        host = self.settings.smtp_host
        port = self.settings.smtp_port or 587
        username = self.settings.smtp_username
        password = self.settings.smtp_password
        from_email = self.settings.email_from
        if not host or not from_email:
            raise EmailNotConfiguredError("smtp_not_configured")

        formatted_from = (
            formataddr((self.settings.email_from_name, from_email)) if self.settings.email_from_name else from_email
        )

        message = EmailMessage()
        message["From"] = formatted_from
        message["To"] = to_email
        message["Subject"] = subject
        if headers:
            for header_name, header_value in headers.items():
                message[header_name] = header_value
        message.set_content(body)
        if html:
            message.add_alternative(html, subtype="html")

        use_tls = self.settings.smtp_use_tls
        timeout = self.settings.smtp_timeout_seconds

        def _send_blocking() -> None:
            if use_tls:
                with smtplib.SMTP(host, port, timeout=timeout) as smtp:
                    smtp.starttls()
                    if username and password:
                        smtp.login(username, password)
                    smtp.send_message(message)
            else:
                with smtplib.SMTP_SSL(host, port, timeout=timeout) as smtp:
                    if username and password:
                        smtp.login(username, password)
                    smtp.send_message(message)

        await anyio.to_thread.run_sync(_send_blocking)


def resolve_email_adapter(app_settings: Settings) -> EmailAdapter | NoopEmailAdapter:
    if app_settings.email_mode == "off":
        return NoopEmailAdapter()
    return EmailAdapter(app_settings)
