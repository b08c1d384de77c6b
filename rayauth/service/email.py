from __future__ import annotations

import html
import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from rayauth.logging import get_logger

logger = get_logger(__name__)

_LAYOUT = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body>
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
<h2 style="color: #333;">{title}</h2>
{body}
<p style="color: #999; font-size: 12px;">&copy; {year} {app_name}</p>
</div>
</body>
</html>
"""


class EmailService:
    """Transactional emails for the auth flows.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Welcome, OAuth welcome, password reset and password changed notices
    - Fallback to logging when SMTP is not configured (dev mode)
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
        app_name: str = "Raya",
        frontend_url: str = "http://localhost:4200",
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user or "noreply@raya.app"
        self.app_name = app_name
        self.frontend_url = frontend_url.rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(self, title: str, body: str) -> str:
        return _LAYOUT.format(
            title=title,
            body=body,
            year=datetime.now(timezone.utc).year,
            app_name=html.escape(self.app_name),
        )

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully (or logged in dev mode), False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.app_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain", "utf-8"))
            msg.attach(MIMEText(html_body, "html", "utf-8"))

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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def reset_link(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password?token={token}"

    def send_welcome(self, to_email: str, username: str) -> bool:
        name = html.escape(username)
        body = (
            f"<p>Bonjour <strong>{name}</strong>,</p>"
            "<p>Votre compte a été créé avec succès. Vous pouvez maintenant vous connecter.</p>"
        )
        text = (
            f"Bonjour {username},\n\n"
            "Votre compte a été créé avec succès. Vous pouvez maintenant vous connecter.\n"
        )
        return self._send_email(
            to_email,
            f"Bienvenue sur {self.app_name}",
            self._render(f"Bienvenue sur {html.escape(self.app_name)} !", body),
            text,
        )

    def send_oauth_welcome(self, to_email: str, provider: str) -> bool:
        label = html.escape(provider)
        body = (
            f"<p>Votre compte a été créé via <strong>{label}</strong>.</p>"
            f"<p>Vous pouvez vous connecter avec votre compte {label} à tout moment.</p>"
        )
        text = (
            f"Votre compte a été créé via {provider}.\n"
            f"Vous pouvez vous connecter avec votre compte {provider} à tout moment.\n"
        )
        return self._send_email(
            to_email,
            f"Bienvenue sur {self.app_name} (via {provider})",
            self._render(f"Bienvenue sur {html.escape(self.app_name)} !", body),
            text,
        )

    def send_password_reset(self, to_email: str, token: str) -> bool:
        """Send the reset link carrying the raw token."""
        reset_url = self.reset_link(token)
        if not self.is_configured:
            logger.warning(
                "password_reset_dev_link", to=self._redact_email(to_email), reset_link=reset_url
            )
        hours = max(1, self.reset_ttl_minutes // 60)
        body = f"""<p>Bonjour,</p>
<p>Vous avez demandé la réinitialisation de votre mot de passe sur <strong>{html.escape(self.app_name)}</strong>.</p>
<p>Cliquez sur le bouton ci-dessous pour définir un nouveau mot de passe :</p>
<div style="text-align: center; margin: 30px 0;">
<a href="{html.escape(reset_url)}" style="background-color: #4F46E5; color: white; padding: 12px 30px; text-decoration: none; border-radius: 6px; font-weight: bold;">Réinitialiser mon mot de passe</a>
</div>
<p style="color: #666; font-size: 14px;">Ce lien expire dans <strong>{hours} heure(s)</strong>.</p>
<p style="color: #666; font-size: 14px;">Si vous n'avez pas demandé cette réinitialisation, ignorez cet email.</p>
<p style="color: #999; font-size: 12px;">Token (pour API) : <code>{html.escape(token)}</code></p>"""
        text = (
            "Vous avez demandé la réinitialisation de votre mot de passe.\n\n"
            f"{reset_url}\n\n"
            f"Ce lien expire dans {hours} heure(s).\n"
        )
        return self._send_email(
            to_email,
            f"[{self.app_name}] Réinitialisation de mot de passe",
            self._render("Réinitialisation de mot de passe", body),
            text,
        )

    def send_password_changed(self, to_email: str, username: str) -> bool:
        name = html.escape(username)
        body = (
            f"<p>Bonjour <strong>{name}</strong>,</p>"
            "<p>Le mot de passe de votre compte vient d'être modifié.</p>"
            "<p>Si vous n'êtes pas à l'origine de ce changement, réinitialisez votre mot de passe immédiatement.</p>"
        )
        text = (
            f"Bonjour {username},\n\n"
            "Le mot de passe de votre compte vient d'être modifié.\n"
            "Si vous n'êtes pas à l'origine de ce changement, réinitialisez votre mot de passe immédiatement.\n"
        )
        return self._send_email(
            to_email,
            f"[{self.app_name}] Mot de passe modifié",
            self._render("Mot de passe modifié", body),
            text,
        )
