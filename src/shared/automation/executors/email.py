"""SMTP email step executor."""

import logging
import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, List

from ..exceptions import ExecutorError
from ..expressions import ExpressionEvaluator
from ..graph import NodeType
from ..playbook import Context, StepResult
from .base import StepExecutor

logger = logging.getLogger(__name__)

DEFAULT_SMTP_PORT = 25


def split_recipients(value: Any) -> List[str]:
    """Accept a list or a comma separated string of addresses."""
    if isinstance(value, (list, tuple)):
        candidates = [str(v) for v in value]
    else:
        candidates = str(value or "").split(",")
    return [c.strip() for c in candidates if c and c.strip()]


class SendEmailExecutor(StepExecutor):
    """Sends an HTML email over SMTP.

    Config keys (all may be templated): host, port (default 25), username,
    password, from, to, subject, content. ``to`` is a list or a comma
    separated string. Authentication is attempted only when a password is
    configured. STARTTLS is tried first; servers that do not offer it are
    used in plain text with a warning.
    """

    node_type = NodeType.SEND_EMAIL

    def __init__(
        self,
        evaluator: ExpressionEvaluator,
        timeout: int = 30,
        starttls: bool = True,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ):
        super().__init__(evaluator)
        self.timeout = timeout
        self.starttls = starttls
        self.smtp_factory = smtp_factory

    def execute(self, config: Dict[str, Any], ctx: Context) -> StepResult:
        host = self.resolve_text(config.get("host"), ctx).strip()
        if not host:
            raise ExecutorError("SMTP host is required")

        port_value = self.resolve(config.get("port"), ctx)
        try:
            port = int(port_value) if port_value not in (None, "") else DEFAULT_SMTP_PORT
        except (TypeError, ValueError):
            raise ExecutorError(f"Invalid SMTP port: {port_value!r}")

        username = self.resolve_text(config.get("username"), ctx).strip()
        password = self.resolve_text(config.get("password"), ctx)
        sender = self.resolve_text(config.get("from"), ctx).strip() or username
        if not sender:
            raise ExecutorError("Sender is required: set 'from' or 'username'")

        recipients = split_recipients(self.resolve(config.get("to"), ctx))
        if not recipients:
            raise ExecutorError("At least one recipient is required")

        msg = MIMEText(self.resolve_text(config.get("content"), ctx), "html", "utf-8")
        msg["Subject"] = self.resolve_text(config.get("subject"), ctx)
        msg["From"] = sender
        msg["To"] = ", ".join(recipients)

        use_starttls = config.get("starttls", self.starttls)

        try:
            server = self.smtp_factory(host, port, timeout=self.timeout)
        except (smtplib.SMTPException, OSError) as e:
            raise ExecutorError(f"Dial error: {e}")

        try:
            if use_starttls:
                self._starttls(server, host)

            if password:
                try:
                    server.login(username, password)
                except (smtplib.SMTPException, OSError) as e:
                    raise ExecutorError(f"Auth error: {e}")

            try:
                refused = server.send_message(msg, from_addr=sender, to_addrs=recipients)
            except (smtplib.SMTPException, OSError) as e:
                raise ExecutorError(f"Send error: {e}")
        finally:
            self._close(server)

        refused = list(refused or {})
        if refused:
            logger.warning(f"SMTP server refused recipients: {refused}")

        logger.info(f"Sent email via {host}:{port} to {len(recipients) - len(refused)} recipient(s)")

        return StepResult.success(output={
            "accepted": True,
            "recipients": [r for r in recipients if r not in refused],
            "refused": refused,
        })

    def _starttls(self, server: smtplib.SMTP, host: str) -> None:
        """Upgrade to TLS, continuing in plain text when the server cannot."""
        try:
            server.starttls(context=ssl.create_default_context())
        except smtplib.SMTPNotSupportedError:
            logger.warning(f"SMTP server {host} does not support STARTTLS, continuing without TLS")
        except (ssl.SSLError, smtplib.SMTPResponseException) as e:
            logger.warning(f"STARTTLS with {host} failed, continuing without TLS: {e}")

    @staticmethod
    def _close(server: smtplib.SMTP) -> None:
        try:
            server.quit()
        except (smtplib.SMTPException, OSError):
            server.close()
