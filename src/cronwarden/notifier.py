"""
Failure notifications for cronwarden.

Supports email (sendmail or SMTP), Mattermost and Slack incoming webhooks.
A sink that fails is logged and skipped; notify() itself never raises.
"""
import logging
import smtplib
import subprocess
from email.message import EmailMessage
from email.utils import formataddr
from typing import List, Optional

import requests

from cronwarden import system
from cronwarden.models import JobSpec

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 30  # seconds
SENDMAIL_COMMAND = ["sendmail", "-t", "-i"]


class NotificationError(Exception):
    """A notification sink could not deliver its message."""
    pass


def build_body(spec: JobSpec, message: str, host: str) -> str:
    """Common message body for all sinks."""
    output = spec.output if spec.output is not None else spec.output_stdout
    return (
        f"{message}\n"
        f"\n"
        f"You can find its output in {output or '(no output configured)'} on {host}.\n"
        f"\n"
        f"Best,\n"
        f"cronwarden@{host}\n"
    )


class EmailSink:
    """Sends the alert by mail."""

    name = "email"

    def __init__(self, spec: JobSpec, host: str):
        self.spec = spec
        self.host = host

    def build_message(self, job_name: str, message: str) -> EmailMessage:
        """Compose the alert email."""
        spec = self.spec
        email = EmailMessage()
        email['From'] = formataddr((spec.smtp_sender_name, spec.smtp_sender))
        email['To'] = ", ".join(spec.recipients)
        email['Subject'] = spec.mail_subject or f"[{self.host}] '{job_name}' needs some attention!"
        email.set_content(build_body(spec, message, self.host))
        return email

    def send(self, job_name: str, message: str) -> None:
        email = self.build_message(job_name, message)
        if self.spec.mailer == "smtp":
            self._send_smtp(email)
        else:
            self._send_sendmail(email)
        logger.info(f"Email alert sent for job '{job_name}' to {', '.join(self.spec.recipients)}")

    def _send_smtp(self, email: EmailMessage) -> None:
        spec = self.spec
        host = spec.smtp_host or "localhost"

        if spec.smtp_security == "ssl":
            server = smtplib.SMTP_SSL(host, spec.smtp_port, timeout=WEBHOOK_TIMEOUT)
        else:
            server = smtplib.SMTP(host, spec.smtp_port, timeout=WEBHOOK_TIMEOUT)

        with server:
            if spec.smtp_security == "tls":
                server.starttls()
            if spec.smtp_username:
                server.login(spec.smtp_username, spec.smtp_password or "")
            server.send_message(email)

    def _send_sendmail(self, email: EmailMessage) -> None:
        result = subprocess.run(
            SENDMAIL_COMMAND,
            input=email.as_bytes(),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        if result.returncode != 0:
            raise NotificationError(
                f"sendmail exited with status {result.returncode}: "
                f"{result.stderr.decode('utf-8', 'replace').strip()}"
            )


class MattermostSink:
    """Posts the alert to a Mattermost incoming webhook."""

    name = "mattermost"

    def __init__(self, spec: JobSpec, host: str):
        self.spec = spec
        self.host = host

    def send(self, job_name: str, message: str) -> None:
        response = requests.post(
            self.spec.mattermost_url,
            json={'text': build_body(self.spec, message, self.host)},
            timeout=WEBHOOK_TIMEOUT
        )
        response.raise_for_status()
        logger.info(f"Mattermost alert sent for job '{job_name}'")


class SlackSink:
    """Posts the alert to a Slack incoming webhook."""

    name = "slack"

    def __init__(self, spec: JobSpec, host: str):
        self.spec = spec
        self.host = host

    def send(self, job_name: str, message: str) -> None:
        payload = {
            'channel': self.spec.slack_channel,
            'text': build_body(self.spec, message, self.host),
        }
        if self.spec.slack_sender:
            payload['username'] = self.spec.slack_sender

        response = requests.post(self.spec.slack_url, json=payload, timeout=WEBHOOK_TIMEOUT)
        response.raise_for_status()
        logger.info(f"Slack alert sent for job '{job_name}'")


class Notifier:
    """
    Fans a failure message out to every sink the job configures.

    Example:
        notifier = Notifier.for_job(spec)
        notifier.notify(spec.name, "Job exited with status '1'.")
    """

    def __init__(self, sinks: Optional[List] = None):
        self.sinks = list(sinks or [])

    @classmethod
    def for_job(cls, spec: JobSpec, host: Optional[str] = None) -> "Notifier":
        """Build the sinks configured on a job."""
        host = host or system.get_host()
        sinks = []
        if spec.recipients:
            sinks.append(EmailSink(spec, host))
        if spec.mattermost_url:
            sinks.append(MattermostSink(spec, host))
        if spec.slack_channel and spec.slack_url:
            sinks.append(SlackSink(spec, host))
        return cls(sinks)

    def notify(self, job_name: str, message: str) -> int:
        """
        Send a message to all sinks.

        Args:
            job_name: Name of the failed job
            message: Failure message

        Returns:
            Number of sinks that delivered successfully
        """
        delivered = 0
        for sink in self.sinks:
            try:
                sink.send(job_name, message)
                delivered += 1
            except (NotificationError, requests.RequestException, smtplib.SMTPException,
                    OSError, ValueError) as e:
                logger.error(f"Failed to send {sink.name} alert for job '{job_name}': {e}")
        return delivered
