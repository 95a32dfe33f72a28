"""
Email notifications for Directory Sync.

Three reports are sent over SMTP: a failure alert when a full sync or an event
batch cannot run at all, the summary of a full sync, and the list of problems
recorded while applying a batch of change events. Sending never raises; a
failed delivery is logged and reported as ``False``.
"""

import smtplib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.text import MIMEText
from typing import Any, Dict, Iterable, List, Optional

from directory_sync.models import BatchProblem

logger = logging.getLogger(__name__)

MAX_LISTED_ITEMS = 10
SMTP_SSL_PORT = 465
FOOTER = "This is an automated message from Directory Sync."


@dataclass
class MailSettings:
    """SMTP settings from the ``notifications`` configuration section."""

    server: Optional[str] = None
    port: int = 587
    use_tls: bool = True
    username: Optional[str] = None
    password: Optional[str] = None
    sender: Optional[str] = None
    recipients: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'MailSettings':
        recipients = config.get('email_to') or []
        if isinstance(recipients, str):
            recipients = [recipients]
        return cls(
            server=config.get('smtp_server'),
            port=config.get('smtp_port', 587),
            use_tls=config.get('smtp_tls', True),
            username=config.get('smtp_username'),
            password=config.get('smtp_password'),
            sender=config.get('email_from') or config.get('smtp_username'),
            recipients=list(recipients),
        )

    def problems(self) -> List[str]:
        missing = []
        if not self.server:
            missing.append("SMTP server not configured")
        if not self.recipients:
            missing.append("no email recipients configured")
        return missing


def _connect(settings: MailSettings) -> smtplib.SMTP:
    if settings.port == SMTP_SSL_PORT:
        return smtplib.SMTP_SSL(settings.server, settings.port)

    connection = smtplib.SMTP(settings.server, settings.port)
    if settings.use_tls:
        connection.starttls()
    return connection


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Deliver one plain text message.

    Args:
        subject: Subject line
        body: Message text
        config: The ``notifications`` configuration section

    Returns:
        True if the SMTP server accepted the message
    """
    if not config.get('enable_email', True):
        logger.debug(f"Email disabled, not sending: {subject}")
        return False

    settings = MailSettings.from_dict(config)
    missing = settings.problems()
    if missing:
        logger.error(f"Cannot send '{subject}': {'; '.join(missing)}")
        return False

    message = MIMEText(body, 'plain')
    message['Subject'] = subject
    message['From'] = settings.sender or ''
    message['To'] = ', '.join(settings.recipients)

    logger.debug(f"Sending '{subject}' to {len(settings.recipients)} recipients "
                 f"via {settings.server}:{settings.port}")
    try:
        connection = _connect(settings)
        try:
            if settings.username and settings.password:
                connection.login(settings.username, settings.password)
            connection.sendmail(settings.sender, settings.recipients, message.as_string())
        finally:
            connection.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send '{subject}': {e}")
        return False

    logger.info(f"Sent notification: {subject}")
    return True


def _format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        return f"{int(runtime_seconds // 60)}m {runtime_seconds % 60:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def _listed(items: List[str]) -> List[str]:
    lines = [f"  {i}. {item}" for i, item in enumerate(items[:MAX_LISTED_ITEMS], 1)]
    if len(items) > MAX_LISTED_ITEMS:
        lines.append(f"  ... and {len(items) - MAX_LISTED_ITEMS} more")
    return lines


def _report(title: str, sections: Iterable[List[str]]) -> str:
    lines = [title, f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}", ""]
    for section in sections:
        if section:
            lines.extend(section)
            lines.append("")
    lines.append(FOOTER)
    return '\n'.join(lines)


def send_failure_notification(title: str, error_message: str, config: Dict[str, Any],
                              additional_info: Optional[Dict[str, Any]] = None) -> bool:
    """Alert that a full sync or an event batch failed before completing."""
    if not config.get('email_on_failure', True):
        logger.debug(f"Failure emails disabled, not reporting: {title}")
        return False

    details = []
    if additional_info:
        details = ["Details:"] + [f"  {key}: {value}" for key, value in additional_info.items()]

    body = _report("Directory Sync Failure", [
        [f"What failed: {title}", f"Error: {error_message}"],
        details,
        ["See the directory-sync log for the full traceback."],
    ])
    return send_email(f"Directory Sync Alert: {title}", body, config)


def send_full_sync_summary(sync_stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send the summary of a full sync.

    A run with errors is reported when ``email_on_failure`` is enabled, a clean
    run only when ``email_on_success`` is.

    Args:
        sync_stats: ``FullSyncReport.as_stats()``
        config: The ``notifications`` configuration section
    """
    has_errors = sync_stats.get('total_errors', 0) > 0
    wanted = config.get('email_on_failure', True) if has_errors else config.get('email_on_success', False)
    if not wanted:
        logger.debug("Full sync summary email not requested")
        return False

    consumer = sync_stats.get('consumer', 'unknown')
    outcome = "completed with errors" if has_errors else "completed successfully"
    dry_run = " (dry run)" if sync_stats.get('dry_run') else ""

    counters = [
        ('Extra groups', 'extra_groups'), ('Missing groups', 'missing_groups'),
        ('Matched groups', 'matched_groups'), ('Groups created', 'groups_created'),
        ('Groups updated', 'groups_updated'), ('Groups archived', 'groups_archived'),
        ('Groups deleted', 'groups_deleted'), ('Members added', 'members_added'),
        ('Members removed', 'members_removed'), ('Users created', 'users_created'),
        ('Total errors', 'total_errors'),
    ]
    statistics = ["Statistics:", f"  Total runtime: {_format_runtime(sync_stats.get('runtime_seconds', 0))}"]
    statistics.extend(f"  {label}: {sync_stats.get(key, 0)}" for label, key in counters)

    errors = sync_stats.get('errors') or []
    error_lines = ["Errors:"] + _listed(errors) if errors else []

    body = _report("Directory Sync Full Sync Report", [
        [f"Full sync of {consumer}{dry_run} {outcome}."],
        statistics,
        error_lines,
    ])
    return send_email(f"Directory Sync: Full sync of {consumer} {outcome}", body, config)


def send_batch_problem_report(consumer_name: str, problems: List[BatchProblem], last_processed: int,
                              config: Dict[str, Any]) -> bool:
    """
    Send the problems recorded while applying a batch of change events.

    Args:
        consumer_name: Consumer the batch was applied for
        problems: ``BatchMetadata.problems``
        last_processed: Sequence number returned by the dispatcher
        config: The ``notifications`` configuration section
    """
    if not problems:
        return False

    if not config.get('email_on_failure', True):
        logger.debug(f"Failure emails disabled, not reporting {len(problems)} batch problems")
        return False

    body = _report("Directory Sync Change Event Report", [
        [f"Consumer: {consumer_name}", f"Problem Count: {len(problems)}",
         f"Last Processed Sequence Number: {last_processed}"],
        ["Problems:"] + _listed([
            f"event {problem.sequence_number}: {problem.message} ({problem.exception})"
            for problem in problems
        ]),
        ["See the directory-sync log for the full tracebacks."],
    ])
    return send_email(f"Directory Sync Alert: {consumer_name} change event errors", body, config)
