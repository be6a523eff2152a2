"""
Email notification utilities for Identity Sync.

This module sends email notifications for failed reconciliation runs and,
when enabled, summaries of sync and retention passes.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

from identity_sync.models import RetentionReport, SyncResult

logger = logging.getLogger(__name__)

FOOTER = "This is an automated message from Identity Sync."

# Cap on error lines included in one email
MAX_LISTED_ERRORS = 10


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    try:
        smtp_server = config.get('smtp_server')
        smtp_port = config.get('smtp_port', 587)
        smtp_username = config.get('smtp_username')
        smtp_password = config.get('smtp_password')
        smtp_tls = config.get('smtp_tls', True)

        email_from = config.get('email_from', smtp_username)
        email_to = config.get('email_to', [])

        if not smtp_server:
            logger.error("SMTP server not configured")
            return False

        if not email_to:
            logger.error("No email recipients configured")
            return False

        if isinstance(email_to, str):
            email_to = [email_to]

        logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

        msg = MIMEMultipart()
        msg['From'] = email_from
        msg['To'] = ', '.join(email_to)
        msg['Subject'] = subject
        msg.attach(MIMEText(body, 'plain'))

        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

        logger.info(f"Email notification sent successfully: {subject}")
        return True

    except Exception as e:
        logger.error(f"Failed to send email notification: {e}")
        return False


def _format_errors(errors: List[str]) -> List[str]:
    lines = [f"  {i}. {error}" for i, error in enumerate(errors[:MAX_LISTED_ERRORS], 1)]
    if len(errors) > MAX_LISTED_ERRORS:
        lines.append(f"  ... and {len(errors) - MAX_LISTED_ERRORS} more errors")
    return lines


def _format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        return f"{minutes}m {runtime_seconds % 60:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for failures.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "Identity Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        FOOTER
    ])

    return send_email(f"Identity Sync Alert: {title}", '\n'.join(body_lines), config)


def send_directory_connection_failure(
    error_message: str,
    config: Dict[str, Any],
    retry_count: int = 0
) -> bool:
    """Send notification when the directory could not be reached."""
    additional_info = {
        'Component': 'Directory Connection',
        'Retry Attempts': retry_count,
        'Impact': 'Sync aborted - no identities were changed'
    }

    return send_failure_notification(
        "Directory Connection Failed",
        error_message,
        config,
        additional_info
    )


def send_sync_errors(result: SyncResult, config: Dict[str, Any]) -> bool:
    """Send notification listing per-record errors of a completed run."""
    if not result.errors:
        return False

    body_lines = [
        "Identity Sync Record Error Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        f"Error Count: {len(result.errors)}",
        "",
        "Error Details:"
    ]
    body_lines.extend(_format_errors(result.errors))
    body_lines.extend([
        "",
        "The remaining records were synchronized normally.",
        "",
        FOOTER
    ])

    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False
    return send_email("Identity Sync Alert: Record Errors", '\n'.join(body_lines), config)


def send_sync_summary(result: SyncResult, runtime_seconds: float, config: Dict[str, Any]) -> bool:
    """
    Send summary notification for a reconciliation run.

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    body_lines = [
        "Identity Sync Summary Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        f"  Total runtime: {_format_runtime(runtime_seconds)}",
        f"  Identities created: {result.created}",
        f"  Identities updated: {result.updated}",
        f"  Identities deactivated: {result.deactivated}",
        f"  Errors: {len(result.errors)}",
        ""
    ]
    if result.errors:
        body_lines.append("Errors:")
        body_lines.extend(_format_errors(result.errors))
        body_lines.append("")
    body_lines.append(FOOTER)

    return send_email("Identity Sync: Reconciliation Complete", '\n'.join(body_lines), config)


def send_retention_summary(report: RetentionReport, config: Dict[str, Any]) -> bool:
    """Send summary notification for a retention pass."""
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    body_lines = [
        "Identity Retention Summary Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        f"  Anonymized: {report.anonymized}",
        f"  Archived: {report.archived}",
        f"  Deleted: {report.deleted}",
        f"  Skipped: {report.skipped}",
        ""
    ]
    if report.errors:
        body_lines.append("Errors:")
        body_lines.extend(_format_errors(report.errors))
        body_lines.append("")
    body_lines.append(FOOTER)

    return send_email("Identity Sync: Retention Pass Complete", '\n'.join(body_lines), config)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    recipients = config.get('email_to', [])
    if isinstance(recipients, str):
        recipients = [recipients]

    body = "\n".join([
        "This is a test email from Identity Sync.",
        "",
        "If you receive this message, your email notification configuration is working correctly.",
        "",
        f"- SMTP Server: {config.get('smtp_server', 'not configured')}",
        f"- SMTP Port: {config.get('smtp_port', 'not configured')}",
        f"- From Address: {config.get('email_from', 'not configured')}",
        f"- Recipients: {', '.join(recipients)}",
    ])

    result = send_email("Identity Sync: Configuration Test", body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
