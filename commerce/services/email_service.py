"""
Email dispatcher.

Sends templated HTML mail over SMTP. Delivery runs in a background thread
through the "email" bulkhead so a slow or unreachable SMTP server can
neither block a request nor open unbounded connections.

Usage:
    from commerce.services.email_service import send_email

    send_email(
        to="buyer@example.com",
        subject="Your purchase",
        template="emails/purchase_confirmation.html",
        context={"customer_name": "Jane"},
    )
"""

import logging
import smtplib
import threading
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app, render_template

from commerce.reliability import BulkheadFull, get_bulkheads

logger = logging.getLogger(__name__)

EMAIL_BULKHEAD = "email"


def _send_smtp(app, msg):
    """Deliver one message over SMTP. Errors are logged, never raised."""
    with app.app_context():
        host = app.config.get("MAIL_SMTP_HOST", "smtp.gmail.com")
        port = app.config.get("MAIL_SMTP_PORT", 587)
        username = app.config.get("MAIL_USERNAME")
        password = app.config.get("MAIL_PASSWORD")

        if not username or not password:
            logger.warning("Email not sent — MAIL_USERNAME or MAIL_PASSWORD not configured.")
            return

        try:
            with smtplib.SMTP(host, port, timeout=30) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                server.login(username, password)
                server.send_message(msg)
            logger.info(f"Email sent to {msg['To']} — {msg['Subject']}")
        except Exception as e:
            logger.error(f"Failed to send email to {msg['To']}: {e}")


def _send_through_bulkhead(app, bulkhead, msg):
    try:
        bulkhead.execute(_send_smtp, app, msg)
    except BulkheadFull as e:
        logger.error(f"Email to {msg['To']} dropped: {e}")


def _build_message(app, to, subject, template, context, reply_to):
    from_name = app.config.get("MAIL_FROM_NAME", "Commerce")
    from_email = app.config.get("MAIL_FROM_ADDRESS") or app.config.get("MAIL_USERNAME", "")

    html_body = render_template(template, **context)

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{from_name} <{from_email}>"
    msg["To"] = to if isinstance(to, str) else ", ".join(to)

    if reply_to:
        msg["Reply-To"] = reply_to

    msg.attach(MIMEText(html_body, "html"))
    return msg


def send_email(to, subject, template, context=None, reply_to=None):
    """
    Send a templated HTML email without blocking the caller.

    Args:
        to:        Recipient email address (str or list).
        subject:   Email subject line.
        template:  Path to Jinja2 HTML template (relative to templates/).
        context:   Dict of variables to pass to the template.
        reply_to:  Optional reply-to address.
    """
    app = current_app._get_current_object()
    msg = _build_message(app, to, subject, template, context or {}, reply_to)

    if app.config.get("MAIL_SUPPRESS_SEND"):
        logger.info(f"Email suppressed (MAIL_SUPPRESS_SEND) to {msg['To']} — {subject}")
        return

    bulkhead = get_bulkheads().get_or_create(EMAIL_BULKHEAD)
    thread = threading.Thread(target=_send_through_bulkhead, args=(app, bulkhead, msg))
    thread.daemon = True
    thread.start()


def send_email_sync(to, subject, template, context=None, reply_to=None):
    """
    Same as send_email but blocks until sent. Used outside a request
    (CLI replays), where a daemon thread would die with the process.
    """
    app = current_app._get_current_object()
    msg = _build_message(app, to, subject, template, context or {}, reply_to)

    if app.config.get("MAIL_SUPPRESS_SEND"):
        logger.info(f"Email suppressed (MAIL_SUPPRESS_SEND) to {msg['To']} — {subject}")
        return

    bulkhead = get_bulkheads().get_or_create(EMAIL_BULKHEAD)
    _send_through_bulkhead(app, bulkhead, msg)
