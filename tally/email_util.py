"""
Email utility: async SMTP email delivery using aiosmtplib.

Environment variables:
    SMTP_HOST      SMTP server hostname  (default: smtp.gmail.com)
    SMTP_PORT      SMTP server port      (default: 587 → STARTTLS)
    SMTP_USER      SMTP username
    SMTP_PASS      SMTP password
    SMTP_USE_TLS   Set to "true" for STARTTLS connections (default: true)
    SMTP_FROM      Sender address        (default: no-reply@tally.local)
    FRONTEND_URL   Public URL of the frontend, used to build links
"""
import logging
import os
from email.message import EmailMessage

import aiosmtplib

from tally.security import format_voter_key_for_display

logger = logging.getLogger(__name__)

# ── Configuration ────────────────────────────────────────────────────────────
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587").strip() or "587")
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")
SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
SMTP_FROM = os.getenv("SMTP_FROM", "no-reply@tally.local")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:8080")


def absolute_url(path: str | None) -> str | None:
    """Resolve an in-app path such as ``/vote/abc`` against FRONTEND_URL."""
    if not path:
        return None
    if path.startswith(("http://", "https://")):
        return path
    return f"{FRONTEND_URL.rstrip('/')}/{path.lstrip('/')}"


async def send_email(to: str, subject: str, body_text: str, body_html: str | None = None):
    """Send an email asynchronously via SMTP."""
    msg = EmailMessage()
    msg["From"] = SMTP_FROM
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body_text)

    if body_html:
        msg.add_alternative(body_html, subtype="html")

    kwargs: dict = {
        "hostname": SMTP_HOST,
        "port": SMTP_PORT,
        "start_tls": SMTP_USE_TLS,
    }
    if SMTP_USER and SMTP_PASS:
        kwargs["username"] = SMTP_USER
        kwargs["password"] = SMTP_PASS

    try:
        await aiosmtplib.send(msg, **kwargs)
        logger.info(f"Email sent to {to}: {subject}")
    except Exception as e:
        logger.error(f"Failed to send email to {to}: {e}")
        raise


async def send_voter_key_email(
    to_email: str,
    voter_key: str,
    election_title: str,
    voter_name: str | None = None,
    unique_id: str | None = None,
):
    """Send a voter the access key for an election."""
    login_url = absolute_url("/voter/login")
    display_key = format_voter_key_for_display(voter_key)
    greeting = f"Hello {voter_name}," if voter_name else "Hello,"

    subject = f"Your Voter Access Key - {election_title}"

    body_text = (
        f"{greeting}\n\n"
        f"You have been registered to vote in: {election_title}\n\n"
        f"Voter ID:   {unique_id or '(see your invitation)'}\n"
        f"Access key: {display_key}\n\n"
        f"Sign in at: {login_url}\n\n"
        "Important:\n"
        "- Keep this key private. Anyone holding it can vote as you.\n"
        "- Spaces and letter case in the key do not matter.\n\n"
        "-- Tally Election Service"
    )

    body_html = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <div style="background: #0d6efd; color: white; padding: 20px; text-align: center;">
            <h1 style="margin: 0;">Tally Election Service</h1>
        </div>
        <div style="padding: 30px; background: #f8f9fa;">
            <p>{greeting}</p>
            <p>You have been registered to vote in <strong>{election_title}</strong>.</p>
            <p><strong>Voter ID:</strong> {unique_id or '(see your invitation)'}</p>
            <div style="background: #ffffff; border: 2px dashed #0d6efd;
                        padding: 20px; margin: 25px auto; max-width: 320px;
                        border-radius: 10px; text-align: center;">
                <span style="font-size: 28px; font-weight: bold; letter-spacing: 4px;
                             color: #0d6efd; font-family: monospace;">
                    {display_key}
                </span>
            </div>
            <div style="text-align: center; margin: 30px 0;">
                <a href="{login_url}"
                   style="background: #0d6efd; color: white; padding: 15px 40px;
                          text-decoration: none; border-radius: 5px; font-size: 18px;">
                    Sign in to vote
                </a>
            </div>
            <p style="color: #6c757d; font-size: 13px;">
                Keep this key private. Spaces and letter case do not matter.
            </p>
        </div>
    </div>
    """

    await send_email(to_email, subject, body_text, body_html)


async def send_notification_email(
    to_email: str,
    title: str,
    message: str,
    action_url: str | None = None,
    action_text: str | None = None,
):
    """Send a notification through the email channel."""
    link = absolute_url(action_url)

    body_text = message
    if link:
        body_text += f"\n\n{action_text or 'Open'}: {link}"
    body_text += "\n\n-- Tally Election Service"

    button = ""
    if link:
        button = f"""
            <div style="text-align: center; margin: 30px 0;">
                <a href="{link}"
                   style="background: #0d6efd; color: white; padding: 12px 32px;
                          text-decoration: none; border-radius: 5px;">
                    {action_text or 'Open'}
                </a>
            </div>"""

    body_html = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <div style="padding: 30px; background: #f8f9fa;">
            <h2>{title}</h2>
            <p>{message}</p>{button}
        </div>
    </div>
    """

    await send_email(to_email, title, body_text, body_html)
