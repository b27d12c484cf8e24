import asyncio
import logging
import os
import smtplib
from email.message import EmailMessage
from pathlib import Path

from app.core.config import settings


logger = logging.getLogger(__name__)


def _smtp_config() -> dict[str, str | int | None]:
    return {
        "host": os.getenv("SMTP_HOST") or os.getenv("EMAIL_HOST"),
        "port": int(os.getenv("SMTP_PORT") or os.getenv("EMAIL_PORT") or "465"),
        "user": os.getenv("SMTP_USER") or os.getenv("EMAIL_USER"),
        "password": os.getenv("SMTP_PASSWORD") or os.getenv("EMAIL_PASS"),
        "sender": os.getenv("EMAIL_FROM") or "LoadVoice <noreply@loadvoice.com>",
    }


def _deliver(message: EmailMessage, to_email: str) -> bool:
    config = _smtp_config()
    if not all([config["host"], config["user"], config["password"], to_email]):
        logger.info("email: SMTP not configured, skipping '%s' to %s", message["Subject"], to_email)
        return False

    message["From"] = str(config["sender"])
    message["To"] = to_email

    try:
        with smtplib.SMTP_SSL(str(config["host"]), int(config["port"]), timeout=20) as client:
            client.login(str(config["user"]), str(config["password"]))
            client.send_message(message, from_addr=str(config["user"]), to_addrs=[to_email])
    except Exception:
        logger.warning("email: send failed subject='%s' to=%s", message["Subject"], to_email, exc_info=True)
        return False

    return True


def send_magic_link_email(to_email: str, verify_url: str) -> bool:
    if not verify_url:
        return False

    message = EmailMessage()
    message["Subject"] = "Your LoadVoice sign-in link"
    message.set_content(
        (
            "Welcome to LoadVoice.\n\n"
            "Use this secure sign-in link (expires soon):\n"
            f"{verify_url}\n\n"
            "If you did not request this, you can ignore this email."
        )
    )
    return _deliver(message, to_email)


def send_overage_invoice_email(
    *,
    to_email: str,
    amount: float,
    minutes: int,
    due_date: str,
    checkout_url: str,
) -> bool:
    message = EmailMessage()
    message["Subject"] = f"Overage Invoice - ${amount:.2f} Due"
    message.set_content(
        (
            "Overage Usage Invoice\n\n"
            "Your organization has exceeded its monthly minute allowance.\n\n"
            f"Overage minutes: {minutes}\n"
            f"Rate: ${settings.OVERAGE_RATE:.2f}/minute\n"
            f"Total due: ${amount:.2f}\n"
            f"Due date: {due_date}\n\n"
            "Until this invoice is paid you cannot upgrade your plan or add team members.\n\n"
            f"Pay now: {checkout_url}\n"
        )
    )
    return _deliver(message, to_email)


def send_referral_invitation_email(*, to_email: str, referrer_name: str, referral_link: str) -> bool:
    message = EmailMessage()
    message["Subject"] = f"{referrer_name} invited you to LoadVoice"
    message.set_content(
        (
            f"{referrer_name} thinks LoadVoice can save you time on every broker call.\n\n"
            "LoadVoice records, transcribes and extracts load details from your calls.\n\n"
            f"Sign up with this link: {referral_link}\n"
        )
    )
    return _deliver(message, to_email)


def send_rate_confirmation_email(
    *,
    to_email: str,
    rate_con_number: str,
    pdf_path: Path | None = None,
    signing_url: str | None = None,
    fully_signed: bool = False,
) -> bool:
    message = EmailMessage()
    if fully_signed:
        message["Subject"] = f"Rate Confirmation {rate_con_number} - Fully Signed"
        body = f"Rate confirmation {rate_con_number} has been signed by both parties. A copy is attached.\n"
    else:
        message["Subject"] = f"Rate Confirmation {rate_con_number} - Signature Requested"
        body = f"Please review and sign rate confirmation {rate_con_number}.\n"
        if signing_url:
            body += f"\nSign here: {signing_url}\n"
    message.set_content(body)

    if pdf_path is not None:
        try:
            file_bytes = pdf_path.read_bytes()
        except OSError:
            logger.warning("email: rate confirmation pdf missing at %s", pdf_path)
        else:
            message.add_attachment(
                file_bytes,
                maintype="application",
                subtype="pdf",
                filename=f"{rate_con_number}.pdf",
            )

    return _deliver(message, to_email)


async def send_rate_confirmation_email_async(**kwargs) -> bool:
    return await asyncio.to_thread(send_rate_confirmation_email, **kwargs)


def send_commission_approved_email(*, to_email: str, partner_name: str, amount_cents: int, commission_count: int) -> bool:
    message = EmailMessage()
    message["Subject"] = "Your LoadVoice partner commissions were approved"
    message.set_content(
        (
            f"Hi {partner_name},\n\n"
            f"{commission_count} commission(s) totaling ${amount_cents / 100:.2f} cleared the holding period "
            "and are approved for the next payout.\n"
        )
    )
    return _deliver(message, to_email)


def send_admin_notification_email(*, subject: str, body: str) -> bool:
    to_email = settings.ADMIN_NOTIFICATION_EMAIL
    if not to_email:
        return False

    message = EmailMessage()
    message["Subject"] = subject
    message.set_content(body)
    return _deliver(message, to_email)
