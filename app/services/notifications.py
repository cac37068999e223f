import datetime as dt
import logging
import os
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from pathlib import Path

from app.core.config import Settings
from app.core.types import Profile, SubscriptionStatus
from app.data import profiles

log = logging.getLogger("notifications")

BRAND = "Limetto"
SUPPORT_ADDR = "support@limetto.com"

TEMPLATES: dict[str, dict[str, str]] = {
    "welcome": {
        "subject": "Welcome to Limetto!",
        "title": "Welcome to Limetto!",
        "message": "Thank you for joining Limetto! Your account has been created "
        "and you're ready to get started.",
        "cta": "Get started: {dashboard_url}",
    },
    "signup_confirmation": {
        "subject": "Welcome to Limetto! Confirm your email",
        "title": "Confirm Your Email",
        "message": "Thank you for signing up for Limetto. Please check your inbox for a "
        "confirmation email from our system to activate your account.",
        "cta": "Once confirmed, sign in at {login_url}",
    },
    "trial_activated": {
        "subject": "Your Free Trial is Now Active!",
        "title": "Your Free Trial Has Started",
        "message": "Great news! Your free trial is now active and you have full access to all "
        "Limetto features. Your trial will end on {trial_end_date}.",
        "cta": "Explore features: {dashboard_url}",
    },
    "subscription_started": {
        "subject": "Welcome to Limetto Pro!",
        "title": "Your Subscription is Active",
        "message": "Congratulations! Your Limetto Pro subscription is now active. "
        "You now have unlimited access to all premium features.",
        "cta": "Access your dashboard: {dashboard_url}",
    },
    "subscription_renewed": {
        "subject": "Your Limetto Subscription Has Renewed",
        "title": "Subscription Renewed",
        "message": "Your Limetto subscription has been renewed. Thanks for staying with us!",
        "cta": "Manage your subscription: {dashboard_url}",
    },
    "subscription_cancelled": {
        "subject": "Subscription Cancelled - We'll Miss You",
        "title": "Subscription Cancelled",
        "message": "We're sorry to see you go! Your Limetto subscription has been cancelled. "
        "You'll continue to have access until {access_end_date}.",
        "cta": "Reactivate your subscription: {reactivate_url}",
    },
    "payment_success": {
        "subject": "Payment Received - Thank You!",
        "title": "Payment Successful",
        "message": "Thank you! We've successfully received your payment of {amount} "
        "for your Limetto subscription.",
        "cta": "View your account: {dashboard_url}",
    },
    "payment_reminder": {
        "subject": "Payment Due Tomorrow - Limetto Subscription",
        "title": "Payment Reminder",
        "message": "This is a friendly reminder that your Limetto subscription payment of "
        "{amount} will be charged tomorrow ({charge_date}).",
        "cta": "Update your payment method: {billing_url}",
    },
}


def format_date(value: dt.datetime | dt.date | str | None) -> str:
    if isinstance(value, str):
        value = profiles.to_utc(value)
    if value is None:
        return "N/A"
    return f"{value:%B} {value.day}, {value.year}"


def format_amount(amount: float, currency: str = "USD") -> str:
    currency = (currency or "USD").upper()
    if currency == "USD":
        return f"${amount:,.2f}"
    return f"{amount:,.2f} {currency}"


def render(cfg: Settings, key: str, user_name: str | None = None, **data) -> tuple[str, str]:
    template = TEMPLATES.get(key)
    if template is None:
        raise KeyError(f"Email template '{key}' not found")
    base = cfg.PUBLIC_BASE_URL
    values = {
        "dashboard_url": f"{base}/dashboard",
        "login_url": f"{base}/login",
        "billing_url": f"{base}/settings",
        "reactivate_url": f"{base}/subscribe",
        "trial_end_date": "N/A",
        "access_end_date": "N/A",
        "amount": "",
        "charge_date": "N/A",
    }
    values.update({k: v for k, v in data.items() if v is not None})
    lines = [
        template["title"],
        "",
        f"Hi {user_name or 'there'},",
        template["message"].format(**values),
        "",
        template["cta"].format(**values),
        "",
        f"Need help? Email us at {SUPPORT_ADDR}.",
        f"(c) {dt.date.today().year} {BRAND}. All rights reserved.",
    ]
    return template["subject"], "\n".join(lines)


def _send_email(cfg: Settings, to_addr: str, subject: str, body: str) -> bool:
    host = (cfg.SMTP_HOST or "").strip()
    port = cfg.SMTP_PORT or 0
    user = (cfg.SMTP_USER or "").strip()
    pwd = cfg.SMTP_PASSWORD or None
    from_addr = (cfg.SMTP_FROM or user or "").strip()

    if not (host and port and from_addr and to_addr):
        log.warning(
            "email_not_configured host=%r port=%r from=%r to=%r",
            bool(host), port, from_addr, to_addr,
        )
        return False

    try:
        if port == 465:
            server = smtplib.SMTP_SSL(host, port, timeout=10)
        else:
            server = smtplib.SMTP(host, port, timeout=10)
        server.ehlo()
        try:
            if port != 465:
                server.starttls()
        except smtplib.SMTPException:
            # Some servers may not support STARTTLS; continue without if needed
            pass
        if user and pwd:
            server.login(user, pwd)

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = from_addr
        msg["To"] = to_addr
        msg.set_content(body)
        server.send_message(msg)
        try:
            server.quit()
        except smtplib.SMTPException:
            pass
        log.info("email_sent to=%s subject=%r", to_addr, subject)
        return True
    except Exception as e:
        log.exception("email_send_failed to=%s: %s", to_addr, e)
        return False


def _write_outbox_eml(to_addr: str, subject: str, body: str) -> str | None:
    """Write a .eml file to the outbox directory for local inspection."""
    try:
        outdir = Path(os.getenv("EMAIL_OUTBOX_DIR", "data/email_outbox"))
        outdir.mkdir(parents=True, exist_ok=True)
        stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        fpath = outdir / f"email_{stamp}.eml"
        content = (
            f"To: {to_addr}\nSubject: {subject}\nMIME-Version: 1.0\n"
            "Content-Type: text/plain; charset=UTF-8\n\n" + body
        )
        fpath.write_text(content, encoding="utf-8")
        log.warning("email_outboxed path=%s", str(fpath))
        return str(fpath)
    except OSError:
        log.exception("email_outbox_write_failed to=%s", to_addr)
        return None


def send_notification(
    cfg: Settings, to_addr: str | None, key: str, user_name: str | None = None, **data
) -> bool:
    """Render and send one notification. Raises only on unknown template/missing address."""
    if not to_addr:
        raise ValueError(f"No recipient for '{key}' notification")
    subject, body = render(cfg, key, user_name=user_name, **data)
    sent = _send_email(cfg, to_addr, subject, body)
    if not sent:
        _write_outbox_eml(to_addr, subject, body)
    return sent


def notify(cfg: Settings, to_addr: str | None, key: str, user_name: str | None = None, **data) -> bool:
    """Best-effort send; never raises."""
    try:
        return send_notification(cfg, to_addr, key, user_name=user_name, **data)
    except Exception:
        log.exception("notification_failed key=%s to=%s", key, to_addr)
        return False


@dataclass
class ReminderRun:
    due: int = 0
    sent: int = 0
    outboxed: int = 0

    @property
    def processed(self) -> int:
        return self.sent + self.outboxed


def send_payment_reminders(cfg: Settings, today: dt.date | None = None) -> ReminderRun:
    """Remind active subscribers whose next charge is tomorrow.

    ``sent`` counts SMTP deliveries, ``outboxed`` the .eml fallbacks.
    Per-user failures are logged and skipped.
    """
    today = today or dt.datetime.now(dt.timezone.utc).date()
    tomorrow = today + dt.timedelta(days=1)
    due: list[Profile] = profiles.profiles_billing_on(
        tomorrow, statuses=(SubscriptionStatus.ACTIVE,)
    )
    if not due:
        log.info("payment_reminders none_due date=%s", tomorrow.isoformat())
        return ReminderRun()

    run = ReminderRun(due=len(due))
    for profile in due:
        try:
            delivered = send_notification(
                cfg,
                profile.email,
                "payment_reminder",
                user_name=profile.name,
                amount=format_amount(cfg.REMINDER_AMOUNT, cfg.REMINDER_CURRENCY),
                charge_date=format_date(tomorrow),
            )
        except Exception:
            log.exception("payment_reminder_failed user=%s", profile.id)
            continue
        if delivered:
            run.sent += 1
        else:
            run.outboxed += 1
    log.info(
        "payment_reminders due=%d sent=%d outboxed=%d", run.due, run.sent, run.outboxed
    )
    return run
