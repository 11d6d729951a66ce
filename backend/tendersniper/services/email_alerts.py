"""
Email alerts using SendGrid.

Client-facing HTML messages (new opportunity with decision links, document
package ready) and the admin mailbox. Degrades gracefully when
SENDGRID_API_KEY is not configured: the message is logged and reported as
skipped.
"""
import asyncio
import logging
from datetime import datetime
from html import escape
from typing import Optional

import sendgrid
from sendgrid.helpers.mail import Content, Mail

from tendersniper.core.config import get_settings
from tendersniper.models.schemas import ClientSummary, DceFile, DispatchResult, FileCategory

logger = logging.getLogger(__name__)

_URGENCY_COLORS = {"HIGH": "#dc2626", "MEDIUM": "#d97706", "LOW": "#6b7280"}
_URGENCY_LABELS = {"HIGH": "Urgent", "MEDIUM": "Normal", "LOW": "Peu urgent"}
_CATEGORY_LABELS = {
    FileCategory.ADMINISTRATIVE: "Administratif",
    FileCategory.TECHNICAL: "Technique",
    FileCategory.FINANCIAL: "Financier",
    FileCategory.OTHER: "Autres pièces",
}


def _layout(heading: str, body: str) -> str:
    date_str = datetime.utcnow().strftime("%d/%m/%Y")
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="UTF-8"></head>
<body style="font-family:Arial,sans-serif;background:#f9fafb;margin:0;padding:0;">
  <div style="max-width:640px;margin:24px auto;background:#fff;
               border-radius:8px;overflow:hidden;box-shadow:0 1px 3px rgba(0,0,0,.1);">

    <!-- Header -->
    <div style="background:#0f3b5f;padding:20px 24px;">
      <h1 style="color:#fff;margin:0;font-size:20px;">Tender Sniper</h1>
      <p style="color:#93c5fd;margin:4px 0 0;font-size:14px;">{escape(heading)} · {date_str}</p>
    </div>

    <div style="padding:20px 24px;">{body}</div>

    <!-- Footer -->
    <div style="padding:16px 24px;background:#f9fafb;border-top:1px solid #e5e7eb;">
      <p style="margin:0;font-size:12px;color:#9ca3af;">
        Cet email a été envoyé automatiquement par Tender Sniper.
      </p>
    </div>
  </div>
</body>
</html>"""


def build_opportunity_alert_html(
    client_name: str,
    tender_title: str,
    accept_url: str,
    reject_url: str,
    summary: Optional[ClientSummary] = None,
    reasoning: str = "",
    score: float = 0.0,
    notice_url: Optional[str] = None,
) -> str:
    """New validated opportunity, with accept / reject buttons."""
    facts = ""
    key_points = ""
    urgency = "MEDIUM"
    digest = reasoning
    if summary:
        urgency = summary.urgency.value
        digest = summary.summary or reasoning
        for label, value in (
            ("Budget", summary.budget),
            ("Date limite", summary.deadline),
            ("Lieu", summary.location),
            ("Durée", summary.duration),
        ):
            if value:
                facts += f"""
        <tr>
          <td style="padding:6px 12px;color:#6b7280;font-size:13px;">{label}</td>
          <td style="padding:6px 12px;color:#111827;font-size:13px;">{escape(value)}</td>
        </tr>"""
        if summary.key_points:
            items = "".join(f"<li>{escape(p)}</li>" for p in summary.key_points)
            key_points = f'<ul style="color:#334155;font-size:14px;">{items}</ul>'

    notice_link = (
        f'<p style="font-size:13px;"><a href="{escape(notice_url)}" style="color:#1d4ed8;">Voir l\'avis BOAMP</a></p>'
        if notice_url else ""
    )
    body = f"""
      <p style="font-size:14px;color:#374151;">Bonjour {escape(client_name)},</p>
      <h2 style="font-size:17px;color:#0f172a;margin:8px 0;">{escape(tender_title)}</h2>
      <p>
        <span style="background:{_URGENCY_COLORS[urgency]};color:#fff;border-radius:4px;
                     padding:2px 8px;font-size:12px;font-weight:bold;">{_URGENCY_LABELS[urgency]}</span>
        <span style="color:#6b7280;font-size:12px;margin-left:8px;">Pertinence {score:.0f}/100</span>
      </p>
      <div style="background:#f0f9ff;padding:14px;border-radius:6px;margin:16px 0;">
        <p style="color:#334155;font-size:14px;margin:0;">{escape(digest)}</p>
      </div>
      <table style="width:100%;border-collapse:collapse;">{facts}</table>
      {key_points}
      {notice_link}
      <h3 style="text-align:center;margin-top:28px;font-size:15px;">Votre décision</h3>
      <div style="text-align:center;padding:12px 0;">
        <a href="{escape(accept_url)}" style="display:inline-block;padding:12px 24px;background:#059669;
           color:#fff;text-decoration:none;border-radius:6px;font-weight:bold;margin:5px;">Je suis intéressé</a>
        <a href="{escape(reject_url)}" style="display:inline-block;padding:12px 24px;background:#dc2626;
           color:#fff;text-decoration:none;border-radius:6px;font-weight:bold;margin:5px;">Pas intéressé</a>
      </div>"""
    return _layout("Nouvelle opportunité", body)


def build_package_ready_html(
    client_name: str,
    tender_title: str,
    files: list[DceFile],
    base_url: str = "",
) -> str:
    """Document package delivered, grouped by category, priority files first."""
    base_url = base_url.rstrip("/")
    sections = ""
    for category, label in _CATEGORY_LABELS.items():
        group = sorted(
            (f for f in files if f.category == category),
            key=lambda f: (not f.is_priority, f.name),
        )
        if not group:
            continue
        rows = ""
        for f in group:
            url = f.url if f.url.startswith("http") else f"{base_url}{f.url}"
            star = " ★" if f.is_priority else ""
            rows += (
                f'<li style="margin:4px 0;"><a href="{escape(url)}" style="color:#1d4ed8;">'
                f"{escape(f.name)}</a>{star}</li>"
            )
        sections += f"""
      <h3 style="font-size:14px;color:#0f3b5f;margin:18px 0 6px;">{label}</h3>
      <ul style="font-size:13px;padding-left:18px;margin:0;">{rows}</ul>"""

    body = f"""
      <p style="font-size:14px;color:#374151;">Bonjour {escape(client_name)},</p>
      <p style="font-size:14px;color:#374151;">
        Le dossier de consultation de <strong>{escape(tender_title)}</strong> est prêt
        ({len(files)} fichier{'s' if len(files) > 1 else ''}). Les pièces prioritaires sont marquées ★.
      </p>
      {sections}"""
    return _layout("Dossier de consultation prêt", body)


def build_admin_alert_html(message: str) -> str:
    return _layout("Alerte admin", f'<p style="font-size:14px;color:#374151;white-space:pre-line;">{escape(message)}</p>')


def _send_sync(api_key: str, message: Mail) -> int:
    sg = sendgrid.SendGridAPIClient(api_key=api_key)
    return sg.send(message).status_code


async def send_email(
    recipient: Optional[str],
    subject: str,
    html_body: str,
    settings=None,
) -> DispatchResult:
    """
    Send one HTML email via SendGrid.

    Never raises: returns a DispatchResult with sent, skipped (missing
    configuration or recipient) or error set.
    """
    settings = settings or get_settings()

    if not recipient:
        logger.info(f"Email skipped (no recipient): {subject}")
        return DispatchResult(channel="email", skipped=True)

    if not settings.sendgrid_api_key:
        logger.info(f"[MOCK EMAIL] SENDGRID_API_KEY not set. To: {recipient} | Subject: {subject}")
        return DispatchResult(channel="email", skipped=True)

    message = Mail(
        from_email=settings.alert_email_from,
        to_emails=recipient,
        subject=subject,
        html_content=Content("text/html", html_body),
    )

    try:
        status_code = await asyncio.to_thread(_send_sync, settings.sendgrid_api_key, message)
    except Exception as e:
        logger.error(f"Failed to send email to {recipient}: {e}")
        return DispatchResult(channel="email", error=str(e))

    if status_code in (200, 202):
        logger.info(f"Email sent to {recipient}: {subject}")
        return DispatchResult(channel="email", sent=True)

    logger.error(f"SendGrid returned unexpected status {status_code}")
    return DispatchResult(channel="email", error=f"SendGrid status {status_code}")
