"""
Transactional email through the Brevo HTTP API.

Sending is best-effort: a missing API key or a transport failure yields an
EmailResult(success=False, ...) and a log line, never an exception, so callers
can fire-and-forget from request handlers.
"""
from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from flask import current_app, has_app_context
from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.portal.constants import STATUS_LABELS

logger = logging.getLogger(__name__)

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"
COMMENT_PREVIEW_LENGTH = 200

STATUS_COLORS = {
    "queue": "#6b7280",
    "active": "#3b82f6",
    "review": "#f59e0b",
    "done": "#10b981",
}

_env = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates" / "email")),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


@dataclass(frozen=True)
class EmailResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


def _config(config: Mapping[str, Any] | None) -> Mapping[str, Any]:
    if config is not None:
        return config
    if has_app_context():
        return current_app.config
    return {}


def _post_json(url: str, payload: dict[str, Any], headers: dict[str, str], timeout: int = 15) -> tuple[int, dict[str, Any]]:
    req = urllib.request.Request(url, data=json.dumps(payload).encode("utf-8"), method="POST")
    for k, v in headers.items():
        req.add_header(k, v)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read()
            return resp.status, (json.loads(raw.decode("utf-8")) if raw else {})
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="ignore")
        try:
            data = json.loads(body) if body else {}
        except ValueError:
            data = {"message": body[:300]}
        return e.code, data


def send_email(
    to: str | list[str],
    subject: str,
    html: str,
    *,
    text: str | None = None,
    reply_to: str | None = None,
    tags: list[str] | None = None,
    config: Mapping[str, Any] | None = None,
) -> EmailResult:
    cfg = _config(config)
    api_key = cfg.get("BREVO_API_KEY") or ""
    sender_email = cfg.get("BREVO_SENDER_EMAIL") or ""
    sender_name = cfg.get("BREVO_SENDER_NAME") or "AgencyOS"

    if not api_key:
        logger.warning("BREVO_API_KEY not configured - email not sent")
        return EmailResult(success=False, error="Email service not configured")
    if not sender_email:
        logger.warning("BREVO_SENDER_EMAIL not configured - email not sent")
        return EmailResult(success=False, error="Sender email not configured")

    recipients = [to] if isinstance(to, str) else list(to)
    payload: dict[str, Any] = {
        "sender": {"name": sender_name, "email": sender_email},
        "to": [{"email": r} for r in recipients],
        "subject": subject,
        "htmlContent": html,
    }
    if text:
        payload["textContent"] = text
    if reply_to:
        payload["replyTo"] = {"email": reply_to}
    if tags:
        payload["tags"] = tags

    headers = {"accept": "application/json", "api-key": api_key, "content-type": "application/json"}
    try:
        status, data = _post_json(BREVO_API_URL, payload, headers)
    except (urllib.error.URLError, OSError, ValueError) as e:
        logger.error("Email send error: %s", e)
        return EmailResult(success=False, error=str(e) or "Unknown error")

    if status >= 400:
        logger.error("Brevo API error status=%s body=%s", status, data)
        return EmailResult(success=False, error=data.get("message") or "Failed to send email")
    return EmailResult(success=True, message_id=data.get("messageId"))


def _render(name: str, **ctx: Any) -> tuple[str, str]:
    html = _env.get_template(f"{name}.html").render(**ctx)
    text = _env.get_template(f"{name}.txt").render(**ctx)
    return html, text


def _app_url(config: Mapping[str, Any] | None) -> str:
    return (_config(config).get("APP_URL") or "http://localhost:3000").rstrip("/")


def send_password_setup_email(
    email: str, reset_link: str, user_name: str | None = None, *, config: Mapping[str, Any] | None = None
) -> EmailResult:
    html, text = _render("password_setup", user_name=user_name, reset_link=reset_link, app_url=_app_url(config))
    return send_email(
        email,
        "Set Your Password - AgencyOS",
        html,
        text=text,
        tags=["password-reset", "onboarding"],
        config=config,
    )


def send_status_change_email(
    email: str,
    request_title: str,
    old_status: str,
    new_status: str,
    request_url: str,
    user_name: str | None = None,
    *,
    config: Mapping[str, Any] | None = None,
) -> EmailResult:
    html, text = _render(
        "status_change",
        user_name=user_name,
        request_title=request_title,
        request_url=request_url,
        old_label=STATUS_LABELS.get(old_status, old_status),
        new_label=STATUS_LABELS.get(new_status, new_status),
        old_color=STATUS_COLORS.get(old_status, "#6b7280"),
        new_color=STATUS_COLORS.get(new_status, "#6b7280"),
    )
    return send_email(
        email,
        f"Request Update: {request_title}",
        html,
        text=text,
        tags=["status-change", "notification"],
        config=config,
    )


def comment_preview(content: str) -> str:
    if len(content) >= COMMENT_PREVIEW_LENGTH:
        return content[:COMMENT_PREVIEW_LENGTH] + "..."
    return content


def send_comment_notification_email(
    email: str,
    request_title: str,
    commenter_name: str,
    content: str,
    request_url: str,
    user_name: str | None = None,
    *,
    config: Mapping[str, Any] | None = None,
) -> EmailResult:
    html, text = _render(
        "comment",
        user_name=user_name,
        request_title=request_title,
        commenter_name=commenter_name,
        preview=comment_preview(content),
        request_url=request_url,
    )
    return send_email(
        email,
        f"New Comment: {request_title}",
        html,
        text=text,
        tags=["comment", "notification"],
        config=config,
    )


def send_welcome_email(
    email: str, company_name: str, login_url: str, user_name: str | None = None, *, config: Mapping[str, Any] | None = None
) -> EmailResult:
    html, text = _render("welcome", user_name=user_name, company_name=company_name, login_url=login_url)
    return send_email(
        email,
        f"Welcome to AgencyOS - {company_name}",
        html,
        text=text,
        tags=["welcome", "onboarding"],
        config=config,
    )


def send_invitation_email(
    email: str,
    full_name: str | None,
    invitation_url: str,
    *,
    inviter_name: str | None = None,
    company_name: str | None = None,
    config: Mapping[str, Any] | None = None,
) -> EmailResult:
    html, text = _render(
        "invitation",
        user_name=full_name,
        invitation_url=invitation_url,
        inviter_name=inviter_name,
        company_name=company_name,
    )
    return send_email(
        email,
        "You're invited to AgencyOS",
        html,
        text=text,
        tags=["invitation", "onboarding"],
        config=config,
    )
