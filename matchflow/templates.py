"""Message templates: one typed, validated payload per notification type.

A payload is validated into its pydantic model before rendering, so a
malformed payload surfaces as PayloadValidationError instead of a half-filled
email.
"""
from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from matchflow.errors import PayloadValidationError, TemplateNotFound
from matchflow.log import get_logger
from matchflow.models import (
    JOB_MATCH,
    REMINDER,
    STATUS_UPDATE,
    VERIFICATION,
    WELCOME,
    template_name_for,
)

log = get_logger(__name__)

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ── Payload schemas ──────────────────────────────────────────────────────

class Payload(BaseModel):
    """Fields every notification carries. Unknown keys are ignored."""

    model_config = ConfigDict(frozen=True, extra="ignore", str_strip_whitespace=True)

    recipient_name: str = Field(..., min_length=1)
    email: str = Field(..., pattern=EMAIL_PATTERN)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # null means "not provided": optional fields fall back to their default
        if isinstance(data, Mapping):
            return {k: v for k, v in data.items() if v is not None}
        return data


class JobMatchPayload(Payload):
    resume_id: str
    job_id: str
    job_title: str = Field(..., min_length=1)
    company: str
    score: float = Field(..., ge=0, le=100)
    location: str = ""
    job_url: str = ""
    skills: list[str] = Field(default_factory=list)


class StatusUpdatePayload(Payload):
    job_title: str = Field(..., min_length=1)
    company: str
    status: str = Field(..., min_length=1)
    application_url: str = ""


class VerificationPayload(Payload):
    otp: str = Field(..., min_length=1)
    expiry_minutes: int = Field(default=5, ge=1)


class ReminderPayload(Payload):
    days_since_update: int = Field(..., ge=0)
    profile_completion: int = Field(default=0, ge=0, le=100)
    suggestions: list[str] = Field(default_factory=list)


class WelcomePayload(Payload):
    role: str


PAYLOAD_TYPES: dict[str, type[Payload]] = {
    JOB_MATCH: JobMatchPayload,
    STATUS_UPDATE: StatusUpdatePayload,
    VERIFICATION: VerificationPayload,
    REMINDER: ReminderPayload,
    WELCOME: WelcomePayload,
}


def _describe(notification_type: str, exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        where = ".".join(str(part) for part in err["loc"]) or "payload"
        problems.append(f"{where}: {err['msg']}")
    return f"invalid {notification_type} payload ({'; '.join(problems)})"


def parse_payload(notification_type: str, data: Mapping[str, Any]) -> Payload:
    """Validate ``data`` into the payload model registered for the type."""
    schema = PAYLOAD_TYPES.get(notification_type)
    if schema is None:
        raise PayloadValidationError(f"no payload schema for notification type {notification_type!r}")
    if not isinstance(data, Mapping):
        raise PayloadValidationError(f"{notification_type} payload must be a mapping")
    try:
        return schema.model_validate(dict(data))
    except ValidationError as exc:
        raise PayloadValidationError(_describe(notification_type, exc)) from exc


# ── Rendering ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    text: str
    html: str


def _inline(text: str) -> str:
    """Convert inline markdown (bold, italic, links, code) to HTML."""
    text = re.sub(r'\*\*(.+?)\*\*', r'<strong>\1</strong>', text)
    text = re.sub(r'(?<![\w])_(.+?)_(?![\w])', r'<em>\1</em>', text)
    text = re.sub(
        r'`(.+?)`',
        r'<code style="background:#f0f0f0;padding:1px 4px;border-radius:3px;font-size:12px">\1</code>',
        text,
    )
    text = re.sub(r'\[([^\]]+)\]\(([^)]+)\)', r'<a href="\2" style="color:#1a73e8">\1</a>', text)
    return text


def md_to_html(md: str) -> str:
    """Lightweight markdown-to-HTML for notification emails. Input is escaped first."""
    parts: list[str] = []
    for line in md.split("\n"):
        stripped = html.escape(line.strip(), quote=True)
        if not stripped:
            parts.append("<br>")
        elif stripped.startswith("## "):
            parts.append(f'<h2 style="margin:18px 0 6px;color:#2c3e50">{_inline(stripped[3:])}</h2>')
        elif stripped.startswith("# "):
            parts.append(f'<h1 style="margin:0 0 8px;color:#2c3e50">{_inline(stripped[2:])}</h1>')
        elif stripped == "---":
            parts.append('<hr style="border:none;border-top:1px solid #e0e0e0;margin:16px 0">')
        elif stripped.startswith("- "):
            parts.append(f'<div style="margin:2px 0 2px 16px">• {_inline(stripped[2:])}</div>')
        else:
            parts.append(f"<p style='margin:4px 0'>{_inline(stripped)}</p>")
    return "\n".join(parts)


def _first_name(name: str) -> str:
    return name.split()[0] if name.split() else name


def _job_match(p: JobMatchPayload, portal_url: str) -> tuple[str, str]:
    url = p.job_url or (f"{portal_url}/jobs/{p.job_id}" if portal_url else "")
    lines = [
        f"# New job match: {p.job_title}",
        "",
        f"Hi {_first_name(p.recipient_name)},",
        "",
        f"Your resume is a **{p.score:.0f}%** match for **{p.job_title}** at **{p.company}**.",
    ]
    if p.location:
        lines.append(f"- **Location:** {p.location}")
    if p.skills:
        lines.append(f"- **Skills:** {', '.join(p.skills[:10])}")
    if url:
        lines += ["", f"[View the job]({url})"]
    return f"New Job Match: {p.job_title} ({p.score:.0f}% match)", "\n".join(lines)


_STATUS_MESSAGES: dict[str, str] = {
    "reviewing": "Your application is being reviewed by the hiring team.",
    "shortlisted": "Good news: you have been shortlisted.",
    "interview": "The hiring team would like to schedule an interview.",
    "offered": "Congratulations, you have received an offer.",
    "hired": "Congratulations on your new role!",
    "rejected": "The hiring team has decided not to move forward at this time.",
}


def _status_update(p: StatusUpdatePayload, portal_url: str) -> tuple[str, str]:
    message = _STATUS_MESSAGES.get(p.status.lower(), f"Your application status is now: {p.status}.")
    lines = [
        f"# Application update: {p.job_title}",
        "",
        f"Hi {_first_name(p.recipient_name)},",
        "",
        f"{message}",
        f"- **Role:** {p.job_title} at {p.company}",
        f"- **Status:** {p.status}",
    ]
    if p.application_url:
        lines += ["", f"[View your application]({p.application_url})"]
    return f"Application Update: {p.job_title}", "\n".join(lines)


def _verification(p: VerificationPayload, portal_url: str) -> tuple[str, str]:
    lines = [
        "# Verify your email address",
        "",
        f"Hi {_first_name(p.recipient_name)},",
        "",
        f"Your verification code is **{p.otp}**.",
        f"It expires in {p.expiry_minutes} minutes.",
    ]
    return "Verify Your Email Address", "\n".join(lines)


def _reminder(p: ReminderPayload, portal_url: str) -> tuple[str, str]:
    lines = [
        "# Time to refresh your resume",
        "",
        f"Hi {_first_name(p.recipient_name)},",
        "",
        f"It has been {p.days_since_update} days since you last updated your profile.",
    ]
    if p.profile_completion:
        lines.append(f"Your profile is {p.profile_completion}% complete.")
    if p.suggestions:
        lines += ["", "## Suggestions"] + [f"- {s}" for s in p.suggestions[:5]]
    if portal_url:
        lines += ["", f"[Update your profile]({portal_url}/profile)"]
    return f"Time to refresh your resume! ({p.days_since_update} days since last update)", "\n".join(lines)


def _welcome(p: WelcomePayload, portal_url: str) -> tuple[str, str]:
    lines = [
        f"# Welcome, {_first_name(p.recipient_name)}!",
        "",
        f"Your {p.role} account is ready.",
    ]
    if portal_url:
        lines += ["", f"[Open your dashboard]({portal_url}/dashboard)"]
    return "Welcome to the Job Portal!", "\n".join(lines)


TemplateFn = Callable[[Any, str], "tuple[str, str]"]

DEFAULT_TEMPLATES: dict[str, tuple[type, TemplateFn]] = {
    template_name_for(JOB_MATCH): (JobMatchPayload, _job_match),
    template_name_for(STATUS_UPDATE): (StatusUpdatePayload, _status_update),
    template_name_for(VERIFICATION): (VerificationPayload, _verification),
    template_name_for(REMINDER): (ReminderPayload, _reminder),
    template_name_for(WELCOME): (WelcomePayload, _welcome),
}


class TemplateRenderer:
    def __init__(self, *, portal_url: str = "", sender_name: str = "Job Portal") -> None:
        self.portal_url = portal_url.rstrip("/")
        self.sender_name = sender_name
        self._templates: dict[str, tuple[type, TemplateFn]] = dict(DEFAULT_TEMPLATES)

    def register(self, name: str, payload_type: type, fn: TemplateFn) -> None:
        self._templates[name] = (payload_type, fn)

    def has_template(self, name: str) -> bool:
        return name in self._templates

    def render(self, template_name: str, payload: Any) -> RenderedMessage:
        entry = self._templates.get(template_name)
        if entry is None:
            raise TemplateNotFound(f"no template named {template_name!r}")
        payload_type, fn = entry

        if isinstance(payload, Mapping):
            payload = parse_payload(template_name.replace("-", "_"), payload)
        if not isinstance(payload, payload_type):
            raise PayloadValidationError(
                f"template {template_name!r} expects {payload_type.__name__}, got {type(payload).__name__}"
            )

        try:
            subject, body = fn(payload, self.portal_url)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise PayloadValidationError(f"template {template_name!r} failed to render: {exc}") from exc

        html_body = f"""<div style="font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;max-width:700px;margin:0 auto;padding:16px;color:#333">
{md_to_html(body)}
<hr style="border:none;border-top:1px solid #e0e0e0;margin:20px 0 8px">
<p style="font-size:11px;color:#999">Sent by {html.escape(self.sender_name)}</p>
</div>"""
        log.debug("Rendered %s (%d chars)", template_name, len(body))
        return RenderedMessage(subject=subject, text=body, html=html_body)
