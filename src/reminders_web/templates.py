from __future__ import annotations

from dataclasses import dataclass
from html import escape
from urllib.parse import quote


@dataclass(frozen=True)
class SubtaskReminderContext:
    user_name: str
    subtask_id: str
    subtask_title: str
    subtask_description: str | None
    main_task_title: str
    project_id: str
    project_name: str
    deadline_text: str
    days_remaining: int
    app_base_url: str


@dataclass(frozen=True)
class EventReminderContext:
    event_id: str
    event_title: str
    event_description: str | None
    location: str | None
    project_id: str
    project_name: str
    starts_at_text: str
    days_remaining: int
    app_base_url: str


_URGENCY_COLORS = {
    "TODAY": "#dc2626",
    "URGENT": "#ef4444",
    "Important": "#f59e0b",
    "Reminder": "#3b82f6",
}


def _days_text(days: int) -> str:
    return "day" if days == 1 else "days"


def urgency_label(days_remaining: int, *, today_label: bool = False) -> str:
    if today_label and days_remaining == 0:
        return "TODAY"
    if days_remaining <= 1:
        return "URGENT"
    if days_remaining <= 3:
        return "Important"
    return "Reminder"


def subtask_reminder_subject(title: str, days_remaining: int) -> str:
    return f"Reminder: {title} deadline in {days_remaining} {_days_text(days_remaining)}"


def event_reminder_subject(title: str, days_remaining: int) -> str:
    return f"Event Reminder: {title} in {days_remaining} {_days_text(days_remaining)}"


def _project_link(base_url: str, project_id: str, query: str) -> str:
    return f"{base_url.rstrip('/')}/project/{quote(project_id, safe='')}?{query}"


def _layout(*, title: str, urgency: str, banner: str, body: str, action_url: str, action_label: str) -> str:
    color = _URGENCY_COLORS[urgency]
    return f"""<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>{escape(title)}</title></head>
<body style="margin:0;padding:0;font-family:Arial,sans-serif;background-color:#f8fafc;">
  <div style="max-width:600px;margin:0 auto;background-color:#ffffff;">
    <div style="background-color:{color};padding:12px 30px;text-align:center;">
      <span style="color:#ffffff;font-weight:600;font-size:14px;">{escape(banner)}</span>
    </div>
    <div style="padding:32px 30px;">
      {body}
      <p style="text-align:center;margin:32px 0 0 0;">
        <a href="{escape(action_url)}" style="background-color:#4f46e5;color:#ffffff;padding:12px 24px;border-radius:6px;text-decoration:none;">{escape(action_label)}</a>
      </p>
    </div>
  </div>
</body>
</html>
"""


def render_subtask_reminder(context: SubtaskReminderContext) -> tuple[str, str]:
    """Return ``(subject, html)`` for a sub-task deadline reminder."""
    days = context.days_remaining
    urgency = urgency_label(days)
    description = (
        f'<p style="color:#4b5563;margin:8px 0;">{escape(context.subtask_description)}</p>'
        if context.subtask_description
        else ""
    )
    body = f"""<h2 style="color:#1f2937;margin:0 0 16px 0;">Hi {escape(context.user_name)},</h2>
      <p style="color:#4b5563;">This is a reminder about your upcoming sub-task deadline in <strong>{escape(context.project_name)}</strong>.</p>
      <div style="background-color:#f9fafb;border:1px solid #e5e7eb;border-radius:8px;padding:20px;">
        <h3 style="color:#1f2937;margin:0 0 8px 0;">{escape(context.subtask_title)}</h3>
        {description}
        <p style="margin:4px 0;"><strong>Task:</strong> {escape(context.main_task_title)}</p>
        <p style="margin:4px 0;"><strong>Deadline:</strong> {escape(context.deadline_text)}</p>
        <p style="margin:4px 0;"><strong>Project:</strong> {escape(context.project_name)}</p>
      </div>"""
    html_body = _layout(
        title=f"Sub-task Reminder - {context.subtask_title}",
        urgency=urgency,
        banner=f"{urgency} - {days} {_days_text(days)} remaining",
        body=body,
        action_url=_project_link(
            context.app_base_url,
            context.project_id,
            f"tab=tasks&subtask={quote(context.subtask_id, safe='')}",
        ),
        action_label="View Sub-task",
    )
    return subtask_reminder_subject(context.subtask_title, days), html_body


def render_event_reminder(context: EventReminderContext) -> tuple[str, str]:
    """Return ``(subject, html)`` for an event reminder."""
    days = context.days_remaining
    urgency = urgency_label(days, today_label=True)
    banner = f"{urgency} - happening today" if urgency == "TODAY" else f"{urgency} - in {days} {_days_text(days)}"
    description = (
        f'<p style="color:#4b5563;margin:8px 0;">{escape(context.event_description)}</p>'
        if context.event_description
        else ""
    )
    location = (
        f'<p style="margin:4px 0;"><strong>Location:</strong> {escape(context.location)}</p>'
        if context.location
        else ""
    )
    body = f"""<h2 style="color:#1f2937;margin:0 0 16px 0;">Upcoming event</h2>
      <p style="color:#4b5563;">An event in <strong>{escape(context.project_name)}</strong> is coming up.</p>
      <div style="background-color:#f9fafb;border:1px solid #e5e7eb;border-radius:8px;padding:20px;">
        <h3 style="color:#1f2937;margin:0 0 8px 0;">{escape(context.event_title)}</h3>
        {description}
        <p style="margin:4px 0;"><strong>When:</strong> {escape(context.starts_at_text)}</p>
        {location}
        <p style="margin:4px 0;"><strong>Project:</strong> {escape(context.project_name)}</p>
      </div>"""
    html_body = _layout(
        title=f"Event Reminder - {context.event_title}",
        urgency=urgency,
        banner=banner,
        body=body,
        action_url=_project_link(
            context.app_base_url,
            context.project_id,
            f"tab=events&event={quote(context.event_id, safe='')}",
        ),
        action_label="View Event",
    )
    return event_reminder_subject(context.event_title, days), html_body
