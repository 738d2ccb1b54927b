"""
Notification Templates

HTML and plain text bodies for issue notifications and digests.
"""

from html import escape
from typing import Optional, Sequence

from bugnotify.models import QueuedNotification

ACTION_VERBS = {
    "created": "created",
    "updated": "updated",
    "deleted": "deleted",
    "commented": "commented on",
    "status_changed": "changed the status of",
    "assigned": "assigned",
}


# =============================================================================
# BASE TEMPLATE
# =============================================================================

BASE_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            line-height: 1.6;
            color: #1F2937;
            margin: 0;
            padding: 0;
            background-color: #F3F4F6;
        }}
        .container {{
            max-width: 600px;
            margin: 0 auto;
            padding: 20px;
        }}
        .header {{
            background: #2563EB;
            color: white;
            padding: 20px;
            border-radius: 8px 8px 0 0;
        }}
        .content {{
            background: #F9FAFB;
            padding: 20px;
            border-radius: 0 0 8px 8px;
        }}
        .changes {{
            background: #FFFFFF;
            padding: 12px;
            border-left: 4px solid #2563EB;
            margin: 12px 0;
        }}
        .item {{
            background: #FFFFFF;
            padding: 12px 16px;
            margin: 8px 0;
            border-left: 4px solid #2563EB;
            border-radius: 4px;
        }}
        .event-type {{
            display: inline-block;
            background: #E0E7FF;
            color: #3730A3;
            padding: 2px 8px;
            border-radius: 4px;
            font-size: 12px;
            font-weight: 500;
            margin-right: 8px;
        }}
        .button {{
            display: inline-block;
            background: #2563EB;
            color: white;
            padding: 12px 24px;
            text-decoration: none;
            border-radius: 6px;
            margin-top: 16px;
        }}
        .footer {{
            margin-top: 20px;
            font-size: 12px;
            color: #6B7280;
            text-align: center;
        }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h2 style="margin: 0;">{title}</h2>
            {subtitle}
        </div>
        <div class="content">
            {content}
            <div class="footer">
                <p>{footer}</p>
                <p>You can manage your notification preferences in your profile settings.</p>
            </div>
        </div>
    </div>
</body>
</html>
"""


# =============================================================================
# ISSUE NOTIFICATIONS
# =============================================================================

def build_issue_notification(
    issue_id: int,
    issue_summary: str,
    action: str,
    actor_name: str,
    issue_url: str,
    app_name: str,
    changes: Optional[str] = None,
) -> tuple[str, str, str]:
    """
    Build an issue notification.

    Returns: (subject, html_body, plain_text_body)
    """
    verb = ACTION_VERBS.get(action, action)
    subject = f"Issue #{issue_id}: {issue_summary}"

    changes_html = ""
    if changes:
        changes_html = f'<div class="changes"><strong>Changes:</strong> {escape(changes)}</div>'

    content = f"""
            <p><strong>{escape(actor_name)}</strong> {verb} issue <strong>#{issue_id}</strong></p>
            <p style="font-size: 18px; margin: 16px 0;"><strong>{escape(issue_summary)}</strong></p>
            {changes_html}
            <a href="{escape(issue_url)}" class="button">View Issue #{issue_id}</a>
    """
    html_body = BASE_HTML_TEMPLATE.format(
        title="Issue Notification",
        subtitle="",
        content=content,
        footer=f"This is an automated notification from {escape(app_name)}.",
    ).strip()

    plain_text = f"{actor_name} {verb} issue #{issue_id}: {issue_summary}"
    if changes:
        plain_text += f"\n{changes}"
    plain_text += f"\n{issue_url}"

    return subject, html_body, plain_text


# =============================================================================
# DIGEST
# =============================================================================

def build_digest_message(
    entries: Sequence[QueuedNotification],
    app_name: str,
) -> tuple[str, str, str]:
    """
    Build a digest with one section per queued entry, oldest first.

    Returns: (subject, html_body, plain_text_body)
    """
    ordered = sorted(entries, key=lambda e: (e.created_at, e.id))
    count = len(ordered)
    subject = f"Notification Digest - {count} update{'s' if count != 1 else ''}"

    items_html = "".join(
        f"""
            <div class="item">
                <span class="event-type">{escape(entry.event_type)}</span>
                <span>{escape(entry.subject)}</span>
            </div>"""
        for entry in ordered
    )
    html_body = BASE_HTML_TEMPLATE.format(
        title="Notification Digest",
        subtitle=f'<p style="margin: 8px 0 0 0;">{count} updates from your projects</p>',
        content=items_html,
        footer=f"This is a notification digest from {escape(app_name)}.",
    ).strip()

    lines = [
        f"- [{entry.event_type}] {entry.subject}"
        for entry in ordered
    ]
    plain_text = "\n".join([subject, "", *lines])

    return subject, html_body, plain_text
