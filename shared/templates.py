"""
Notification message templates.

Operator alerts are rendered twice: a Markdown body for the push service and
an HTML body for email. Both use Python string formatting with {variable}
placeholders.

Design decisions:
- One template per notification type, each with push and email variants
- Times are shown in the operator's timezone (UTC+8)
- Values substituted into HTML are escaped; the push body is sent as-is
"""

import html
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from shared.models import OrderKind, OrderSummary, format_amount

OPERATOR_TIMEZONE = timezone(timedelta(hours=8), "UTC+8")


class NotificationType(str, Enum):
    """Operator notification types."""
    ORDER_CREATED = "order_created"
    ORDER_PAID = "order_paid"
    SUBSCRIPTION_PAID = "subscription_paid"


@dataclass
class NotificationTemplate:
    """A notification template with push (Markdown) and email (HTML) variants."""
    notification_type: NotificationType
    subject: str
    push_body: str
    email_body: str

    def render_push(self, **kwargs) -> tuple[str, str]:
        """Returns (title, markdown body)."""
        return self.subject.format(**kwargs), self.push_body.format(**kwargs)

    def render_email(self, **kwargs) -> tuple[str, str]:
        """Returns (subject, html body)."""
        escaped = {k: html.escape(v) if isinstance(v, str) else v for k, v in kwargs.items()}
        return self.subject.format(**kwargs), self.email_body.format(**escaped)


# =============================================================================
# Template Definitions
# =============================================================================

TEMPLATES: dict[NotificationType, NotificationTemplate] = {

    NotificationType.ORDER_CREATED: NotificationTemplate(
        notification_type=NotificationType.ORDER_CREATED,
        subject="[New order] {order_id}",
        push_body="""Order: {order_id}
Item: {title}
Amount: {amount} USDT
Time: {time}""",
        email_body="""<h3>New order</h3>
<p><b>Order:</b> {order_id}</p>
<p><b>Item:</b> {title}</p>
<p><b>Amount:</b> {amount} USDT</p>
<p><b>Time:</b> {time}</p>
""",
    ),

    NotificationType.ORDER_PAID: NotificationTemplate(
        notification_type=NotificationType.ORDER_PAID,
        subject="[Paid] {order_id}",
        push_body="""Order: {order_id}
Item: {title}
Amount: {amount} USDT
Status: paid
Time: {time}""",
        email_body="""<h3>Payment received</h3>
<p><b>Order:</b> {order_id}</p>
<p><b>Item:</b> {title}</p>
<p><b>Amount:</b> {amount} USDT</p>
<p><b>Status:</b> <span style="color:green">paid</span></p>
<p><b>Time:</b> {time}</p>
""",
    ),

    NotificationType.SUBSCRIPTION_PAID: NotificationTemplate(
        notification_type=NotificationType.SUBSCRIPTION_PAID,
        subject="[Forwarding] Subscription paid {order_id}",
        push_body="""## Order

- **Order**: {order_id}
- **Amount**: {amount} USDT
- **Paid at**: {time}

## Configuration

- **Source channel**: {source_channel}
- **Target channel**: {target_channel}
- **Text replacements**:
{replaces}
- **Keyword filter**: {keywords}
- **Contact**: {contact}

---
Configure the forwarding bot to activate the service.""",
        email_body="""<h3>Forwarding subscription paid</h3>
<p><b>Order:</b> {order_id}</p>
<p><b>Amount:</b> {amount} USDT</p>
<p><b>Paid at:</b> {time}</p>
<p><b>Source channel:</b> {source_channel}</p>
<p><b>Target channel:</b> {target_channel}</p>
<p><b>Text replacements:</b><br><pre>{replaces}</pre></p>
<p><b>Keyword filter:</b> {keywords}</p>
<p><b>Contact:</b> {contact}</p>
""",
    ),
}


# =============================================================================
# Template Access Functions
# =============================================================================

def get_template(notification_type: NotificationType) -> Optional[NotificationTemplate]:
    """Get a template by notification type."""
    return TEMPLATES.get(notification_type)


def paid_notification_type(summary: OrderSummary) -> NotificationType:
    if summary.kind == OrderKind.SUBSCRIPTION:
        return NotificationType.SUBSCRIPTION_PAID
    return NotificationType.ORDER_PAID


def build_context(summary: OrderSummary, now: Optional[datetime] = None) -> dict[str, str]:
    """Flatten an order summary into template variables."""
    now = now or datetime.now(timezone.utc)
    context = {
        "order_id": summary.order_id,
        "title": summary.title or "unknown",
        "amount": format_amount(summary.amount),
        "time": now.astimezone(OPERATOR_TIMEZONE).strftime("%Y-%m-%d %H:%M:%S"),
    }
    sub = summary.subscription
    if sub is not None:
        contacts = [c for c in (sub.telegram_id, sub.email) if c]
        context.update(
            source_channel=sub.source_channel,
            target_channel=sub.target_channel,
            replaces=sub.describe_replaces(separator="\n"),
            keywords=sub.keywords or "none",
            contact=", ".join(contacts) or "none",
        )
    return context


def render_notification(
    notification_type: NotificationType,
    channel: str,
    **context
) -> tuple[str, str]:
    """
    Render a notification for a specific transport.

    Args:
        notification_type: The type of notification
        channel: "push" or "email"
        **context: Variables to substitute in the template

    Returns:
        (subject, body)

    Raises:
        ValueError: If template not found or channel invalid
    """
    template = get_template(notification_type)
    if not template:
        raise ValueError(f"No template found for notification type: {notification_type}")

    if channel == "push":
        return template.render_push(**context)
    elif channel == "email":
        return template.render_email(**context)
    else:
        raise ValueError(f"Unknown channel: {channel}")
