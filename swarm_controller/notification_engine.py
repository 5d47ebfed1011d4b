"""
Notification Engine - Operator Notifications for Swarm Events

This module provides a centralized notification system that:
1. Builds notifications for run and health events from templates
2. Routes notifications to delivery channels (email, log)
3. Applies rate limiting per recipient
4. Keeps a JSONL audit log of every notification

IMPORTANT:
- Sending is fire-and-forget: delivery failures are logged, never raised
- No credentials or tokens in notification bodies
"""

import html
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger("notification_engine")

RATE_LIMIT_WINDOW = 60  # seconds
RATE_LIMIT_MAX = 10  # max notifications per window

RESEND_URL = "https://api.resend.com/emails"
SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class NotificationType(str, Enum):
    # Runs
    PLAN_READY = "plan_ready"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    ROLLBACK = "rollback"
    FIX_LOOP = "fix_loop"

    # System
    HEALTH_CRITICAL = "health_critical"
    HEALTH_DEGRADED = "health_degraded"
    GENERIC = "generic"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


@dataclass
class Notification:
    """Represents a notification to be sent."""
    subject: str
    body: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    notification_type: NotificationType = NotificationType.GENERIC
    run_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Stamped by the engine on send; notifications built inside workflows leave it empty
    created_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    delivery_channel: Optional[str] = None
    delivery_error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "type": self.notification_type.value,
            "subject": self.subject,
            "body": self.body,
            "priority": self.priority.value,
            "run_id": self.run_id,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "delivery_channel": self.delivery_channel,
            "delivery_error": self.delivery_error,
        }


class NotificationTemplates:
    """Pre-defined notification templates."""

    @staticmethod
    def plan_ready(run_id: str, title: str, plan_summary: str, effort: str) -> Notification:
        return Notification(
            notification_type=NotificationType.PLAN_READY,
            subject=f"Plan ready for approval: {title}",
            body=(
                f"Run {run_id} is waiting for plan approval.\n\n"
                f"Proposed changes:\n{plan_summary}\n\n"
                f"Estimated effort: {effort or 'unknown'}\n\n"
                f"Approve or cancel within 24 hours."
            ),
            priority=NotificationPriority.HIGH,
            run_id=run_id,
        )

    @staticmethod
    def task_completed(run_id: str, title: str, pr_url: Optional[str], status: str) -> Notification:
        return Notification(
            notification_type=NotificationType.TASK_COMPLETED,
            subject=f"Task {status}: {title}",
            body=f"Run {run_id} finished with status {status}.\nPR: {pr_url or 'n/a'}",
            priority=NotificationPriority.NORMAL,
            run_id=run_id,
        )

    @staticmethod
    def task_failed(run_id: str, title: str, error: str) -> Notification:
        return Notification(
            notification_type=NotificationType.TASK_FAILED,
            subject=f"Task failed: {title}",
            body=f"Run {run_id} failed.\n\nError:\n{error[:2000]}",
            priority=NotificationPriority.HIGH,
            run_id=run_id,
            metadata={"error": error[:500]},
        )

    @staticmethod
    def rollback(run_id: str, title: str, commit_sha: str, error: str,
                 rollback_ok: bool, fix_run_id: Optional[str]) -> Notification:
        outcome = "rolled back" if rollback_ok else "ROLLBACK FAILED"
        fix_line = f"\nFix run started: {fix_run_id}" if fix_run_id else ""
        return Notification(
            notification_type=NotificationType.ROLLBACK,
            subject=f"Deployment {outcome}: {title}",
            body=(
                f"Run {run_id} failed after deployment.\n"
                f"Commit: {commit_sha}\n\nError:\n{error[:2000]}{fix_line}"
            ),
            priority=NotificationPriority.HIGH,
            run_id=run_id,
            metadata={"commit_sha": commit_sha, "rollback_ok": rollback_ok},
        )

    @staticmethod
    def fix_loop(run_id: str, original_task_id: str, depth: int, error: str) -> Notification:
        return Notification(
            notification_type=NotificationType.FIX_LOOP,
            subject=f"Fix loop detected for task {original_task_id}",
            body=(
                f"Task {original_task_id} has already spawned {depth} fix attempt(s) and is "
                f"still failing. Automatic fixing stopped; manual intervention required.\n\n"
                f"Last run: {run_id}\nError:\n{error[:2000]}"
            ),
            priority=NotificationPriority.HIGH,
            run_id=run_id,
            metadata={"original_task_id": original_task_id, "chain_depth": depth},
        )

    @staticmethod
    def health(status: str, actions: List[str], escalated: bool) -> Notification:
        critical = status == "critical"
        return Notification(
            notification_type=NotificationType.HEALTH_CRITICAL if critical else NotificationType.HEALTH_DEGRADED,
            subject=f"Swarm health {status.upper()}" + (" (escalated)" if escalated else ""),
            body="Health check actions:\n" + "\n".join(f"- {a}" for a in actions),
            priority=NotificationPriority.HIGH if critical else NotificationPriority.NORMAL,
            metadata={"status": status, "escalated": escalated},
        )


ChannelHandler = Callable[[Notification], Awaitable[bool]]


class NotificationEngine:
    """
    Central notification engine for the swarm.

    Features:
    - Multiple delivery channels, tried in registration order
    - Rate limiting per recipient
    - Delivery tracking and logging
    """

    def __init__(self, log_dir: Optional[Path] = None, clock: Callable[[], datetime] = datetime.utcnow):
        self._channels: Dict[str, ChannelHandler] = {}
        self._rate_limits: Dict[str, List[datetime]] = {}
        self._log_dir = log_dir
        self._clock = clock
        if self._log_dir is not None:
            self._log_dir.mkdir(parents=True, exist_ok=True)

    def register_channel(self, name: str, handler: ChannelHandler):
        """Register a notification delivery channel."""
        self._channels[name] = handler
        logger.info(f"Registered notification channel: {name}")

    def _check_rate_limit(self, recipient: str) -> bool:
        now = self._clock()
        window_start = now - timedelta(seconds=RATE_LIMIT_WINDOW)
        recent = [t for t in self._rate_limits.get(recipient, []) if t > window_start]
        if len(recent) >= RATE_LIMIT_MAX:
            self._rate_limits[recipient] = recent
            return False
        recent.append(now)
        self._rate_limits[recipient] = recent
        return True

    def _log_notification(self, notification: Notification):
        if self._log_dir is None:
            return
        log_file = self._log_dir / f"{self._clock().strftime('%Y-%m-%d')}.jsonl"
        try:
            with open(log_file, "a") as f:
                f.write(json.dumps(notification.to_dict()) + "\n")
        except OSError as e:
            logger.error(f"Failed to log notification: {e}")

    async def send(self, notification: Notification, recipient: str = "default") -> bool:
        """
        Deliver through the first channel that accepts the notification.

        Returns True if delivered. Never raises.
        """
        if notification.created_at is None:
            notification.created_at = self._clock()
        if not self._check_rate_limit(recipient):
            logger.warning(f"Rate limit exceeded for {recipient}, dropping '{notification.subject}'")
            notification.delivery_error = "Rate limit exceeded"
            self._log_notification(notification)
            return False

        delivered = False
        for name, handler in self._channels.items():
            try:
                if await handler(notification):
                    notification.delivered_at = self._clock()
                    notification.delivery_channel = name
                    delivered = True
                    break
            except Exception as e:
                logger.error(f"Channel {name} delivery failed: {e}")
                notification.delivery_error = str(e)

        self._log_notification(notification)
        return delivered

    async def send_notification(
        self,
        subject: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.NORMAL,
    ) -> bool:
        return await self.send(Notification(subject=subject, body=body, priority=NotificationPriority(priority)))

    def get_recent_notifications(self, limit: int = 50) -> List[Dict]:
        if self._log_dir is None:
            return []
        log_file = self._log_dir / f"{self._clock().strftime('%Y-%m-%d')}.jsonl"
        notifications = []
        if log_file.exists():
            with open(log_file, "r") as f:
                for line in f:
                    try:
                        notifications.append(json.loads(line))
                    except json.JSONDecodeError:
                        continue
        return notifications[-limit:]


# -----------------------------------------------------------------------------
# Channels
# -----------------------------------------------------------------------------
async def log_channel(notification: Notification) -> bool:
    """Used when no email provider is configured."""
    logger.info(
        f"Notification ({notification.priority.value}): {notification.subject} - "
        f"{notification.body[:200]}"
    )
    return True


class EmailChannel:
    """Email delivery through the Resend or SendGrid HTTP APIs."""

    def __init__(
        self,
        provider: str,
        api_key: str,
        sender: str,
        recipient: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.provider = provider
        self._api_key = api_key
        self._sender = sender
        self._recipient = recipient
        self._transport = transport

    def _request(self, notification: Notification):
        escaped = html.escape(notification.body)
        headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}
        if self.provider == "sendgrid":
            return SENDGRID_URL, headers, {
                "personalizations": [{"to": [{"email": self._recipient}]}],
                "from": {"email": self._sender},
                "subject": notification.subject,
                "content": [{"type": "text/html", "value": f"<pre>{escaped}</pre>"}],
            }
        return RESEND_URL, headers, {
            "from": self._sender,
            "to": self._recipient,
            "subject": notification.subject,
            "html": f'<pre style="font-family: monospace; white-space: pre-wrap;">{escaped}</pre>',
        }

    async def __call__(self, notification: Notification) -> bool:
        url, headers, payload = self._request(notification)
        async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
            response = await client.post(url, headers=headers, json=payload)
        if response.status_code >= 400:
            logger.error(f"Email via {self.provider} failed: {response.status_code} {response.text[:200]}")
            return False
        logger.info(f"Email sent via {self.provider}: {notification.subject}")
        return True


def create_notification_engine(settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> NotificationEngine:
    """Engine with the email channel when configured, logging otherwise."""
    engine = NotificationEngine(log_dir=settings.notification_log_dir)
    if settings.email_api_key and settings.email_to:
        engine.register_channel("email", EmailChannel(
            provider=settings.email_provider,
            api_key=settings.email_api_key,
            sender=settings.email_from,
            recipient=settings.email_to,
            transport=transport,
        ))
    else:
        logger.info("No email provider configured, notifications will only be logged")
        engine.register_channel("log", log_channel)
    return engine
