"""
Task notifications over WebSocket and email.

The dispatcher runs after the triggering mutation has been committed. Delivery
is best-effort: every failure is caught and logged, and never reaches the
caller of the task operation.
"""

import asyncio
import json
import logging
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from .config import Settings
from .models import NotificationType, Principal, Task, UserRecord, total_hours_spent

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    WebSocket connection registry with parallel broadcasting.

    Handles connection lifecycle, parallel message delivery to all clients,
    and cleanup of connections that fail on send.
    """

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self._connection_lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        """Accept new WebSocket connection and add to active connections."""
        await websocket.accept()
        async with self._connection_lock:
            self.active_connections.add(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket):
        async with self._connection_lock:
            self.active_connections.discard(websocket)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, event_data: Dict[str, Any]) -> int:
        """
        Send an event to every connected client in parallel.

        Args:
            event_data: Event payload (JSON serialized)

        Returns:
            Number of clients the event was delivered to
        """
        if not self.active_connections:
            logger.debug("No active connections for broadcast")
            return 0

        message = json.dumps(event_data, default=str)

        async with self._connection_lock:
            send_tasks = [
                self._send_safe(websocket, message)
                for websocket in self.active_connections.copy()
            ]

        results = await asyncio.gather(*send_tasks, return_exceptions=True)
        delivered = sum(1 for result in results if result is True)
        logger.info(f"Broadcast completed: {delivered}/{len(send_tasks)} successful")
        return delivered

    async def _send_safe(self, websocket: WebSocket, message: str) -> bool:
        """Send to one connection, dropping it from the registry on failure."""
        try:
            await websocket.send_text(message)
            return True
        except Exception as e:
            logger.warning(f"Failed to send message to WebSocket: {e}")
            await self.disconnect(websocket)
            return False

    def get_connection_count(self) -> int:
        return len(self.active_connections)


_EMAIL_TEMPLATES = {
    NotificationType.TASK_ASSIGNED: (
        "New task assigned: {title}",
        "Hello {recipient},\n\n{actor} assigned you a new task.\n\n"
        "Title: {title}\nPriority: {priority}\nDue: {due}\n\n{description}\n",
    ),
    NotificationType.TASK_COMPLETED: (
        "Task completed: {title}",
        "Hello {recipient},\n\n{actor} completed the task \"{title}\".\n\n"
        "Completed: {completed}\nTime spent: {hours} hours\n",
    ),
}


class EmailSender:
    """SMTP email delivery, executed in a worker thread."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def enabled(self) -> bool:
        return self.settings.email_enabled

    def _send_sync(self, to_address: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.settings.smtp_from
        message["To"] = to_address
        message["Subject"] = subject
        message.set_content(body)

        with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=10) as smtp:
            if self.settings.smtp_starttls:
                smtp.starttls()
            if self.settings.smtp_username:
                smtp.login(self.settings.smtp_username, self.settings.smtp_password or "")
            smtp.send_message(message)

    async def send(self, to_address: str, subject: str, body: str) -> bool:
        """
        Send one email.

        Returns:
            False when email is not configured; SMTP errors propagate
        """
        if not self.enabled:
            logger.debug(f"Email disabled, not sending '{subject}' to {to_address}")
            return False
        await asyncio.to_thread(self._send_sync, to_address, subject, body)
        logger.info(f"Email sent to {to_address}: {subject}")
        return True


def _display_name(user: Optional[UserRecord], fallback: str) -> str:
    if user is None:
        return fallback
    name = f"{user.first_name} {user.last_name}".strip()
    return name or user.email


class NotificationDispatcher:
    """
    Delivers task notifications to users.

    Each notification is broadcast as a ``notification`` event on the
    WebSocket stream, carrying {recipientId, senderId, taskId, type, action}.
    Assignment and completion additionally send an email.
    """

    def __init__(self, connection_manager: ConnectionManager,
                 email_sender: Optional[EmailSender] = None,
                 user_lookup=None):
        """
        Args:
            connection_manager: WebSocket broadcaster
            email_sender: SMTP side-channel, None to disable email
            user_lookup: Object with ``get_user(user_id)`` for names and addresses
        """
        self.connection_manager = connection_manager
        self.email_sender = email_sender
        self.user_lookup = user_lookup

    async def notify(self, recipient_id: str, sender_id: str, task_id: str,
                     notification_type: NotificationType, action: str) -> bool:
        """Broadcast a notification event; returns False if delivery failed."""
        try:
            event = {
                "type": "notification",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "notification": {
                    "recipientId": recipient_id,
                    "senderId": sender_id,
                    "taskId": task_id,
                    "type": notification_type.value,
                    "action": action,
                },
            }
            await self.connection_manager.broadcast(event)
            return True
        except Exception as e:
            logger.warning(
                f"Failed to deliver {notification_type.value} notification for task {task_id} "
                f"to {recipient_id}: {e}"
            )
            return False

    async def send_email(self, address: str, task: Task, actor: Principal,
                         notification_type: NotificationType) -> bool:
        """Email side-channel; returns False when not sent."""
        if self.email_sender is None or notification_type not in _EMAIL_TEMPLATES:
            return False
        try:
            recipient = self._lookup_by_email(task, address)
            actor_user = self._lookup(actor.id)
            subject_template, body_template = _EMAIL_TEMPLATES[notification_type]
            values = {
                "title": task.title,
                "description": task.description,
                "priority": task.priority.value,
                "due": task.due_date.strftime("%Y-%m-%d %H:%M UTC"),
                "completed": (
                    task.completed_date.strftime("%Y-%m-%d %H:%M UTC")
                    if task.completed_date else "-"
                ),
                "hours": total_hours_spent(task),
                "recipient": _display_name(recipient, address),
                "actor": _display_name(actor_user, actor.id),
            }
            return await self.email_sender.send(
                address, subject_template.format(**values), body_template.format(**values)
            )
        except Exception as e:
            logger.warning(
                f"Failed to send {notification_type.value} email for task {task.id} "
                f"to {address}: {e}"
            )
            return False

    async def task_assigned(self, task: Task, actor: Principal) -> None:
        await self.notify(
            task.assigned_to, actor.id, task.id, NotificationType.TASK_ASSIGNED, "assigned"
        )
        await self._email_user(task.assigned_to, task, actor, NotificationType.TASK_ASSIGNED)

    async def task_started(self, task: Task, actor: Principal) -> None:
        await self.notify(
            task.assigned_by, actor.id, task.id, NotificationType.TASK_STARTED, "started"
        )

    async def task_completed(self, task: Task, actor: Principal) -> None:
        await self.notify(
            task.assigned_by, actor.id, task.id, NotificationType.TASK_COMPLETED, "completed"
        )
        await self._email_user(task.assigned_by, task, actor, NotificationType.TASK_COMPLETED)

    async def _email_user(self, user_id: str, task: Task, actor: Principal,
                          notification_type: NotificationType) -> None:
        try:
            user = self._lookup(user_id)
        except Exception as e:
            logger.warning(f"Failed to resolve email recipient {user_id}: {e}")
            return
        if user is None or not user.email:
            logger.warning(f"No email address for user {user_id}, skipping {notification_type.value} email")
            return
        await self.send_email(user.email, task, actor, notification_type)

    def _lookup(self, user_id: str) -> Optional[UserRecord]:
        if self.user_lookup is None:
            return None
        return self.user_lookup.get_user(user_id)

    def _lookup_by_email(self, task: Task, address: str) -> Optional[UserRecord]:
        for user_id in (task.assigned_to, task.assigned_by):
            user = self._lookup(user_id)
            if user is not None and user.email == address:
                return user
        return None
