"""
Dispatch Engine

Fans a rendered message out to every channel each recipient can receive on,
waits for all deliveries to settle, and hands one audit entry per attempt to
the background audit writer.

A failing channel never aborts or delays its siblings: every task catches
its own failure and turns it into a failed audit entry.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from bugnotify.audit.models import DeliveryStatus
from bugnotify.audit.services import AuditWriter, EmailAuditEntry
from bugnotify.errors import SubscriptionGoneError
from bugnotify.models import NotificationChannel

from .channels import ChannelMessage, ChannelTransport, PushTarget

logger = logging.getLogger(__name__)


@dataclass
class DispatchTarget:
    """A recipient's delivery capabilities for one dispatch."""
    user_id: int
    email: Optional[str] = None
    pushover: bool = False
    rocketchat: bool = False
    teams: bool = False
    webpush: List[PushTarget] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.email or self.pushover or self.rocketchat or self.teams or self.webpush)


@dataclass
class DeliveryOutcome:
    user_id: int
    channel: str
    recipient: str
    success: bool
    error: str = ""
    message_id: Optional[str] = None
    expired: bool = False


@dataclass
class DispatchReport:
    """Settled result of one dispatch call."""
    outcomes: List[DeliveryOutcome] = field(default_factory=list)
    delivered_subscriptions: List[int] = field(default_factory=list)
    expired_subscriptions: List[int] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    @property
    def any_success(self) -> bool:
        return any(o.success for o in self.outcomes)

    def channels_for(self, user_id: int) -> List[str]:
        """Channels that delivered successfully to a user, in first-seen order."""
        channels: List[str] = []
        for outcome in self.outcomes:
            if outcome.user_id == user_id and outcome.success and outcome.channel not in channels:
                channels.append(outcome.channel)
        return channels


@dataclass
class _DeliveryTask:
    user_id: int
    channel: NotificationChannel
    transport: ChannelTransport
    target: Any
    recipient: str


class Dispatcher:
    """
    Multi-channel fan-out sender.

    Usage:
        dispatcher = Dispatcher(transports, audit_writer, timeout=30)
        report = await dispatcher.dispatch(targets, subject, text, html, bug_id=42)
    """

    def __init__(
        self,
        transports: Mapping[str, ChannelTransport],
        audit_writer: Optional[AuditWriter] = None,
        timeout: Optional[float] = 30.0,
    ):
        self.transports: Dict[str, ChannelTransport] = dict(transports)
        self.audit_writer = audit_writer
        self.timeout = timeout

    def _transport(self, channel: NotificationChannel) -> Optional[ChannelTransport]:
        return self.transports.get(channel.value)

    def _build_tasks(self, targets: Sequence[DispatchTarget]) -> List[_DeliveryTask]:
        tasks: List[_DeliveryTask] = []

        for target in targets:
            transport = self._transport(NotificationChannel.EMAIL)
            if target.email and transport:
                tasks.append(_DeliveryTask(
                    target.user_id, NotificationChannel.EMAIL, transport, target.email, target.email
                ))

            for wanted, channel in (
                (target.pushover, NotificationChannel.PUSHOVER),
                (target.rocketchat, NotificationChannel.ROCKETCHAT),
                (target.teams, NotificationChannel.TEAMS),
            ):
                transport = self._transport(channel)
                if wanted and transport:
                    tasks.append(_DeliveryTask(
                        target.user_id, channel, transport, None, channel.value
                    ))

            transport = self._transport(NotificationChannel.WEBPUSH)
            if transport:
                for subscription in target.webpush:
                    tasks.append(_DeliveryTask(
                        target.user_id,
                        NotificationChannel.WEBPUSH,
                        transport,
                        subscription,
                        subscription.endpoint,
                    ))

        return tasks

    async def _deliver(self, task: _DeliveryTask, message: ChannelMessage) -> DeliveryOutcome:
        """Run one channel call; every failure ends here as a failed outcome."""
        try:
            send = task.transport.send(task.target, message)
            if self.timeout:
                message_id = await asyncio.wait_for(send, timeout=self.timeout)
            else:
                message_id = await send
        except asyncio.TimeoutError:
            error = f"Timed out after {self.timeout:g}s"
            expired = False
        except Exception as e:
            error = str(e) or e.__class__.__name__
            expired = isinstance(e, SubscriptionGoneError)
        else:
            return DeliveryOutcome(
                task.user_id, task.channel.value, task.recipient, True,
                message_id=str(message_id) if message_id is not None else None,
            )

        logger.warning(
            f"{task.channel.value} delivery to user {task.user_id} ({task.recipient}) failed: {error}"
        )
        return DeliveryOutcome(
            task.user_id, task.channel.value, task.recipient, False, error, expired=expired
        )

    async def dispatch(
        self,
        targets: Sequence[DispatchTarget],
        subject: str,
        text: str,
        html: Optional[str] = None,
        bug_id: Optional[int] = None,
        url: Optional[str] = None,
    ) -> DispatchReport:
        """
        Deliver to every target on every capable channel.

        Never raises for delivery failures. Audit entries are queued after
        all deliveries settle and written in the background.
        """
        message = ChannelMessage(subject=subject, text=text, html=html, url=url, bug_id=bug_id)
        tasks = self._build_tasks(targets)
        if not tasks:
            logger.debug(f"No deliverable channels for {len(targets)} targets")
            return DispatchReport()

        outcomes = await asyncio.gather(*(self._deliver(task, message) for task in tasks))

        report = DispatchReport(outcomes=list(outcomes))
        for task, outcome in zip(tasks, outcomes):
            if not isinstance(task.target, PushTarget):
                continue
            if outcome.success:
                report.delivered_subscriptions.append(task.target.subscription_id)
            elif outcome.expired:
                report.expired_subscriptions.append(task.target.subscription_id)

        if self.audit_writer is not None:
            await self.audit_writer.submit([
                EmailAuditEntry(
                    bug_id=bug_id or 0,
                    user_id=outcome.user_id,
                    recipient=outcome.recipient,
                    subject=subject,
                    channel=outcome.channel,
                    status=DeliveryStatus.SUCCESS if outcome.success else DeliveryStatus.FAILED,
                    error_message=(outcome.message_id or "") if outcome.success else outcome.error,
                )
                for outcome in outcomes
            ])

        logger.info(
            f"Dispatched '{subject}' to {len(targets)} recipients: "
            f"{report.succeeded} delivered, {report.failed} failed"
        )
        return report
