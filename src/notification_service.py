"""
Notification service for the forest watch system.

Matches new or escalated alerts against subscriptions and fans out one
notification per (subscriber, channel), with message formatting for each
channel type.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from config import Config
from channels import (
    ChannelAdapter, EmailChannel, InAppChannel, TwilioSmsChannel, TwilioWhatsAppChannel
)
from database_manager import DatabaseManager
from exceptions import DispatchFailure
from models import Alert, Channel, DeliveryStatus, DispatchResult, Severity, Subscription

logger = logging.getLogger(__name__)


class NotificationFormatter:
    """Message formatting utilities for notifications."""

    SEVERITY_EMOJI = {
        Severity.CRITICAL: "🔴",
        Severity.HIGH: "🟠",
        Severity.MEDIUM: "🟡",
        Severity.LOW: "🟢",
    }

    def __init__(self, alert_base_url: str = ""):
        self.alert_base_url = alert_base_url.rstrip("/")

    def build_summary(self, alert: Alert, region_name: Optional[str] = None) -> dict:
        """Channel-independent alert summary handed to every adapter."""
        return {
            'alert_id': alert.id,
            'alert_code': alert.code,
            'severity': alert.severity,
            'region': region_name or alert.region_id,
            'area_hectares': alert.area_hectares,
            'confidence': alert.confidence,
            'ndvi_change': alert.ndvi_change,
            'latitude': alert.latitude,
            'longitude': alert.longitude,
            'detected_at': alert.detected_at,
            'alert_url': f"{self.alert_base_url}/{alert.id}",
        }

    def format_email_subject(self, summary: dict) -> str:
        return f"[{summary['severity'].value}] Deforestation alert {summary['alert_code']} - {summary['region']}"

    def format_alert_message(self, summary: dict) -> str:
        """Long form for email and in-app."""
        emoji = self.SEVERITY_EMOJI.get(summary['severity'], "🌳")
        return (f"{emoji} {summary['severity'].value} deforestation alert {summary['alert_code']}\n"
                f"Region: {summary['region']}\n"
                f"Affected area: {summary['area_hectares']:.2f} ha\n"
                f"Vegetation index change: {summary['ndvi_change']:+.2f}\n"
                f"Confidence: {summary['confidence']*100:.0f}%\n"
                f"Location: {summary['latitude']:.4f}, {summary['longitude']:.4f}\n"
                f"Detected: {summary['detected_at']:%Y-%m-%d %H:%M}\n"
                f"Details: {summary['alert_url']}")

    def format_short_message(self, summary: dict) -> str:
        """Short form for SMS and WhatsApp."""
        emoji = self.SEVERITY_EMOJI.get(summary['severity'], "🌳")
        return (f"{emoji} {summary['severity'].value} alert {summary['alert_code']}: "
                f"{summary['area_hectares']:.1f} ha vegetation loss in {summary['region']}. "
                f"{summary['alert_url']}")


class NotificationService:
    """
    Subscription matcher and best-effort multi-channel notifier.

    Every (subscriber, channel) pair is an independent task: one failing
    channel never stops the others. Notification records are idempotent per
    (user, alert, channel, severity).
    """

    def __init__(self, config: Config, database: DatabaseManager,
                 adapters: Optional[Dict[Channel, ChannelAdapter]] = None):
        self.config = config
        self.database = database
        self.formatter = NotificationFormatter(config.notifications.alert_base_url)
        self.adapters = adapters if adapters is not None else self._default_adapters()

    def _default_adapters(self) -> Dict[Channel, ChannelAdapter]:
        contacts = self.database.get_user_contact
        return {
            Channel.IN_APP: InAppChannel(),
            Channel.EMAIL: EmailChannel(self.config, contacts, self.formatter),
            Channel.SMS: TwilioSmsChannel(self.config, contacts, self.formatter),
            Channel.WHATSAPP: TwilioWhatsAppChannel(self.config, contacts, self.formatter),
        }

    def match_subscriptions(self, alert: Alert) -> List[Subscription]:
        """Active subscriptions covering the alert's region at or below its severity."""
        return [s for s in self.database.get_active_subscriptions() if s.matches(alert)]

    async def notify(self, alert: Alert, region_name: Optional[str] = None) -> List[DispatchResult]:
        """Notify every matching subscriber on every subscribed channel."""
        loop = asyncio.get_running_loop()
        subscriptions = await loop.run_in_executor(None, self.match_subscriptions, alert)
        summary = self.formatter.build_summary(alert, region_name)

        # A user with overlapping subscriptions still gets one message per channel
        targets = list(dict.fromkeys(
            (subscription.user_id, channel)
            for subscription in subscriptions
            for channel in subscription.channels
        ))
        if not targets:
            logger.info(f"Alert {alert.code}: no matching subscribers")
            return []

        results = await asyncio.gather(
            *(self._dispatch(user_id, channel, alert, summary) for user_id, channel in targets),
            return_exceptions=True
        )

        dispatch_results = []
        for (user_id, channel), result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error(f"Dispatch task for {user_id}/{channel.value} crashed: {result}", exc_info=result)
                result = DispatchResult(user_id=user_id, channel=channel, success=False, error=str(result))
            dispatch_results.append(result)

        sent = sum(1 for r in dispatch_results if r.success and not r.skipped)
        failed = sum(1 for r in dispatch_results if not r.success)
        logger.info(f"Alert {alert.code}: {sent} sent, {failed} failed, "
                    f"{len(dispatch_results) - sent - failed} already delivered")
        return dispatch_results

    async def _dispatch(self, user_id: str, channel: Channel, alert: Alert, summary: dict) -> DispatchResult:
        loop = asyncio.get_running_loop()
        notification, created = await loop.run_in_executor(
            None, self.database.create_notification_if_absent,
            user_id, alert.id, channel, alert.severity
        )

        # Only previously failed records are attempted again
        if not created and notification.status != DeliveryStatus.FAILED:
            return DispatchResult(user_id=user_id, channel=channel, success=True,
                                  notification_id=notification.id, skipped=True)

        adapter = self.adapters.get(channel)
        try:
            if adapter is None:
                raise DispatchFailure(channel.value, user_id, "no adapter configured")
            delivered = await asyncio.wait_for(
                adapter.send(user_id, channel, summary),
                timeout=self.config.notifications.dispatch_timeout
            )
            if not delivered:
                raise DispatchFailure(channel.value, user_id, "adapter reported failure")
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.error(f"Alert {alert.code}: {channel.value} dispatch to {user_id} failed: {reason}")
            await loop.run_in_executor(
                None, self.database.update_notification_status,
                notification.id, DeliveryStatus.FAILED, reason
            )
            return DispatchResult(user_id=user_id, channel=channel, success=False,
                                  notification_id=notification.id, error=reason)

        await loop.run_in_executor(
            None, self.database.update_notification_status, notification.id, DeliveryStatus.SENT, None
        )
        return DispatchResult(user_id=user_id, channel=channel, success=True,
                              notification_id=notification.id)
