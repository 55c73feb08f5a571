"""
Notification channel adapters.

Each adapter delivers one alert summary to one user over one transport and
either returns True or raises DispatchFailure. Transports are external
collaborators: SMTP for email, the Twilio client for SMS and WhatsApp.
"""

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from functools import partial
from typing import Callable, Optional

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from config import Config
from exceptions import DispatchFailure
from models import Channel

logger = logging.getLogger(__name__)

ContactLookup = Callable[[str], dict]


class ChannelAdapter:
    """Base adapter: send(user_id, channel, summary) -> bool."""

    channel: Channel = None

    async def send(self, user_id: str, channel: Channel, summary: dict) -> bool:
        raise NotImplementedError


class InAppChannel(ChannelAdapter):
    """In-app delivery: the persisted notification record is the message."""

    channel = Channel.IN_APP

    async def send(self, user_id: str, channel: Channel, summary: dict) -> bool:
        logger.debug(f"In-app notification for {user_id}: {summary['alert_code']}")
        return True


class EmailChannel(ChannelAdapter):
    """Email delivery over SMTP."""

    channel = Channel.EMAIL

    def __init__(self, config: Config, contacts: ContactLookup, formatter):
        self.config = config.notifications
        self.contacts = contacts
        self.formatter = formatter

    async def send(self, user_id: str, channel: Channel, summary: dict) -> bool:
        if not self.config.smtp_host:
            raise DispatchFailure(channel.value, user_id, "SMTP not configured")
        address = self.contacts(user_id).get('email')
        if not address:
            raise DispatchFailure(channel.value, user_id, "no email address on file")

        message = EmailMessage()
        message['Subject'] = self.formatter.format_email_subject(summary)
        message['From'] = self.config.email_sender
        message['To'] = address
        message.set_content(self.formatter.format_alert_message(summary))

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            raise DispatchFailure(channel.value, user_id, str(e)) from e
        return True

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port,
                          timeout=self.config.dispatch_timeout) as smtp:
            smtp.starttls()
            if self.config.smtp_username:
                smtp.login(self.config.smtp_username, self.config.smtp_password)
            smtp.send_message(message)


class TwilioSmsChannel(ChannelAdapter):
    """SMS delivery through the Twilio Messages API."""

    channel = Channel.SMS

    def __init__(self, config: Config, contacts: ContactLookup, formatter,
                 client: Optional[TwilioClient] = None):
        self.config = config.notifications
        self.contacts = contacts
        self.formatter = formatter
        self._client = client

    @property
    def client(self) -> TwilioClient:
        if self._client is None:
            self._client = TwilioClient(
                self.config.twilio_account_sid,
                self.config.twilio_auth_token,
                http_client=TwilioHttpClient(timeout=self.config.dispatch_timeout)
            )
        return self._client

    def _sender(self) -> Optional[str]:
        return self.config.twilio_from_number

    def _address(self, number: str) -> str:
        return number

    async def send(self, user_id: str, channel: Channel, summary: dict) -> bool:
        sender = self._sender()
        if not all([self.config.twilio_account_sid, self.config.twilio_auth_token, sender]):
            raise DispatchFailure(channel.value, user_id, "Twilio credentials not configured")
        phone = self.contacts(user_id).get('phone')
        if not phone:
            raise DispatchFailure(channel.value, user_id, "no phone number on file")

        body = self.formatter.format_short_message(summary)
        loop = asyncio.get_running_loop()
        try:
            message = await loop.run_in_executor(
                None, partial(self.client.messages.create, body=body,
                              from_=self._address(sender), to=self._address(phone))
            )
        except TwilioRestException as e:
            raise DispatchFailure(channel.value, user_id, f"HTTP {e.status}: {e.msg}") from e
        except (TwilioException, OSError) as e:
            raise DispatchFailure(channel.value, user_id, str(e)) from e

        logger.debug(f"{channel.value} to {user_id} accepted: {message.sid}")
        return True


class TwilioWhatsAppChannel(TwilioSmsChannel):
    """WhatsApp delivery through the Twilio Messages API."""

    channel = Channel.WHATSAPP

    def _sender(self) -> Optional[str]:
        return self.config.twilio_whatsapp_number

    def _address(self, number: str) -> str:
        return number if number.startswith("whatsapp:") else f"whatsapp:{number}"
