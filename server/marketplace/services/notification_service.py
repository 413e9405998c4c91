"""SMS and email delivery plus the message formatting helpers around them."""

import asyncio
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import httpx
import resend
from email_validator import EmailNotValidError
from email_validator import validate_email as _validate_email_address
from resend.exceptions import ResendError

from ..backend import Backend
from ..core.exceptions import (
    BackendError,
    NotificationDeliveryError,
    ProblemDetailsException,
    RateLimitError,
    ValidationError,
)
from ..core.observability import MetricsCollector

logger = logging.getLogger(__name__)

GSM7_SINGLE_SEGMENT = 160
GSM7_CONCAT_SEGMENT = 153
UCS2_SINGLE_SEGMENT = 70
UCS2_CONCAT_SEGMENT = 67
SMS_COST_PER_SEGMENT = Decimal("0.0075")

E164_PATTERN = re.compile(r"\+?[1-9]\d{1,14}")
TEMPLATE_VARIABLE = re.compile(r"\{\{(\w+)\}\}")
NON_DIGIT = re.compile(r"\D")

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


# Phone numbers

def format_phone_number(phone: str, country_code: str = "+1") -> str:
    """Strip formatting; numbers without a leading ``+`` get ``country_code``."""
    digits = NON_DIGIT.sub("", phone)
    if not phone.startswith("+"):
        return f"{country_code}{digits}"
    return f"+{digits}"


def validate_phone_number(phone: str) -> bool:
    digits = NON_DIGIT.sub("", phone)
    return E164_PATTERN.fullmatch(f"+{digits}") is not None


# SMS segments

def _is_unicode(message: str) -> bool:
    return any(ord(ch) > 0x7F for ch in message)


def message_length(message: str) -> int:
    """Length in UTF-16 code units, which is how carriers count UCS-2 text."""
    return len(message.encode("utf-16-le")) // 2


def calculate_sms_segments(message: str) -> int:
    length = message_length(message)
    if _is_unicode(message):
        single, concat = UCS2_SINGLE_SEGMENT, UCS2_CONCAT_SEGMENT
    else:
        single, concat = GSM7_SINGLE_SEGMENT, GSM7_CONCAT_SEGMENT
    if length <= single:
        return 1
    return -(-length // concat)


def calculate_sms_cost(segments: int, price_per_segment: Decimal = SMS_COST_PER_SEGMENT) -> Decimal:
    return Decimal(segments) * Decimal(price_per_segment)


@dataclass(frozen=True)
class SmsCharacterInfo:
    length: int
    segments: int
    encoding: str
    max_length: int
    remaining: int


def sms_character_info(message: str) -> SmsCharacterInfo:
    """Encoding, segment count and the characters left before another segment is needed."""
    length = message_length(message)
    segments = calculate_sms_segments(message)

    if _is_unicode(message):
        encoding = "UCS-2"
        max_length = UCS2_SINGLE_SEGMENT if segments == 1 else segments * UCS2_CONCAT_SEGMENT
    else:
        encoding = "GSM-7"
        max_length = GSM7_SINGLE_SEGMENT if segments == 1 else segments * GSM7_CONCAT_SEGMENT

    return SmsCharacterInfo(
        length=length,
        segments=segments,
        encoding=encoding,
        max_length=max_length,
        remaining=max_length - length,
    )


# Templates and addresses

def extract_template_variables(text: str) -> list[str]:
    """Names of ``{{variable}}`` placeholders in order of first appearance."""
    seen: list[str] = []
    for name in TEMPLATE_VARIABLE.findall(text):
        if name not in seen:
            seen.append(name)
    return seen


def render_template(template: str, variables: Optional[dict[str, Any]]) -> str:
    """Substitute ``{{name}}`` placeholders. Unknown placeholders are left as they are."""
    if not variables:
        return template

    def substitute(match: re.Match) -> str:
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        value = variables[name]
        return "" if value is None else str(value)

    return TEMPLATE_VARIABLE.sub(substitute, template)


def validate_email(address: str) -> bool:
    try:
        _validate_email_address(address, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def format_email_address(email: str, name: Optional[str] = None) -> str:
    if name:
        return f"{name} <{email}>"
    return email


# Delivery providers

@dataclass(frozen=True)
class SmsDelivery:
    sid: str
    status: str


class SmsSender:
    """Twilio Messages API over httpx."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_base: str = TWILIO_API_BASE,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base = api_base.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings) -> "SmsSender":
        return cls(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
            api_base=settings.twilio_api_base,
        )

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def close(self) -> None:
        await self._client.aclose()

    async def send(self, to: str, body: str) -> SmsDelivery:
        if not self.configured:
            raise NotificationDeliveryError("sms", "SMS provider is not configured")

        url = f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = await self._client.post(
                url,
                auth=(self.account_sid, self.auth_token),
                data={"To": to, "From": self.from_number, "Body": body},
            )
        except httpx.HTTPError as e:
            raise NotificationDeliveryError("sms", f"SMS provider unreachable: {e}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "")
            raise RateLimitError(
                "SMS provider rate limit exceeded",
                retry_after=int(retry_after) if retry_after.isdigit() else None,
            )

        if response.status_code not in (200, 201):
            try:
                message = response.json().get("message") or response.text
            except ValueError:
                message = response.text
            raise NotificationDeliveryError("sms", message or "SMS provider rejected the message", response.status_code)

        result = response.json()
        return SmsDelivery(sid=result.get("sid", ""), status=result.get("status", "queued"))


class EmailSender:
    """Resend email API; the SDK is synchronous so sends run in a worker thread."""

    def __init__(self, api_key: str, from_address: str):
        self.api_key = api_key
        self.from_address = from_address
        if api_key:
            resend.api_key = api_key

    @classmethod
    def from_settings(cls, settings) -> "EmailSender":
        return cls(api_key=settings.resend_api_key, from_address=settings.email_from_address)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def send(
        self,
        to: str,
        subject: str,
        html: Optional[str] = None,
        text: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> str:
        """Send one message and return the provider's message id."""
        if not self.configured:
            raise NotificationDeliveryError("email", "Email provider is not configured")

        params: dict[str, Any] = {"from": self.from_address, "to": [to], "subject": subject}
        if html:
            params["html"] = html
        if text:
            params["text"] = text
        if reply_to:
            params["reply_to"] = reply_to

        try:
            response = await asyncio.to_thread(resend.Emails.send, params)
        except ResendError as e:
            raise NotificationDeliveryError("email", f"Email provider rejected the message: {e}") from e
        except Exception as e:
            # Connection and timeout errors of the SDK's HTTP transport
            raise NotificationDeliveryError("email", f"Email provider unreachable: {e}") from e

        return response.get("id", "") if isinstance(response, dict) else getattr(response, "id", "")


# Service

@dataclass(frozen=True)
class SmsResult:
    message_sid: str
    status: str
    segments: int
    estimated_cost: Decimal


class NotificationService:
    """Sends SMS and email, and delivers best-effort notices to marketplace users."""

    def __init__(self, backend: Backend, sms: SmsSender, email: EmailSender):
        self.backend = backend
        self.sms = sms
        self.email = email

    async def send_sms(
        self,
        to: str,
        message: str,
        template_variables: Optional[dict[str, Any]] = None,
    ) -> SmsResult:
        body = render_template(message, template_variables)
        if not body.strip():
            raise ValidationError(detail="Message body is required", errors={"message": "required"})

        phone = format_phone_number(to)
        if not validate_phone_number(phone):
            raise ValidationError(detail="Invalid phone number", errors={"to": "must be an E.164 phone number"})

        segments = calculate_sms_segments(body)
        try:
            delivery = await self.sms.send(phone, body)
        except (NotificationDeliveryError, RateLimitError):
            MetricsCollector.record_notification("sms", "failed")
            raise

        MetricsCollector.record_notification("sms", "sent")
        logger.info("SMS sent", extra={"message_sid": delivery.sid, "segments": segments})
        return SmsResult(
            message_sid=delivery.sid,
            status=delivery.status,
            segments=segments,
            estimated_cost=calculate_sms_cost(segments),
        )

    async def send_email(
        self,
        to: str,
        subject: str,
        html: Optional[str] = None,
        text: Optional[str] = None,
        reply_to: Optional[str] = None,
        template_variables: Optional[dict[str, Any]] = None,
    ) -> str:
        if not validate_email(to):
            raise ValidationError(detail="Invalid email address", errors={"to": "must be a valid email address"})
        if reply_to and not validate_email(reply_to):
            raise ValidationError(detail="Invalid reply-to address", errors={"replyTo": "must be a valid email address"})
        if not html and not text:
            raise ValidationError(detail="Either html or text content is required")

        subject = render_template(subject, template_variables)
        html = render_template(html, template_variables) if html else None
        text = render_template(text, template_variables) if text else None

        try:
            message_id = await self.email.send(to, subject, html=html, text=text, reply_to=reply_to)
        except NotificationDeliveryError:
            MetricsCollector.record_notification("email", "failed")
            raise

        MetricsCollector.record_notification("email", "sent")
        logger.info("Email sent", extra={"message_id": message_id})
        return message_id

    async def notify_user(self, user_id: str, subject: str, message: str) -> dict[str, bool]:
        """
        Email and text a user about an account event.

        Delivery problems are logged and reported in the result but never
        raised: callers use this after money has already moved.
        """
        sent = {"email": False, "sms": False}

        try:
            profile = await (
                self.backend.table("profiles")
                .select("id, email, full_name, phone")
                .eq("id", user_id)
                .maybe_single()
                .execute()
            )
        except Exception as e:
            logger.warning(
                "Could not load profile for notification",
                extra={"user_id": user_id, "error": str(e)},
                exc_info=not isinstance(e, BackendError),
            )
            return sent

        if not profile:
            logger.warning("No profile to notify", extra={"user_id": user_id})
            return sent

        if profile.get("email") and self.email.configured:
            try:
                await self.send_email(profile["email"], subject, text=message)
                sent["email"] = True
            except Exception as e:
                logger.warning(
                    "Email notification failed",
                    extra={"user_id": user_id, "error": str(e)},
                    exc_info=not isinstance(e, ProblemDetailsException),
                )

        if profile.get("phone") and self.sms.configured:
            try:
                await self.send_sms(profile["phone"], f"{subject}: {message}")
                sent["sms"] = True
            except Exception as e:
                logger.warning(
                    "SMS notification failed",
                    extra={"user_id": user_id, "error": str(e)},
                    exc_info=not isinstance(e, ProblemDetailsException),
                )

        return sent
