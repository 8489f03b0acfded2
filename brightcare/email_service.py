"""
OTP Email Dispatch Service
Delivers one-time passcodes through an ordered chain of authentication
strategies: Gmail OAuth2 first, SMTP username/password as fallback.
"""

import asyncio
import base64
import logging
import smtplib
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.header import Header
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Callable, List, Optional

import httpx
from cryptography.fernet import Fernet, InvalidToken

from .config import (
    GMAIL_CLIENT_ID,
    GMAIL_CLIENT_SECRET,
    GMAIL_REFRESH_TOKEN,
    GMAIL_USER_EMAIL,
    OTP_SEND_TIMEOUT_SECONDS,
    OTP_TOKEN_TIMEOUT_SECONDS,
    SMTP_ENCRYPTION_KEY,
    SMTP_HOST,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_USER,
)
from .email_templates import render_otp_message
from .errors import AuthenticationError
from .schemas import DispatchResult, OtpDispatchRequest, RenderedMessage
from .shared.validators import (
    email_domain,
    is_flagged_domain,
    is_valid_email,
    is_valid_otp,
    validate_email,
)

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"

# Initialize encryption for SMTP passwords
fernet = Fernet(SMTP_ENCRYPTION_KEY) if SMTP_ENCRYPTION_KEY else None


def decrypt_password(encrypted: Optional[str]) -> str:
    """Decrypt SMTP password"""
    if not fernet or not encrypted:
        return encrypted or ""
    try:
        return fernet.decrypt(encrypted.encode()).decode()
    except InvalidToken:
        return encrypted  # Stored in plain text


class DeliveryError(Exception):
    pass


@dataclass
class OAuth2Credentials:
    client_id: Optional[str]
    client_secret: Optional[str]
    refresh_token: Optional[str]
    user_email: Optional[str]

    def is_complete(self) -> bool:
        return all([self.client_id, self.client_secret, self.refresh_token, self.user_email])


@dataclass
class PasswordCredentials:
    host: str
    port: int
    username: Optional[str]
    password: Optional[str]

    def is_complete(self) -> bool:
        return bool(self.host and self.username and self.password)


class AuthCredentialSource(ABC):
    @abstractmethod
    def primary_credentials(self) -> Optional[OAuth2Credentials]:
        pass

    @abstractmethod
    def fallback_credentials(self) -> Optional[PasswordCredentials]:
        """None is a legal configuration: no fallback"""


class EnvCredentialSource(AuthCredentialSource):
    """Credentials from environment configuration"""

    def primary_credentials(self) -> Optional[OAuth2Credentials]:
        return OAuth2Credentials(
            client_id=GMAIL_CLIENT_ID,
            client_secret=GMAIL_CLIENT_SECRET,
            refresh_token=GMAIL_REFRESH_TOKEN,
            user_email=GMAIL_USER_EMAIL,
        )

    def fallback_credentials(self) -> Optional[PasswordCredentials]:
        if not SMTP_USER or not SMTP_PASSWORD:
            return None
        return PasswordCredentials(
            host=SMTP_HOST,
            port=SMTP_PORT,
            username=SMTP_USER,
            password=decrypt_password(SMTP_PASSWORD),
        )


def build_mime_message(
    rendered: RenderedMessage, sender: str, recipient: str, app_name: str
) -> MIMEMultipart:
    msg = MIMEMultipart("alternative")
    msg["Subject"] = Header(rendered.subject, "utf-8")
    msg["From"] = formataddr((f"{app_name} 🔐", sender), charset="utf-8")
    msg["To"] = recipient
    msg["Message-ID"] = make_msgid(domain=sender.rsplit("@", 1)[-1])

    msg.attach(MIMEText(rendered.text, "plain", "utf-8"))
    msg.attach(MIMEText(rendered.html, "html", "utf-8"))
    return msg


class MailTransport(ABC):
    """An authenticated channel that can submit one message"""

    @abstractmethod
    async def send(self, message: MIMEMultipart, recipient: str) -> str:
        """Submit the message and return the provider's message id"""

    async def close(self) -> None:
        pass


class GmailApiTransport(MailTransport):
    def __init__(self, access_token: str, sender: str):
        self.access_token = access_token
        self.sender = sender

    async def send(self, message: MIMEMultipart, recipient: str) -> str:
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode()
        async with httpx.AsyncClient() as client:
            response = await client.post(
                GMAIL_SEND_URL,
                headers={"Authorization": f"Bearer {self.access_token}"},
                json={"raw": raw},
            )
        if response.status_code != 200:
            raise DeliveryError(f"Gmail API send failed ({response.status_code}): {response.text}")
        return response.json().get("id") or message["Message-ID"]


class SmtpTransport(MailTransport):
    def __init__(self, server: smtplib.SMTP, sender: str):
        self.server = server
        self.sender = sender

    async def send(self, message: MIMEMultipart, recipient: str) -> str:
        await asyncio.to_thread(self.server.sendmail, self.sender, [recipient], message.as_string())
        return message["Message-ID"]

    async def close(self) -> None:
        try:
            await asyncio.to_thread(self.server.quit)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"⚠️ SMTP quit failed: {e}")


class AuthStrategy(ABC):
    """A way of obtaining an authenticated mail transport"""

    name = "strategy"
    display_name = "Email"

    @property
    @abstractmethod
    def sender(self) -> str:
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        pass

    @abstractmethod
    async def authenticate(self) -> MailTransport:
        """
        Raises:
            AuthenticationError: If credentials are rejected or unreachable
        """


class GmailOAuth2Strategy(AuthStrategy):
    """Delegated credentials: exchange the refresh token for an access token"""

    name = "oauth2"
    display_name = "OAuth2"

    def __init__(
        self,
        credentials: Optional[OAuth2Credentials],
        token_timeout: float = OTP_TOKEN_TIMEOUT_SECONDS,
    ):
        self.credentials = credentials
        self.token_timeout = token_timeout

    @property
    def sender(self) -> str:
        return self.credentials.user_email if self.credentials else ""

    def is_configured(self) -> bool:
        return self.credentials is not None and self.credentials.is_complete()

    async def _refresh_access_token(self) -> str:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": self.credentials.client_id,
                    "client_secret": self.credentials.client_secret,
                    "refresh_token": self.credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
            )

        if response.status_code != 200:
            logger.error(f"❌ Token refresh failed: {response.text}")
            raise AuthenticationError(f"Token refresh rejected ({response.status_code})")

        access_token = response.json().get("access_token")
        if not access_token:
            raise AuthenticationError("No access token in refresh response")
        return access_token

    async def authenticate(self) -> MailTransport:
        try:
            access_token = await asyncio.wait_for(
                self._refresh_access_token(), timeout=self.token_timeout
            )
        except asyncio.TimeoutError as e:
            raise AuthenticationError(
                f"Token refresh timed out after {self.token_timeout:g}s"
            ) from e
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Token refresh failed: {e}") from e

        logger.info("✅ Gmail OAuth2 access token obtained")
        return GmailApiTransport(access_token, self.sender)


class SmtpPasswordStrategy(AuthStrategy):
    """Direct account/password login against an SMTP server"""

    name = "smtp"
    display_name = "SMTP"

    def __init__(self, credentials: Optional[PasswordCredentials], timeout: float = 30):
        self.credentials = credentials
        self.timeout = timeout

    @property
    def sender(self) -> str:
        return self.credentials.username if self.credentials else ""

    def is_configured(self) -> bool:
        return self.credentials is not None and self.credentials.is_complete()

    def _connect(self) -> smtplib.SMTP:
        creds = self.credentials
        context = ssl.create_default_context()
        if creds.port == 465:
            server = smtplib.SMTP_SSL(creds.host, creds.port, context=context, timeout=self.timeout)
        else:
            server = smtplib.SMTP(creds.host, creds.port, timeout=self.timeout)
            server.starttls(context=context)

        try:
            server.login(creds.username, creds.password)
        except smtplib.SMTPException:
            server.close()
            raise
        return server

    async def authenticate(self) -> MailTransport:
        try:
            server = await asyncio.to_thread(self._connect)
        except (smtplib.SMTPException, OSError) as e:
            raise AuthenticationError(
                f"SMTP login failed for {self.credentials.host}: {e}"
            ) from e

        logger.info(f"✅ SMTP login succeeded on {self.credentials.host}")
        return SmtpTransport(server, self.sender)


def _failure(detail: str, code: str, risk_flagged: bool = False) -> DispatchResult:
    return DispatchResult(
        success=False, error_detail=detail, error_code=code, risk_flagged=risk_flagged
    )


class NotificationDispatchService:
    """
    Sends OTP emails. The first strategy in the list is reported as
    "primary", any later one as "fallback".

    Flow: validate -> risk flag -> authenticate (first strategy that succeeds)
    -> render -> send. Nothing is retried; a send failure after successful
    authentication is final.
    """

    def __init__(
        self,
        strategies: List[AuthStrategy],
        send_timeout: float = OTP_SEND_TIMEOUT_SECONDS,
        renderer: Callable[..., RenderedMessage] = render_otp_message,
    ):
        self.strategies = strategies
        self.send_timeout = send_timeout
        self.renderer = renderer

    async def _authenticate(self) -> tuple[MailTransport, AuthStrategy, str]:
        available = [
            (strategy, "primary" if index == 0 else "fallback")
            for index, strategy in enumerate(self.strategies)
            if strategy.is_configured()
        ]
        if not available:
            raise AuthenticationError(
                "No valid email authentication method available", code="no_auth_method"
            )

        last_error: Optional[Exception] = None
        for strategy, label in available:
            logger.info(f"🔐 Authenticating with {strategy.display_name} ({label})")
            try:
                return await strategy.authenticate(), strategy, label
            except Exception as e:
                logger.warning(f"⚠️ {strategy.display_name} authentication failed: {e}")
                last_error = e

        raise AuthenticationError(
            f"No valid email authentication method available: {last_error}"
        )

    async def dispatch_otp(self, request: Optional[OtpDispatchRequest]) -> DispatchResult:
        if request is None:
            return _failure("missing request data", "missing_request")
        if not is_valid_email(request.email):
            return _failure("invalid email format", "invalid_email")
        if not is_valid_otp(request.otp):
            return _failure("invalid OTP format: must be exactly 6 digits", "invalid_otp")

        email = validate_email(request.email)
        risk_flagged = is_flagged_domain(email)
        if risk_flagged:
            # Advisory only; uncommon domains still receive the code
            logger.warning(f"⚠️ OTP requested for uncommon email domain: {email_domain(email)}")

        try:
            transport, strategy, label = await self._authenticate()
        except AuthenticationError as e:
            logger.error(f"❌ OTP email not sent: {e}")
            return _failure(e.detail, e.code, risk_flagged)

        try:
            rendered = self.renderer(
                request.otp, request.expiry_minutes, request.app_name, strategy.display_name
            )
            message = build_mime_message(rendered, strategy.sender, email, request.app_name)
            message_id = await asyncio.wait_for(
                transport.send(message, email), timeout=self.send_timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"❌ OTP email send timed out via {strategy.display_name}")
            return _failure(
                f"Email send timed out after {self.send_timeout:g}s", "send_timeout", risk_flagged
            )
        except Exception as e:
            logger.error(f"❌ OTP email send failed via {strategy.display_name}: {e}")
            return _failure(f"Failed to send OTP email: {e}", "send_failed", risk_flagged)
        finally:
            await transport.close()

        logger.info(
            f"✅ OTP email sent to domain {email_domain(email)} via {strategy.display_name} "
            f"({label}), message id {message_id}"
        )
        return DispatchResult(
            success=True,
            auth_method_used=label,
            message_id=message_id,
            risk_flagged=risk_flagged,
        )


def build_dispatch_service(
    credential_source: Optional[AuthCredentialSource] = None,
) -> NotificationDispatchService:
    source = credential_source or EnvCredentialSource()
    strategies: List[AuthStrategy] = [GmailOAuth2Strategy(source.primary_credentials())]
    fallback = source.fallback_credentials()
    if fallback is not None:
        strategies.append(SmtpPasswordStrategy(fallback))
    return NotificationDispatchService(strategies)
