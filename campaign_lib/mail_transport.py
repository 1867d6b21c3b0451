#!/usr/bin/env python3
"""
Mail Transports

Outbound delivery of one message to one recipient. ``send_mail`` returns
{"ok": True, "id": <provider message id>} or raises MailTransportError;
the send orchestrator records either outcome per recipient.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

import requests

from campaign_lib.errors import ConfigurationError, MailTransportError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
SEND_MAIL_URL = "https://graph.microsoft.com/v1.0/users/{sender}/sendMail"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
TOKEN_REFRESH_MARGIN_SECONDS = 60


class MailTransport:
    """Base class for outbound mail"""

    name = "base"

    def send_mail(self, from_address: str, to: str, subject: str, html: str, text: str,
                  reply_to: Optional[str] = None) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass
class TokenCache:
    """Bearer token with its absolute expiry (epoch seconds)"""
    access_token: Optional[str] = None
    expires_at: float = 0.0

    def is_fresh(self, now: float) -> bool:
        return bool(self.access_token) and now < self.expires_at - TOKEN_REFRESH_MARGIN_SECONDS

    def store(self, access_token: str, expires_in: float, now: float):
        self.access_token = access_token
        self.expires_at = now + float(expires_in)


# ============================================================================
# MICROSOFT GRAPH
# ============================================================================

class GraphMailTransport(MailTransport):
    """Client-credentials Graph sender; one token cache per instance"""

    name = "graph"

    def __init__(self, tenant_id: str, client_id: str, client_secret: str,
                 timeout: float = 30.0, session: Optional[requests.Session] = None,
                 clock=time.time):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.session = session or requests.Session()
        self.clock = clock
        self.token_cache = TokenCache()

    def get_token(self) -> str:
        now = self.clock()
        if self.token_cache.is_fresh(now):
            return self.token_cache.access_token

        if not (self.tenant_id and self.client_id and self.client_secret):
            raise ConfigurationError(
                "Missing Graph credentials. Expected GRAPH_TENANT_ID, GRAPH_CLIENT_ID and GRAPH_CLIENT_SECRET."
            )

        logger.debug(f"Requesting Graph token for tenant {self.tenant_id}")
        try:
            response = self.session.post(
                TOKEN_URL.format(tenant_id=self.tenant_id),
                data={
                    'client_id': self.client_id,
                    'client_secret': self.client_secret,
                    'grant_type': 'client_credentials',
                    'scope': GRAPH_SCOPE,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise MailTransportError(f"Graph token request failed: {e}") from e

        if response.status_code >= 400:
            raise MailTransportError(f"Graph token error {response.status_code}: {response.text[:300]}")

        try:
            data = response.json()
            access_token = data['access_token']
            expires_in = float(data.get('expires_in', 3600))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise MailTransportError(f"Graph token response unreadable: {response.text[:300]}") from e
        if not isinstance(access_token, str) or not access_token:
            raise MailTransportError("Graph token response has no access_token")

        self.token_cache.store(access_token, expires_in, now)
        return self.token_cache.access_token

    def build_message(self, to: str, subject: str, html: str, text: str,
                      reply_to: Optional[str] = None) -> Dict[str, Any]:
        html_body = html if isinstance(html, str) and html.strip() else None
        message = {
            'subject': subject,
            'body': {
                'contentType': 'HTML' if html_body else 'Text',
                'content': html_body or (text or ''),
            },
            'toRecipients': [{'emailAddress': {'address': to}}],
        }
        if reply_to:
            message['replyTo'] = [{'emailAddress': {'address': reply_to}}]
        return {'message': message, 'saveToSentItems': 'true'}

    def send_mail(self, from_address: str, to: str, subject: str, html: str, text: str,
                  reply_to: Optional[str] = None) -> Dict[str, Any]:
        token = self.get_token()
        url = SEND_MAIL_URL.format(sender=quote(from_address, safe=''))

        try:
            response = self.session.post(
                url,
                json=self.build_message(to, subject, html, text, reply_to),
                headers={'Authorization': f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise MailTransportError(f"Graph sendMail request failed: {e}") from e

        if response.status_code >= 400:
            raise MailTransportError(f"Graph sendMail error {response.status_code}: {response.text[:300]}")

        # sendMail answers 202 with no body; the request id is the only handle
        message_id = response.headers.get('request-id') or str(uuid.uuid4())
        return {'ok': True, 'id': message_id}


# ============================================================================
# DRY RUN
# ============================================================================

@dataclass
class SentMessage:
    id: str
    from_address: str
    to: str
    subject: str
    html: str
    text: str
    reply_to: Optional[str] = None


@dataclass
class DryRunMailTransport(MailTransport):
    """Records messages in memory; addresses in fail_addresses raise"""

    fail_addresses: Iterable[str] = field(default_factory=set)
    sent: List[SentMessage] = field(default_factory=list)

    name = "dry_run"

    def __post_init__(self):
        self.fail_addresses = {address.lower() for address in self.fail_addresses}

    def send_mail(self, from_address: str, to: str, subject: str, html: str, text: str,
                  reply_to: Optional[str] = None) -> Dict[str, Any]:
        if to.lower() in self.fail_addresses:
            raise MailTransportError(f"Dry-run delivery refused for {to}")

        message_id = f"dry-run-{uuid.uuid4()}"
        self.sent.append(SentMessage(message_id, from_address, to, subject, html, text, reply_to))
        logger.debug(f"Dry-run delivery {message_id} to {to}")
        return {'ok': True, 'id': message_id}

    def recipients(self) -> List[str]:
        return [message.to for message in self.sent]


def build_mail_transport(settings) -> MailTransport:
    """Transport selected by settings.mail.transport"""
    transport = (settings.mail.transport or "graph").lower()
    if transport == "dry_run":
        return DryRunMailTransport()
    if transport == "graph":
        return GraphMailTransport(
            tenant_id=settings.graph.tenant_id,
            client_id=settings.graph.client_id,
            client_secret=settings.graph.client_secret,
            timeout=settings.graph.timeout_seconds,
        )
    raise ConfigurationError(f'Invalid MAIL_TRANSPORT: "{settings.mail.transport}"')
