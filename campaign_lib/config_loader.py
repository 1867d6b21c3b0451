#!/usr/bin/env python3
"""
Configuration Loader Module

Settings for the weekly campaign scheduler: timezone, the weekly trigger for
each stage, sender identity and collaborator selection. Values come from an
optional YAML file and are then overridden by environment variables.
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from campaign_lib.errors import ConfigurationError
from campaign_lib.schedule_matcher import DAYS_OF_WEEK, get_zone, is_hhmm

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/Chicago"
STAGES = ("generate", "lock", "send")

DEV_SENDER_MAILBOX = "stub-sender@example.com"
DEV_REPLY_TO = "stub-replyto@example.com"


@dataclass
class StageTrigger:
    """Weekly trigger: upper-case English weekday and 24h HH:MM"""
    dow: str
    time: str


@dataclass
class StageSchedule:
    generate: StageTrigger = field(default_factory=lambda: StageTrigger("FRIDAY", "09:00"))
    lock: StageTrigger = field(default_factory=lambda: StageTrigger("TUESDAY", "09:45"))
    send: StageTrigger = field(default_factory=lambda: StageTrigger("TUESDAY", "10:00"))

    def trigger_for(self, stage: str) -> StageTrigger:
        return getattr(self, stage)


@dataclass
class MailConfig:
    sender_mailbox: str = ""
    reply_to: str = ""
    transport: str = "graph"  # graph|dry_run
    template_path: Optional[str] = None

    def load_template(self) -> Optional[str]:
        if not self.template_path:
            return None
        return Path(self.template_path).read_text(encoding='utf-8')


@dataclass
class ContentConfig:
    provider: str = "mock"  # mock|openai
    model: str = "gpt-4o-mini"
    api_key: str = ""
    policy_path: Optional[str] = None
    timeout_seconds: float = 60.0


@dataclass
class GraphConfig:
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""
    timeout_seconds: float = 30.0


@dataclass
class Settings:
    """Complete scheduler configuration"""
    timezone: str = DEFAULT_TIMEZONE
    environment: str = "production"
    schedule: StageSchedule = field(default_factory=StageSchedule)
    mail: MailConfig = field(default_factory=MailConfig)
    content: ContentConfig = field(default_factory=ContentConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)

    @property
    def is_dev(self) -> bool:
        return self.environment.lower() == "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str) -> 'Settings':
        """Load settings from a YAML file; a missing file yields defaults"""
        settings = cls()
        if not Path(yaml_path).exists():
            logger.warning(f"Config file {yaml_path} not found, using defaults")
            return settings

        with open(yaml_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        settings.timezone = _str(data.get('timezone')) or settings.timezone
        settings.environment = _str(data.get('environment')) or settings.environment

        schedule = data.get('schedule') or {}
        for stage in STAGES:
            stage_data = schedule.get(stage) or {}
            trigger = settings.schedule.trigger_for(stage)
            trigger.dow = _str(stage_data.get('dow')).upper() or trigger.dow
            trigger.time = _time_str(stage_data.get('time')) or trigger.time

        mail = data.get('mail') or {}
        settings.mail = MailConfig(
            sender_mailbox=_str(mail.get('sender_mailbox')),
            reply_to=_str(mail.get('reply_to')),
            transport=_str(mail.get('transport')) or settings.mail.transport,
            template_path=_str(mail.get('template_path')) or None,
        )

        content = data.get('content') or {}
        settings.content = ContentConfig(
            provider=_str(content.get('provider')) or settings.content.provider,
            model=_str(content.get('model')) or settings.content.model,
            policy_path=_str(content.get('policy_path')) or None,
            timeout_seconds=float(content.get('timeout_seconds', settings.content.timeout_seconds)),
        )

        graph = data.get('graph') or {}
        settings.graph = GraphConfig(
            tenant_id=_str(graph.get('tenant_id')),
            client_id=_str(graph.get('client_id')),
            timeout_seconds=float(graph.get('timeout_seconds', settings.graph.timeout_seconds)),
        )

        return settings

    def apply_env(self, environ: Mapping[str, str]) -> 'Settings':
        """Override fields from environment variables (legacy names included)"""
        self.timezone = _first(environ, 'TIMEZONE') or self.timezone
        self.environment = _first(environ, 'ENVIRONMENT') or self.environment

        for stage in STAGES:
            trigger = self.schedule.trigger_for(stage)
            trigger.dow = _first(environ, f'SCHEDULE_{stage.upper()}_DOW').upper() or trigger.dow
            trigger.time = _first(environ, f'SCHEDULE_{stage.upper()}_TIME') or trigger.time

        self.mail.sender_mailbox = _first(environ, 'MAIL_SENDER_UPN', 'SENDER_MAILBOX') or self.mail.sender_mailbox
        self.mail.reply_to = _first(environ, 'REPLY_TO') or self.mail.reply_to
        self.mail.transport = _first(environ, 'MAIL_TRANSPORT') or self.mail.transport
        self.mail.template_path = _first(environ, 'EMAIL_TEMPLATE_PATH') or self.mail.template_path

        self.content.provider = _first(environ, 'CONTENT_PROVIDER') or self.content.provider
        self.content.model = _first(environ, 'OPENAI_MODEL') or self.content.model
        self.content.api_key = _first(environ, 'OPEN_AI_KEY', 'OPENAI_API_KEY') or self.content.api_key
        self.content.policy_path = _first(environ, 'POLICY_PATH') or self.content.policy_path

        self.graph.tenant_id = _first(environ, 'GRAPH_TENANT_ID', 'MS_TENANT_ID') or self.graph.tenant_id
        self.graph.client_id = _first(environ, 'GRAPH_CLIENT_ID', 'MS_CLIENT_ID') or self.graph.client_id
        self.graph.client_secret = _first(environ, 'GRAPH_CLIENT_SECRET', 'MS_CLIENT_SECRET') or self.graph.client_secret
        return self

    def validate(self) -> 'Settings':
        try:
            get_zone(self.timezone)
        except ValueError as e:
            raise ConfigurationError(f'Invalid TIMEZONE: "{self.timezone}"') from e

        for stage in STAGES:
            trigger = self.schedule.trigger_for(stage)
            if trigger.dow not in DAYS_OF_WEEK:
                raise ConfigurationError(f'Invalid SCHEDULE_{stage.upper()}_DOW: "{trigger.dow}"')
            if not is_hhmm(trigger.time):
                raise ConfigurationError(
                    f'Invalid SCHEDULE_{stage.upper()}_TIME: "{trigger.time}" (expected HH:MM 24h)'
                )
        return self

    def sender_identity(self) -> Tuple[str, str]:
        """
        (sender_mailbox, reply_to) for outbound mail. Dev builds fall back to
        stub addresses; anywhere else both must be configured.
        """
        sender = self.mail.sender_mailbox or (DEV_SENDER_MAILBOX if self.is_dev else "")
        reply_to = self.mail.reply_to or (DEV_REPLY_TO if self.is_dev else "")
        if not sender or not reply_to:
            raise ConfigurationError(
                "Missing required mail settings. Expected MAIL_SENDER_UPN (or SENDER_MAILBOX) and REPLY_TO."
            )
        return sender, reply_to

    def schedule_dict(self) -> Dict[str, Any]:
        return {
            'timezone': self.timezone,
            **{stage: asdict(self.schedule.trigger_for(stage)) for stage in STAGES},
        }


def load_settings(config_path: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build validated settings from an optional YAML file plus the environment"""
    settings = Settings.from_yaml(config_path) if config_path else Settings()
    settings.apply_env(os.environ if environ is None else environ)
    return settings.validate()


def _str(value) -> str:
    return '' if value is None else str(value).strip()


def _time_str(value) -> str:
    # YAML 1.1 reads an unquoted 10:00 as the base-60 integer 600
    if isinstance(value, int) and not isinstance(value, bool):
        return f"{value // 60:02d}:{value % 60:02d}"
    return _str(value)


def _first(environ: Mapping[str, str], *names: str) -> str:
    for name in names:
        value = _str(environ.get(name))
        if value:
            return value
    return ''
