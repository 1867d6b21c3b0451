#!/usr/bin/env python3
"""
Send Orchestrator

This module delivers the week's locked candidate to every active contact.
The send row is a frozen snapshot created once per (run, candidate); each
recipient gets its own row that moves pending/failed -> sent and never back.
A pass can be repeated at any time: recipients already sent are skipped and
failed ones are retried.
"""

import sqlite3
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from tqdm import tqdm

from campaign_lib.config_loader import Settings
from campaign_lib.errors import ConfigurationError, SegmentationError
from campaign_lib.mail_transport import MailTransport
from campaign_lib.schedule_matcher import now_utc_iso
from campaign_lib.segmentation import select_for_contact
from campaign_lib.template_merge import render_send_bodies
from weekly_scheduler import (
    Candidate, Contact, DatabaseManager, RecipientStatus, Send, WeeklyRun
)

logger = logging.getLogger(__name__)

NO_EMAIL_ERROR = "no email address"


@dataclass
class SendReport:
    """Counters for one send pass"""
    week_of: str
    send_id: Optional[str] = None
    delivered: int = 0
    failed: int = 0
    already_sent: int = 0
    segments: Dict[str, int] = field(default_factory=dict)

# ============================================================================
# SEND ORCHESTRATOR
# ============================================================================

class SendOrchestrator:
    """Per-recipient delivery of the locked candidate"""

    def __init__(self, db_manager: DatabaseManager, settings: Settings, transport: MailTransport,
                 show_progress: bool = False):
        self.db_manager = db_manager
        self.settings = settings
        self.transport = transport
        self.show_progress = show_progress
        self.last_report: Optional[SendReport] = None

    def send(self, run: WeeklyRun, now: Optional[datetime] = None) -> bool:
        """
        Deliver the run's selected candidate. Returns True iff at least one
        recipient was newly delivered by this pass.
        """
        report = SendReport(week_of=run.week_of)
        self.last_report = report

        # sending implies authorization: lock first if nobody has
        if not run.locked_at:
            self.db_manager.lock_weekly_run(run, now)
            run = self.db_manager.get_weekly_run_by_id(run.id)

        candidate = None
        if run.selected_candidate_id:
            candidate = self.db_manager.get_candidate(run.selected_candidate_id)
        if candidate is None:
            logger.info(f"Week {run.week_of}: no selected candidate, nothing to send")
            return False

        sender_mailbox, reply_to = self.settings.sender_identity()

        send = self._ensure_send(run, candidate, sender_mailbox, reply_to, now)
        report.send_id = send.id

        candidates = self.db_manager.get_candidates(run.id)
        contacts = self.db_manager.get_active_contacts()
        recipient_status = {
            r.contact_id: r.status for r in self.db_manager.get_send_recipients(send.id)
        }

        logger.info(f"Week {run.week_of}: sending '{send.subject}' to {len(contacts)} active contacts")

        for contact in tqdm(contacts, desc=f"Sending {run.week_of}", unit="contact",
                            disable=not self.show_progress):
            if recipient_status.get(contact.id) == RecipientStatus.SENT.value:
                report.already_sent += 1
                continue

            stage = self._segment_stage(contact, candidates, run.week_of)
            if stage:
                report.segments[stage] = report.segments.get(stage, 0) + 1

            if not (contact.email or '').strip():
                logger.warning(f"Contact {contact.id} has no email address")
                self._record_recipient(send.id, contact, RecipientStatus.FAILED, stage, now,
                                       error=NO_EMAIL_ERROR)
                report.failed += 1
                continue

            try:
                result = self.transport.send_mail(
                    send.sender_mailbox,
                    contact.email,
                    send.subject,
                    send.body_html,
                    send.body_text,
                    reply_to=send.reply_to,
                )
            except ConfigurationError:
                raise
            except Exception as e:
                # one recipient never aborts the pass
                logger.warning(f"Delivery to {contact.email} failed: {e}")
                self._record_recipient(send.id, contact, RecipientStatus.FAILED, stage, now, error=str(e))
                report.failed += 1
                continue

            self._record_recipient(send.id, contact, RecipientStatus.SENT, stage, now,
                                   provider_message_id=result.get('id'))
            report.delivered += 1

        if report.delivered and self.db_manager.mark_run_sent(run.id, now):
            logger.info(f"Week {run.week_of}: marked sent")

        logger.info(
            f"Week {run.week_of} send pass: delivered={report.delivered} failed={report.failed} "
            f"already_sent={report.already_sent} segments={report.segments}"
        )
        return report.delivered > 0

    def _segment_stage(self, contact: Contact, candidates: List[Candidate], week_of: str) -> Optional[str]:
        """Funnel stage this contact would get under segmentation; recorded, not delivered"""
        try:
            return select_for_contact(contact, candidates, week_of).funnel_stage
        except SegmentationError as e:
            logger.warning(str(e))
            return None

    def _ensure_send(self, run: WeeklyRun, candidate: Candidate, sender_mailbox: str,
                     reply_to: str, now: Optional[datetime]) -> Send:
        """Create the send snapshot once; an existing row always wins"""
        existing = self._get_send(run.id, candidate.id)
        if existing:
            return existing

        body_html, body_text = render_send_bodies(candidate, self.settings.mail.load_template())
        stamp = now_utc_iso(now)

        def _insert():
            with self.db_manager.connect() as conn:
                cursor = conn.execute("""
                    INSERT OR IGNORE INTO sends (
                        id, weekly_run_id, candidate_id, subject, preview_text,
                        body_html, body_text, sender_mailbox, reply_to, tracking_salt, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    str(uuid.uuid4()), run.id, candidate.id, candidate.subject, candidate.preview_text,
                    body_html, body_text, sender_mailbox, reply_to, str(uuid.uuid4()), stamp,
                ))
                if cursor.rowcount:
                    logger.info(f"Week {run.week_of}: created send snapshot for candidate {candidate.id}")

        self.db_manager.execute_with_retry(_insert)
        # a concurrent pass may have inserted first; its row is authoritative
        return self._get_send(run.id, candidate.id)

    def _get_send(self, run_id: str, candidate_id: str) -> Optional[Send]:
        with self.db_manager.connect() as conn:
            row = conn.execute(
                "SELECT * FROM sends WHERE weekly_run_id = ? AND candidate_id = ?",
                (run_id, candidate_id)
            ).fetchone()
            return Send.from_db_row(dict(row)) if row else None

    def _record_recipient(self, send_id: str, contact: Contact, status: RecipientStatus,
                          segment_stage: Optional[str], now: Optional[datetime],
                          provider_message_id: Optional[str] = None, error: Optional[str] = None):
        """Upsert one recipient outcome; a row already sent is left untouched"""
        stamp = now_utc_iso(now)
        sent_at = stamp if status == RecipientStatus.SENT else None

        def _upsert():
            with self.db_manager.connect() as conn:
                conn.execute("""
                    INSERT INTO send_recipients (
                        id, send_id, contact_id, email, status, segment_stage,
                        provider_message_id, error, attempts, sent_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
                    ON CONFLICT(send_id, contact_id) DO UPDATE SET
                        email = excluded.email,
                        status = excluded.status,
                        segment_stage = excluded.segment_stage,
                        provider_message_id = excluded.provider_message_id,
                        error = excluded.error,
                        attempts = send_recipients.attempts + 1,
                        sent_at = excluded.sent_at,
                        updated_at = excluded.updated_at
                    WHERE send_recipients.status != 'sent'
                """, (
                    str(uuid.uuid4()), send_id, contact.id, contact.email, status.value, segment_stage,
                    provider_message_id, error, sent_at, stamp, stamp,
                ))

        try:
            self.db_manager.execute_with_retry(_upsert)
        except sqlite3.Error:
            logger.error(f"Could not record {status.value} for contact {contact.id} on send {send_id}")
            raise
