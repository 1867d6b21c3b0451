#!/usr/bin/env python3
"""
Weekly Campaign Scheduler - Stage Ledger and Tick Coordinator

Drives one marketing email per week through three ordered stages:
generate candidates, lock a selection, send to recipients. Every tick
computes the local week, makes sure the week's ledger row exists and
advances exactly the stages whose weekly trigger matches the current
minute. Repeated or overlapping ticks are safe because every transition
is guarded by a UNIQUE constraint or a conditional UPDATE.
"""

import sqlite3
import json
import logging
import time
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from campaign_lib.config_loader import Settings, load_settings
from campaign_lib.content_providers import ContentProvider, build_content_provider
from campaign_lib.errors import (
    CampaignError, ConfigurationError, CandidateValidationError,
    SegmentationError, MailTransportError
)
from campaign_lib.mail_transport import MailTransport, build_mail_transport
from campaign_lib.schedule_matcher import (
    is_due, is_ymd, now_in_tz_iso, now_utc_iso, parse_instant, utc_now,
    week_of as compute_week_of
)

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

__all__ = [
    'RunStatus', 'FunnelStage', 'RecipientStatus', 'WeeklyRun', 'Candidate', 'Send',
    'SendRecipient', 'Contact', 'TickResult', 'DatabaseManager', 'WeeklyCampaignScheduler',
    'CampaignError', 'ConfigurationError', 'CandidateValidationError', 'SegmentationError',
    'MailTransportError',
]

# ============================================================================
# DOMAIN MODEL
# ============================================================================

class RunStatus(Enum):
    """Weekly run status values; transitions only move forward"""
    PENDING = "pending"
    GENERATED = "generated"
    LOCKED = "locked"
    SENT = "sent"

class FunnelStage(Enum):
    """Funnel stages; rank follows funnel order"""
    TOP = "top"
    MID = "mid"
    BOTTOM = "bottom"

    @property
    def rank(self) -> int:
        return FUNNEL_RANKS[self.value]

class RecipientStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"

FUNNEL_RANKS = {'top': 1, 'mid': 2, 'bottom': 3}

@dataclass
class WeeklyRun:
    """Ledger row for one calendar week"""
    id: str
    week_of: str
    status: str = RunStatus.PENDING.value
    generated_at: Optional[str] = None
    locked_at: Optional[str] = None
    sent_at: Optional[str] = None
    selected_candidate_id: Optional[str] = None
    focus_notes: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> 'WeeklyRun':
        return cls(**{name: row[name] for name in cls.__dataclass_fields__})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

@dataclass
class Candidate:
    """One proposed email for a week, tagged with its funnel stage"""
    id: str
    weekly_run_id: str
    rank: int
    funnel_stage: str
    subject: str
    preview_text: Optional[str] = None
    body_html: Optional[str] = None
    body_text: Optional[str] = None
    body_markdown: Optional[str] = None
    cta: Optional[str] = None
    image_url: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> 'Candidate':
        return cls(**{name: row[name] for name in cls.__dataclass_fields__})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

@dataclass
class Send:
    """Frozen snapshot of the content delivered for a run"""
    id: str
    weekly_run_id: str
    candidate_id: str
    subject: str
    preview_text: Optional[str]
    body_html: str
    body_text: str
    sender_mailbox: str
    reply_to: str
    tracking_salt: str
    created_at: str

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> 'Send':
        return cls(**{name: row[name] for name in cls.__dataclass_fields__})

@dataclass
class SendRecipient:
    id: str
    send_id: str
    contact_id: str
    email: Optional[str]
    status: str
    segment_stage: Optional[str] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    sent_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> 'SendRecipient':
        return cls(**{name: row[name] for name in cls.__dataclass_fields__})

@dataclass
class Contact:
    """Recipient as read from the externally managed contacts table"""
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    status: str = "active"
    order_count: int = 0

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> 'Contact':
        return cls(
            id=str(row['id']),
            email=row['email'],
            first_name=row.get('first_name') or "",
            last_name=row.get('last_name') or "",
            status=row.get('status') or "active",
            order_count=row.get('order_count') or 0,
        )

@dataclass
class TickResult:
    """Outcome of one coordinator pass"""
    week_of: str
    actions: List[str] = field(default_factory=list)
    now: Optional[datetime] = None
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

# ============================================================================
# DATABASE MANAGER - WEEKLY RUN LEDGER
# ============================================================================

class DatabaseManager:
    """Manages all database operations for the weekly ledger"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._ensure_schema()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_schema(self):
        """Ensure all required tables and columns exist"""
        with self.connect() as conn:
            self._create_ledger_tables(conn)
            self._create_contacts_table(conn)
            self._create_indexes(conn)

    def _create_ledger_tables(self, conn: sqlite3.Connection):
        conn.execute("""
            CREATE TABLE IF NOT EXISTS weekly_runs (
                id TEXT PRIMARY KEY,
                week_of TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL DEFAULT 'pending',
                generated_at TEXT,
                locked_at TEXT,
                sent_at TEXT,
                selected_candidate_id TEXT,
                focus_notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS candidates (
                id TEXT PRIMARY KEY,
                weekly_run_id TEXT NOT NULL,
                rank INTEGER NOT NULL CHECK (rank BETWEEN 1 AND 3),
                funnel_stage TEXT NOT NULL CHECK (funnel_stage IN ('top', 'mid', 'bottom')),
                subject TEXT NOT NULL,
                preview_text TEXT,
                body_html TEXT,
                body_text TEXT,
                body_markdown TEXT,
                cta TEXT,
                image_url TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (weekly_run_id, funnel_stage),
                UNIQUE (weekly_run_id, rank),
                FOREIGN KEY (weekly_run_id) REFERENCES weekly_runs(id)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS sends (
                id TEXT PRIMARY KEY,
                weekly_run_id TEXT NOT NULL,
                candidate_id TEXT NOT NULL,
                subject TEXT NOT NULL,
                preview_text TEXT,
                body_html TEXT NOT NULL,
                body_text TEXT NOT NULL,
                sender_mailbox TEXT NOT NULL,
                reply_to TEXT NOT NULL,
                tracking_salt TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (weekly_run_id, candidate_id),
                FOREIGN KEY (weekly_run_id) REFERENCES weekly_runs(id),
                FOREIGN KEY (candidate_id) REFERENCES candidates(id)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS send_recipients (
                id TEXT PRIMARY KEY,
                send_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                email TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                segment_stage TEXT,
                provider_message_id TEXT,
                error TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                sent_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (send_id, contact_id),
                FOREIGN KEY (send_id) REFERENCES sends(id)
            )
        """)

    def _create_contacts_table(self, conn: sqlite3.Connection):
        """Contacts are owned elsewhere; create the table for standalone use"""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS contacts (
                id TEXT PRIMARY KEY,
                first_name TEXT,
                last_name TEXT,
                email TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                order_count INTEGER NOT NULL DEFAULT 0
            )
        """)

        cursor = conn.execute("PRAGMA table_info(contacts)")
        existing_cols = {row[1] for row in cursor.fetchall()}

        required_columns = {
            'status': "TEXT NOT NULL DEFAULT 'active'",
            'order_count': 'INTEGER NOT NULL DEFAULT 0',
        }

        for col_name, col_def in required_columns.items():
            if col_name not in existing_cols:
                conn.execute(f"ALTER TABLE contacts ADD COLUMN {col_name} {col_def}")
                logger.info(f"Added column {col_name} to contacts")

    def _create_indexes(self, conn: sqlite3.Connection):
        indexes = [
            "CREATE INDEX IF NOT EXISTS idx_candidates_run ON candidates(weekly_run_id)",
            "CREATE INDEX IF NOT EXISTS idx_sends_run ON sends(weekly_run_id)",
            "CREATE INDEX IF NOT EXISTS idx_send_recipients_status ON send_recipients(send_id, status)",
            "CREATE INDEX IF NOT EXISTS idx_contacts_status_name ON contacts(status, last_name, first_name, email)",
        ]
        for index_sql in indexes:
            conn.execute(index_sql)

    def execute_with_retry(self, operation, max_attempts=3, backoff_base=2):
        """Execute database operation with retry and exponential backoff"""
        for attempt in range(max_attempts):
            try:
                return operation()
            except sqlite3.OperationalError as e:
                if attempt == max_attempts - 1:
                    logger.error(f"Database operation failed after {max_attempts} attempts: {e}")
                    raise
                sleep_time = backoff_base ** attempt
                logger.warning(f"Database retry {attempt + 1}/{max_attempts} after {sleep_time}s: {e}")
                time.sleep(sleep_time)

    # ------------------------------------------------------------------
    # Weekly runs
    # ------------------------------------------------------------------

    def ensure_weekly_run(self, week_of: str, now: Optional[datetime] = None) -> WeeklyRun:
        """Fetch the run for week_of, creating it on first sight"""
        if not is_ymd(week_of):
            raise ValueError(f"week_of must be YYYY-MM-DD, got {week_of!r}")
        stamp = now_utc_iso(now)

        def _ensure():
            with self.connect() as conn:
                cursor = conn.execute("""
                    INSERT OR IGNORE INTO weekly_runs (id, week_of, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (str(uuid.uuid4()), week_of, RunStatus.PENDING.value, stamp, stamp))
                if cursor.rowcount:
                    logger.info(f"Created weekly run for {week_of}")
                row = conn.execute("SELECT * FROM weekly_runs WHERE week_of = ?", (week_of,)).fetchone()
                return WeeklyRun.from_db_row(dict(row))

        return self.execute_with_retry(_ensure)

    def get_weekly_run(self, week_of: str) -> Optional[WeeklyRun]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM weekly_runs WHERE week_of = ?", (week_of,)).fetchone()
            return WeeklyRun.from_db_row(dict(row)) if row else None

    def get_weekly_run_by_id(self, run_id: str) -> Optional[WeeklyRun]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM weekly_runs WHERE id = ?", (run_id,)).fetchone()
            return WeeklyRun.from_db_row(dict(row)) if row else None

    def list_weekly_runs(self, limit: int = 20) -> List[WeeklyRun]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM weekly_runs ORDER BY week_of DESC LIMIT ?", (limit,)
            ).fetchall()
            return [WeeklyRun.from_db_row(dict(row)) for row in rows]

    def lock_weekly_run(self, run: WeeklyRun, now: Optional[datetime] = None) -> bool:
        """
        Freeze the selection for a run. Returns True only for the call that
        performed the transition; a run without candidates stays unlocked.
        """
        if run.locked_at:
            return False

        selected_id = run.selected_candidate_id
        if not selected_id:
            first = self.get_candidate_by_rank(run.id, 1)
            selected_id = first.id if first else None

        if not selected_id:
            logger.info(f"Week {run.week_of}: nothing to lock, no candidates yet")
            return False

        stamp = now_utc_iso(now)

        def _lock():
            with self.connect() as conn:
                cursor = conn.execute("""
                    UPDATE weekly_runs
                    SET selected_candidate_id = COALESCE(selected_candidate_id, ?),
                        locked_at = ?, status = ?, updated_at = ?
                    WHERE id = ? AND locked_at IS NULL
                """, (selected_id, stamp, RunStatus.LOCKED.value, stamp, run.id))
                return cursor.rowcount == 1

        locked = self.execute_with_retry(_lock)
        if locked:
            logger.info(f"Week {run.week_of}: locked")
        else:
            logger.debug(f"Week {run.week_of}: lock lost to a concurrent caller")
        return locked

    def mark_run_sent(self, run_id: str, now: Optional[datetime] = None) -> bool:
        stamp = now_utc_iso(now)

        def _mark():
            with self.connect() as conn:
                cursor = conn.execute("""
                    UPDATE weekly_runs
                    SET sent_at = ?, status = ?, updated_at = ?
                    WHERE id = ? AND sent_at IS NULL
                """, (stamp, RunStatus.SENT.value, stamp, run_id))
                return cursor.rowcount == 1

        return self.execute_with_retry(_mark)

    def select_candidate(self, run_id: str, candidate_id: str, focus_notes: Optional[str] = None,
                         now: Optional[datetime] = None) -> bool:
        """Manual selection; only possible while the run is unlocked"""
        stamp = now_utc_iso(now)

        def _select():
            with self.connect() as conn:
                cursor = conn.execute("""
                    UPDATE weekly_runs
                    SET selected_candidate_id = ?,
                        focus_notes = COALESCE(?, focus_notes),
                        updated_at = ?
                    WHERE id = ? AND locked_at IS NULL
                """, (candidate_id, focus_notes, stamp, run_id))
                return cursor.rowcount == 1

        return self.execute_with_retry(_select)

    def reset_weekly_run(self, run_id: str, now: Optional[datetime] = None):
        """Administrative reset: cascade delete dependents and return the run to pending"""
        stamp = now_utc_iso(now)

        def _reset():
            with self.connect() as conn:
                conn.execute("""
                    DELETE FROM send_recipients
                    WHERE send_id IN (SELECT id FROM sends WHERE weekly_run_id = ?)
                """, (run_id,))
                conn.execute("DELETE FROM sends WHERE weekly_run_id = ?", (run_id,))
                conn.execute("DELETE FROM candidates WHERE weekly_run_id = ?", (run_id,))
                conn.execute("""
                    UPDATE weekly_runs
                    SET status = ?, generated_at = NULL, locked_at = NULL, sent_at = NULL,
                        selected_candidate_id = NULL, updated_at = ?
                    WHERE id = ?
                """, (RunStatus.PENDING.value, stamp, run_id))

        self.execute_with_retry(_reset)
        logger.info(f"Weekly run {run_id} reset to pending")

    # ------------------------------------------------------------------
    # Candidates, sends, contacts
    # ------------------------------------------------------------------

    def get_candidates(self, run_id: str) -> List[Candidate]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM candidates WHERE weekly_run_id = ? ORDER BY rank", (run_id,)
            ).fetchall()
            return [Candidate.from_db_row(dict(row)) for row in rows]

    def get_candidate(self, candidate_id: str) -> Optional[Candidate]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM candidates WHERE id = ?", (candidate_id,)).fetchone()
            return Candidate.from_db_row(dict(row)) if row else None

    def get_candidate_by_rank(self, run_id: str, rank: int) -> Optional[Candidate]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM candidates WHERE weekly_run_id = ? AND rank = ? LIMIT 1", (run_id, rank)
            ).fetchone()
            return Candidate.from_db_row(dict(row)) if row else None

    def get_sends(self, run_id: str) -> List[Send]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sends WHERE weekly_run_id = ? ORDER BY created_at", (run_id,)
            ).fetchall()
            return [Send.from_db_row(dict(row)) for row in rows]

    def get_send_recipients(self, send_id: str) -> List[SendRecipient]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM send_recipients WHERE send_id = ? ORDER BY created_at, email", (send_id,)
            ).fetchall()
            return [SendRecipient.from_db_row(dict(row)) for row in rows]

    def recipient_counts(self, send_id: str) -> Dict[str, int]:
        counts = {status.value: 0 for status in RecipientStatus}
        with self.connect() as conn:
            for row in conn.execute("""
                SELECT status, COUNT(*) AS n FROM send_recipients
                WHERE send_id = ? GROUP BY status
            """, (send_id,)):
                counts[row['status']] = row['n']
        return counts

    def count_undelivered(self, run_id: str) -> int:
        """Recipients of this run still pending or failed"""
        with self.connect() as conn:
            return conn.execute("""
                SELECT COUNT(*) FROM send_recipients sr
                JOIN sends s ON s.id = sr.send_id
                WHERE s.weekly_run_id = ? AND sr.status != ?
            """, (run_id, RecipientStatus.SENT.value)).fetchone()[0]

    def get_active_contacts(self) -> List[Contact]:
        """Active contacts in delivery order: last name, first name, email"""
        with self.connect() as conn:
            rows = conn.execute("""
                SELECT id, first_name, last_name, email, status, order_count
                FROM contacts
                WHERE status = 'active'
                ORDER BY COALESCE(last_name, ''), COALESCE(first_name, ''), email
            """).fetchall()
            return [Contact.from_db_row(dict(row)) for row in rows]

    def add_contact(self, email: str, first_name: str = "", last_name: str = "",
                    order_count: int = 0, status: str = "active", contact_id: Optional[str] = None) -> str:
        """Insert a contact (standalone use and tests); returns its id"""
        contact_id = contact_id or str(uuid.uuid4())
        with self.connect() as conn:
            conn.execute("""
                INSERT INTO contacts (id, first_name, last_name, email, status, order_count)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (contact_id, first_name, last_name, email, status, order_count))
        return contact_id

# ============================================================================
# TICK COORDINATOR
# ============================================================================

class WeeklyCampaignScheduler:
    """Main scheduler orchestrator that coordinates all components"""

    def __init__(self, db_path: str, config_path: Optional[str] = None,
                 settings: Optional[Settings] = None,
                 content_provider: Optional[ContentProvider] = None,
                 mail_transport: Optional[MailTransport] = None,
                 show_progress: bool = False):
        from candidate_generator import CandidateGenerator
        from send_orchestrator import SendOrchestrator

        self.settings = settings or load_settings(config_path)
        self.db_manager = DatabaseManager(db_path)
        self.generator = CandidateGenerator(
            self.db_manager, content_provider or build_content_provider(self.settings)
        )
        self.orchestrator = SendOrchestrator(
            self.db_manager, self.settings,
            mail_transport or build_mail_transport(self.settings),
            show_progress=show_progress,
        )

        logger.info(
            f"Weekly scheduler initialized (tz={self.settings.timezone}, "
            f"environment={self.settings.environment})"
        )

    @property
    def timezone(self) -> str:
        return self.settings.timezone

    def tick(self, now: Optional[datetime] = None) -> TickResult:
        """Advance whichever stages are due at this minute"""
        now = now or utc_now()
        schedule = self.settings.schedule
        week = compute_week_of(now, self.timezone)
        result = TickResult(week_of=week, now=now)

        run = self.db_manager.ensure_weekly_run(week, now)

        if is_due(now, self.timezone, schedule.generate) and not run.generated_at:
            try:
                if self.generator.generate(run).generated > 0:
                    result.actions.append('generate')
            except Exception as e:
                self._record_stage_error(result, 'generate', e)

        run = self.db_manager.get_weekly_run_by_id(run.id)
        if is_due(now, self.timezone, schedule.lock) and not run.locked_at:
            try:
                if self.db_manager.lock_weekly_run(run, now):
                    result.actions.append('lock')
            except Exception as e:
                self._record_stage_error(result, 'lock', e)

        run = self.db_manager.get_weekly_run_by_id(run.id)
        if is_due(now, self.timezone, schedule.send):
            try:
                if self.orchestrator.send(run, now):
                    result.actions.append('send')
            except Exception as e:
                self._record_stage_error(result, 'send', e)

        logger.info(f"Tick {now_utc_iso(now)} week {week}: actions={result.actions or 'none'}")
        return result

    def _record_stage_error(self, result: TickResult, stage: str, error: Exception):
        logger.exception(f"Stage {stage} failed for week {result.week_of}: {error}")
        result.errors.append({'stage': stage, 'error': str(error)})

    def handle_tick_request(self, now: Union[datetime, str, None] = None) -> Dict[str, Any]:
        """
        Tick entry point for external triggers. An explicit ``now`` is a
        testing aid and is refused outside the dev environment.
        """
        if now is not None:
            if not self.settings.is_dev:
                raise ConfigurationError("now override is only allowed when ENVIRONMENT=dev")
            if isinstance(now, str):
                now = parse_instant(now)
        else:
            now = utc_now()

        result = self.tick(now)
        response = {
            'status': 'ok' if result.ok else 'error',
            'week_of': result.week_of,
            'actions': result.actions,
            'now': now_utc_iso(now),
            'now_local': now_in_tz_iso(self.timezone, now),
            'tz': self.timezone,
            'config': self.settings.schedule_dict(),
        }
        if result.errors:
            response['errors'] = result.errors
        return response

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------

    def run_week(self, week_of: Optional[str] = None, force: bool = False, reset: bool = False,
                 now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run generate, lock and send immediately, ignoring the schedule"""
        now = now or utc_now()
        week = week_of or compute_week_of(now, self.timezone)
        run = self.db_manager.ensure_weekly_run(week, now)

        if run.status == RunStatus.SENT.value and not reset:
            logger.info(f"Week {week} already sent; use reset to rebuild")
            return {
                'status': 'ok',
                'week_of': week,
                'note': 'Run already sent; skipping generate/lock/send. Use reset to rebuild.',
                'actions': {'generated': False, 'locked': False, 'sent': False},
                'weekly_run': run.to_dict(),
                'sends_for_run': len(self.db_manager.get_sends(run.id)),
            }

        if reset:
            self.db_manager.reset_weekly_run(run.id, now)
            run = self.db_manager.get_weekly_run_by_id(run.id)

        generation = self.generator.generate(run, force=force)
        run = self.db_manager.get_weekly_run_by_id(run.id)
        locked = self.db_manager.lock_weekly_run(run, now)
        run = self.db_manager.get_weekly_run_by_id(run.id)
        sent = self.orchestrator.send(run, now)
        run = self.db_manager.get_weekly_run_by_id(run.id)

        return {
            'status': 'ok',
            'week_of': week,
            'force': force,
            'reset': reset,
            'now': now_utc_iso(now),
            'now_local': now_in_tz_iso(self.timezone, now),
            'actions': {'generated': generation.generated > 0, 'locked': locked, 'sent': sent},
            'weekly_run': run.to_dict(),
            'sends_for_run': len(self.db_manager.get_sends(run.id)),
            'report': asdict(self.orchestrator.last_report) if self.orchestrator.last_report else None,
        }

    def select_candidate(self, week_of: str, rank: int, notes: Optional[str] = None) -> WeeklyRun:
        """Pick the candidate of the given rank before the run locks"""
        run = self.db_manager.get_weekly_run(week_of)
        if not run:
            raise CampaignError(f"No weekly run for {week_of}")
        if run.locked_at:
            raise CampaignError(f"Week {week_of} is locked; selection can no longer change")
        if rank not in (1, 2, 3):
            raise CampaignError(f"Rank must be 1, 2 or 3, got {rank}")

        candidate = self.db_manager.get_candidate_by_rank(run.id, rank)
        if not candidate:
            raise CampaignError(f"Week {week_of} has no candidate with rank {rank}")

        if not self.db_manager.select_candidate(run.id, candidate.id, notes):
            raise CampaignError(f"Week {week_of} was locked before the selection was saved")

        logger.info(f"Week {week_of}: selected rank {rank} ({candidate.funnel_stage})")
        return self.db_manager.get_weekly_run_by_id(run.id)

    def reset_week(self, week_of: str) -> WeeklyRun:
        run = self.db_manager.get_weekly_run(week_of)
        if not run:
            raise CampaignError(f"No weekly run for {week_of}")
        self.db_manager.reset_weekly_run(run.id)
        return self.db_manager.get_weekly_run_by_id(run.id)

    def get_week_status(self, week_of: str) -> Dict[str, Any]:
        """Run, candidates, selection and per-send recipient counts for a week"""
        run = self.db_manager.get_weekly_run(week_of)
        if not run:
            return {'week_of': week_of, 'weekly_run': None, 'candidates': [], 'selected': None, 'sends': [],
                    'undelivered': 0}

        candidates = self.db_manager.get_candidates(run.id)
        selected = next((c for c in candidates if c.id == run.selected_candidate_id), None)
        sends = [
            {
                'id': send.id,
                'candidate_id': send.candidate_id,
                'subject': send.subject,
                'created_at': send.created_at,
                'recipients': self.db_manager.recipient_counts(send.id),
            }
            for send in self.db_manager.get_sends(run.id)
        ]

        return {
            'week_of': week_of,
            'weekly_run': run.to_dict(),
            'candidates': [c.to_dict() for c in candidates],
            'selected': selected.to_dict() if selected else None,
            'sends': sends,
            'undelivered': self.db_manager.count_undelivered(run.id),
        }

    def list_weeks(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent weekly runs, newest first"""
        return [run.to_dict() for run in self.db_manager.list_weekly_runs(limit)]

# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def main():
    """Main entry point for the weekly scheduler"""
    import argparse

    parser = argparse.ArgumentParser(description='Weekly Campaign Scheduler')
    parser.add_argument('--db', required=True, help='SQLite database path')
    parser.add_argument('--config', help='Configuration YAML path')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command', required=True)

    tick_parser = subparsers.add_parser('tick', help='Advance whichever stages are due now')
    tick_parser.add_argument('--now', help='Override the current instant (ISO-8601, dev only)')

    run_parser = subparsers.add_parser('run', help='Generate, lock and send a week immediately')
    run_parser.add_argument('--week-of', help='Week (Monday, YYYY-MM-DD); defaults to current week')
    run_parser.add_argument('--force', action='store_true', help='Regenerate candidates')
    run_parser.add_argument('--reset', action='store_true', help='Reset the week before running')

    reset_parser = subparsers.add_parser('reset', help='Reset a week to pending')
    reset_parser.add_argument('--week-of', required=True, help='Week (Monday, YYYY-MM-DD)')

    select_parser = subparsers.add_parser('select', help='Select a candidate before lock')
    select_parser.add_argument('--week-of', required=True, help='Week (Monday, YYYY-MM-DD)')
    select_parser.add_argument('--rank', type=int, required=True, choices=[1, 2, 3])
    select_parser.add_argument('--notes', help='Focus notes for the week')

    status_parser = subparsers.add_parser('status', help='Show a week and its sends')
    status_parser.add_argument('--week-of', help='Week (Monday, YYYY-MM-DD); defaults to current week')

    list_parser = subparsers.add_parser('list', help='List recent weekly runs')
    list_parser.add_argument('--limit', type=int, default=20, help='Number of weeks to show')

    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    scheduler = WeeklyCampaignScheduler(args.db, args.config, show_progress=True)

    if args.command == 'tick':
        data = scheduler.handle_tick_request(args.now)
    elif args.command == 'run':
        data = scheduler.run_week(args.week_of, force=args.force, reset=args.reset)
    elif args.command == 'reset':
        data = scheduler.reset_week(args.week_of).to_dict()
    elif args.command == 'select':
        data = scheduler.select_candidate(args.week_of, args.rank, args.notes).to_dict()
    elif args.command == 'list':
        data = scheduler.list_weeks(args.limit)
    else:
        week = args.week_of or compute_week_of(utc_now(), scheduler.timezone)
        data = scheduler.get_week_status(week)

    print(json.dumps(data, indent=2))

if __name__ == '__main__':
    main()
