#!/usr/bin/env python3
"""
Candidate Generator

This module produces the week's three candidate emails, one per funnel
stage, from the configured content provider. Generation is all-or-nothing:
the three candidates and the run's generated_at are written in a single
transaction, and a provider answer with the wrong shape persists nothing.
"""

import sqlite3
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from campaign_lib.content_providers import ContentProvider
from campaign_lib.errors import CandidateValidationError
from campaign_lib.schedule_matcher import now_utc_iso
from weekly_scheduler import DatabaseManager, FunnelStage, RunStatus, WeeklyRun

logger = logging.getLogger(__name__)

# Configuration
CANDIDATE_COUNT = 3
CONTENT_CONSTRAINTS = {
    'no_emojis': True,
    'no_emdash': True,
    'never_discuss_pricing': True,
}

@dataclass
class GenerationResult:
    generated: int  # candidates written, 3 or 0
    skipped: bool
    candidate_ids: List[str] = field(default_factory=list)
    reason: Optional[str] = None

# ============================================================================
# VALIDATION
# ============================================================================

def validate_candidates(items: Any) -> List[Dict[str, Any]]:
    """Exactly three candidates with exactly one each of top, mid and bottom"""
    if not isinstance(items, list):
        raise CandidateValidationError(f"Provider returned {type(items).__name__}, expected a list")
    if len(items) != CANDIDATE_COUNT:
        raise CandidateValidationError(f"Expected exactly {CANDIDATE_COUNT} candidates, got {len(items)}")

    stages = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            raise CandidateValidationError(f"Candidate {idx + 1} is not an object")
        if not (item.get('subject') or '').strip():
            raise CandidateValidationError(f"Candidate {idx + 1} has no subject")
        stages.append(item.get('funnel_stage'))

    if sorted(stages, key=str) != sorted(stage.value for stage in FunnelStage):
        raise CandidateValidationError(
            f"Candidates must cover top, mid and bottom exactly once, got {stages}"
        )

    return sorted(items, key=lambda item: FunnelStage(item['funnel_stage']).rank)

# ============================================================================
# CANDIDATE GENERATOR
# ============================================================================

class CandidateGenerator:
    """Creates the candidate set for a weekly run"""

    def __init__(self, db_manager: DatabaseManager, provider: ContentProvider):
        self.db_manager = db_manager
        self.provider = provider

    def build_context(self, run: WeeklyRun) -> Dict[str, Any]:
        return {
            'week_of': run.week_of,
            'focus_notes': run.focus_notes,
            'policy_text': None,
            'constraints': dict(CONTENT_CONSTRAINTS),
        }

    def generate(self, run: WeeklyRun, force: bool = False,
                 now: Optional[datetime] = None) -> GenerationResult:
        """
        Generate candidates for ``run``. Existing candidates are kept unless
        ``force`` is set, in which case the run is reset (recipients, sends
        and candidates deleted, stage timestamps cleared) first.
        """
        existing = self.db_manager.get_candidates(run.id)
        if existing and not force:
            logger.info(f"Week {run.week_of}: candidates already exist, skipping generation")
            return GenerationResult(0, True, [c.id for c in existing], 'already_exists')

        if force:
            logger.info(f"Week {run.week_of}: forced regeneration, resetting run")
            self.db_manager.reset_weekly_run(run.id, now)
            run = self.db_manager.get_weekly_run_by_id(run.id)

        items = validate_candidates(self.provider.generate_candidates(self.build_context(run)))

        try:
            candidate_ids = self.db_manager.execute_with_retry(lambda: self._insert(run, items, now))
        except sqlite3.IntegrityError as e:
            # another generator committed first
            logger.info(f"Week {run.week_of}: concurrent generation detected ({e}), skipping")
            return GenerationResult(0, True, reason='concurrent_generation')

        logger.info(f"Week {run.week_of}: generated {len(candidate_ids)} candidates via {self.provider.name}")
        return GenerationResult(len(candidate_ids), False, candidate_ids)

    def _insert(self, run: WeeklyRun, items: List[Dict[str, Any]], now: Optional[datetime]) -> List[str]:
        stamp = now_utc_iso(now)
        candidate_ids = []

        with self.db_manager.connect() as conn:
            for item in items:
                candidate_id = str(uuid.uuid4())
                conn.execute("""
                    INSERT INTO candidates (
                        id, weekly_run_id, rank, funnel_stage, subject, preview_text,
                        body_html, body_text, body_markdown, cta, image_url, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    candidate_id,
                    run.id,
                    FunnelStage(item['funnel_stage']).rank,
                    item['funnel_stage'],
                    item['subject'].strip(),
                    item.get('preview_text'),
                    item.get('body_html'),
                    item.get('body_text'),
                    item.get('body_markdown'),
                    item.get('cta'),
                    item.get('image_url'),
                    stamp,
                ))
                candidate_ids.append(candidate_id)

            cursor = conn.execute("""
                UPDATE weekly_runs
                SET generated_at = ?, status = ?, updated_at = ?
                WHERE id = ? AND generated_at IS NULL
            """, (stamp, RunStatus.GENERATED.value, stamp, run.id))
            if cursor.rowcount != 1:
                raise sqlite3.IntegrityError(f"weekly run {run.id} already generated")

        return candidate_ids
