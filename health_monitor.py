#!/usr/bin/env python3
"""
Health Monitor for the Weekly Campaign Scheduler

This module provides health checks and metrics for the weekly ledger:
database connectivity, the most recent sent week, the failed-recipient
backlog and runs that were locked but never delivered.
"""

import sqlite3
import json
import logging
import os
from datetime import datetime, date, timedelta
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, asdict

logger = logging.getLogger(__name__)

# Thresholds
STALE_SEND_DAYS = 14
FAILED_BACKLOG_THRESHOLD = 25

# ============================================================================
# HEALTH CHECK DATA STRUCTURES
# ============================================================================

@dataclass
class HealthStatus:
    """Overall health status of the scheduler system"""
    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: str
    database_connected: bool
    last_sent_week: Optional[str]
    failed_recipients: int
    locked_unsent_runs: List[str]
    issues: List[str]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return asdict(self)

@dataclass
class SystemMetrics:
    """Detailed system metrics for monitoring"""
    timestamp: str
    runs_by_status: Dict[str, int]
    recipients_by_status: Dict[str, int]
    total_contacts: int
    active_contacts: int
    db_size_mb: float

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return asdict(self)

# ============================================================================
# HEALTH MONITOR CLASS
# ============================================================================

class HealthMonitor:
    """Health monitoring and metrics collection for the weekly scheduler"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.start_time = datetime.now()

    def get_health_status(self, today: Optional[date] = None) -> HealthStatus:
        """Get current health status of the system"""
        today = today or date.today()
        issues = []

        db_connected = self.check_db_connection()
        if not db_connected:
            return HealthStatus(
                status="unhealthy",
                timestamp=datetime.now().isoformat(),
                database_connected=False,
                last_sent_week=None,
                failed_recipients=0,
                locked_unsent_runs=[],
                issues=["Database connection failed"],
            )

        last_sent = self.get_last_sent_week()
        if last_sent:
            age = today - date.fromisoformat(last_sent)
            if age > timedelta(days=STALE_SEND_DAYS):
                issues.append(f"Last sent week was {last_sent} ({age.days} days ago)")
        else:
            issues.append("No sent weeks found")

        failed = self.count_failed_recipients()
        if failed > FAILED_BACKLOG_THRESHOLD:
            issues.append(f"Large failed recipient backlog: {failed}")

        # the current week may legitimately sit between lock and send
        current_monday = (today - timedelta(days=today.weekday())).isoformat()
        locked_unsent = [week for week in self.get_locked_unsent_weeks() if week < current_monday]
        if locked_unsent:
            issues.append(f"Locked but never sent: {', '.join(locked_unsent)}")

        return HealthStatus(
            status="degraded" if issues else "healthy",
            timestamp=datetime.now().isoformat(),
            database_connected=True,
            last_sent_week=last_sent,
            failed_recipients=failed,
            locked_unsent_runs=locked_unsent,
            issues=issues,
        )

    def get_metrics(self) -> SystemMetrics:
        """Get detailed system metrics"""
        return SystemMetrics(
            timestamp=datetime.now().isoformat(),
            runs_by_status=self._group_counts("SELECT status, COUNT(*) FROM weekly_runs GROUP BY status"),
            recipients_by_status=self._group_counts(
                "SELECT status, COUNT(*) FROM send_recipients GROUP BY status"
            ),
            total_contacts=self._scalar("SELECT COUNT(*) FROM contacts"),
            active_contacts=self._scalar("SELECT COUNT(*) FROM contacts WHERE status = 'active'"),
            db_size_mb=self._get_db_size_mb(),
        )

    def check_db_connection(self) -> bool:
        """Check if the database is reachable and holds the ledger"""
        if not os.path.exists(self.db_path):
            return False
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute("SELECT 1 FROM weekly_runs LIMIT 1")
            return True
        except sqlite3.Error as e:
            logger.error(f"Database connection check failed: {e}")
            return False

    def get_last_sent_week(self) -> Optional[str]:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute("SELECT MAX(week_of) FROM weekly_runs WHERE sent_at IS NOT NULL").fetchone()
            return row[0] if row else None

    def count_failed_recipients(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM send_recipients WHERE status = 'failed'")

    def get_locked_unsent_weeks(self) -> List[str]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute("""
                SELECT week_of FROM weekly_runs
                WHERE locked_at IS NOT NULL AND sent_at IS NULL
                ORDER BY week_of
            """).fetchall()
            return [row[0] for row in rows]

    def _scalar(self, query: str) -> int:
        with sqlite3.connect(self.db_path) as conn:
            return conn.execute(query).fetchone()[0]

    def _group_counts(self, query: str) -> Dict[str, int]:
        with sqlite3.connect(self.db_path) as conn:
            return {status: count for status, count in conn.execute(query).fetchall()}

    def _get_db_size_mb(self) -> float:
        """Get database size in MB"""
        return os.path.getsize(self.db_path) / (1024 * 1024)

    def get_system_summary(self) -> Dict[str, Any]:
        """Get a comprehensive system summary"""
        health = self.get_health_status()
        summary = {
            "health_status": health.to_dict(),
            "metrics": self.get_metrics().to_dict() if health.database_connected else None,
            "system_info": {
                "uptime_seconds": (datetime.now() - self.start_time).total_seconds(),
                "database_path": self.db_path,
                "monitoring_timestamp": datetime.now().isoformat()
            }
        }
        return summary

# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def main():
    """Main entry point for health monitoring"""
    import argparse

    parser = argparse.ArgumentParser(description='Weekly Campaign Scheduler Health Monitor')
    parser.add_argument('--db', required=True, help='SQLite database path')
    parser.add_argument('--json', action='store_true', help='Output in JSON format')

    args = parser.parse_args()

    monitor = HealthMonitor(args.db)
    data = monitor.get_system_summary()

    if args.json:
        print(json.dumps(data, indent=2))
        return

    health = data['health_status']
    print(f"System Status: {health['status'].upper()}")
    print(f"Database Connected: {health['database_connected']}")
    print(f"Last Sent Week: {health['last_sent_week'] or 'Never'}")
    print(f"Failed Recipients: {health['failed_recipients']}")
    if health['issues']:
        print("Issues:")
        for issue in health['issues']:
            print(f"  - {issue}")

    metrics = data['metrics']
    if metrics:
        print(f"\nSystem Metrics (as of {metrics['timestamp']}):")
        print(f"Runs by status: {metrics['runs_by_status']}")
        print(f"Recipients by status: {metrics['recipients_by_status']}")
        print(f"Contacts: {metrics['active_contacts']:,} active of {metrics['total_contacts']:,}")
        print(f"Database Size: {metrics['db_size_mb']:.1f} MB")

if __name__ == '__main__':
    main()
