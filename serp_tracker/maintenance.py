from __future__ import annotations
import os
import sqlite3
from typing import Dict, Optional


def cleanup_serp_history(conn: sqlite3.Connection, keep_days: int = 180) -> int:
    cur = conn.execute(
        "DELETE FROM serp_results WHERE captured_at < date('now', ?)",
        (f"-{int(keep_days)} days",),
    )
    return cur.rowcount


def cleanup_all(conn: sqlite3.Connection, keep_days: Optional[int] = None) -> Dict[str, int]:
    """SERP 보관 정책 적용 (SERP_KEEP_DAYS, 기본 180일)"""
    if keep_days is None:
        keep_days = int(os.environ.get("SERP_KEEP_DAYS", "180"))
    return {
        "serp_results_deleted": cleanup_serp_history(conn, keep_days),
    }
