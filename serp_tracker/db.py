from __future__ import annotations
import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from serp_tracker.models import DEVICES, Account, Content, Keyword, SerpResult, competition_label

DB_PATH = Path(os.environ.get("SERP_TRACKER_DB", str(Path(__file__).parent / "serp_tracker.sqlite")))


class DuplicateContentError(ValueError):
    """같은 키워드에 같은 URL 콘텐츠가 이미 있음"""


def get_conn(db_path: Optional[Path] = None) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path or DB_PATH), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


@contextmanager
def conn_ctx(db_path: Optional[Path] = None) -> Iterator[sqlite3.Connection]:
    conn = get_conn(db_path)
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


_SERP_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS serp_results (
  serp_id         INTEGER PRIMARY KEY AUTOINCREMENT,
  content_id      INTEGER NOT NULL,
  device          TEXT NOT NULL CHECK(device IN ('PC', 'MO')),
  rank            INTEGER,
  rank_change     INTEGER NOT NULL DEFAULT 0,
  is_exposed      INTEGER NOT NULL DEFAULT 0,
  captured_at     TEXT NOT NULL,
  created_at      TEXT NOT NULL DEFAULT (datetime('now')),
  FOREIGN KEY(content_id) REFERENCES contents(content_id) ON DELETE CASCADE
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_serp_daily ON serp_results(content_id, device, captured_at);
CREATE INDEX IF NOT EXISTS idx_serp_captured ON serp_results(captured_at);
"""


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        PRAGMA journal_mode=WAL;
        PRAGMA synchronous=NORMAL;
        PRAGMA foreign_keys=ON;

        CREATE TABLE IF NOT EXISTS accounts (
          account_id          INTEGER PRIMARY KEY AUTOINCREMENT,
          name                TEXT NOT NULL,
          platform            TEXT NOT NULL DEFAULT 'naver',
          url                 TEXT,
          blog_score          INTEGER NOT NULL DEFAULT 50,
          daily_publish_limit INTEGER NOT NULL DEFAULT 2,
          created_at          TEXT NOT NULL DEFAULT (datetime('now')),
          updated_at          TEXT NOT NULL DEFAULT (datetime('now'))
        );
        CREATE INDEX IF NOT EXISTS idx_accounts_score ON accounts(blog_score);

        CREATE TABLE IF NOT EXISTS keywords (
          keyword_id           INTEGER PRIMARY KEY AUTOINCREMENT,
          keyword              TEXT NOT NULL UNIQUE,
          sub_keyword          TEXT,
          monthly_search_pc    INTEGER NOT NULL DEFAULT 0,
          monthly_search_mo    INTEGER NOT NULL DEFAULT 0,
          monthly_search_total INTEGER NOT NULL DEFAULT 0,
          competition          TEXT NOT NULL DEFAULT '알 수 없음',
          mobile_ratio         INTEGER NOT NULL DEFAULT 0,
          difficulty_score     INTEGER,
          opportunity_score    INTEGER,
          created_at           TEXT NOT NULL DEFAULT (datetime('now')),
          updated_at           TEXT NOT NULL DEFAULT (datetime('now'))
        );

        CREATE TABLE IF NOT EXISTS contents (
          content_id      INTEGER PRIMARY KEY AUTOINCREMENT,
          keyword_id      INTEGER NOT NULL,
          account_id      INTEGER,
          url             TEXT NOT NULL,
          title           TEXT,
          published_date  TEXT,
          is_active       INTEGER NOT NULL DEFAULT 1,
          camfit_link     INTEGER NOT NULL DEFAULT 0,
          source_file     TEXT,
          created_at      TEXT NOT NULL DEFAULT (datetime('now')),
          updated_at      TEXT NOT NULL DEFAULT (datetime('now')),
          FOREIGN KEY(keyword_id) REFERENCES keywords(keyword_id) ON DELETE CASCADE,
          FOREIGN KEY(account_id) REFERENCES accounts(account_id) ON DELETE SET NULL
        );
        CREATE UNIQUE INDEX IF NOT EXISTS ux_contents_keyword_url ON contents(keyword_id, url);
        CREATE INDEX IF NOT EXISTS idx_contents_account ON contents(account_id);

        CREATE TABLE IF NOT EXISTS settings (
          key          TEXT PRIMARY KEY,
          value        TEXT,
          description  TEXT,
          updated_at   TEXT NOT NULL DEFAULT (datetime('now'))
        );
        """
    )

    # 마이그레이션: 구 keywords 테이블에 없는 컬럼 추가
    kw_cols = _table_columns(conn, "keywords")
    for col, ddl in (
        ("sub_keyword", "TEXT"),
        ("monthly_search_pc", "INTEGER NOT NULL DEFAULT 0"),
        ("monthly_search_mo", "INTEGER NOT NULL DEFAULT 0"),
        ("monthly_search_total", "INTEGER NOT NULL DEFAULT 0"),
        ("competition", "TEXT NOT NULL DEFAULT '알 수 없음'"),
        ("mobile_ratio", "INTEGER NOT NULL DEFAULT 0"),
        ("difficulty_score", "INTEGER"),
        ("opportunity_score", "INTEGER"),
        ("created_at", "TEXT"),
        ("updated_at", "TEXT"),
    ):
        if col not in kw_cols:
            conn.execute(f"ALTER TABLE keywords ADD COLUMN {col} {ddl}")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_keywords_volume ON keywords(monthly_search_total)")

    # 마이그레이션: 키워드 직결 SERP(구 스키마) → 콘텐츠 직결 SERP
    serp_cols = _table_columns(conn, "serp_results")
    if serp_cols and "content_id" not in serp_cols:
        migrate_legacy_serp(conn)

    conn.executescript(_SERP_TABLE_SQL)


def migrate_legacy_serp(conn: sqlite3.Connection) -> Dict[str, int]:
    """
    구 스키마(serp_results.keyword_id, keywords.url/account_id)를 1회 변환.
    URL이 있는 키워드마다 콘텐츠 1건을 만들고 해당 키워드의 SERP 행을 옮긴다.
    URL이 없는 키워드의 SERP 행은 옮길 대상이 없어 버린다.
    """
    serp_cols = _table_columns(conn, "serp_results")
    if not serp_cols or "content_id" in serp_cols or "keyword_id" not in serp_cols:
        return {"contents_created": 0, "serp_migrated": 0, "serp_dropped": 0}

    kw_cols = _table_columns(conn, "keywords")
    url_expr = "url" if "url" in kw_cols else "NULL"
    acc_expr = "account_id" if "account_id" in kw_cols else "NULL"

    content_map: Dict[int, int] = {}
    created = 0
    kw_rows = conn.execute(
        f"SELECT keyword_id, {url_expr} AS url, {acc_expr} AS account_id FROM keywords"
    ).fetchall()
    for kw in kw_rows:
        url = (kw["url"] or "").strip()
        if not url:
            continue
        cur = conn.execute(
            "INSERT OR IGNORE INTO contents(keyword_id, account_id, url, is_active) VALUES (?, ?, ?, 1)",
            (kw["keyword_id"], kw["account_id"], url),
        )
        created += cur.rowcount
        row = conn.execute(
            "SELECT content_id FROM contents WHERE keyword_id=? AND url=?",
            (kw["keyword_id"], url),
        ).fetchone()
        content_map[int(kw["keyword_id"])] = int(row["content_id"])

    # 구 인덱스 이름이 새 테이블 인덱스와 겹치지 않도록 먼저 제거
    for idx in conn.execute(
        "SELECT name FROM sqlite_master WHERE type='index' AND tbl_name='serp_results' AND sql IS NOT NULL"
    ).fetchall():
        conn.execute(f"DROP INDEX IF EXISTS {idx['name']}")
    conn.execute("ALTER TABLE serp_results RENAME TO serp_results_legacy")
    conn.executescript(_SERP_TABLE_SQL)

    migrated = 0
    dropped = 0
    legacy_rows = conn.execute(
        """
        SELECT keyword_id, device, rank, rank_change, is_exposed, captured_at
        FROM serp_results_legacy
        ORDER BY captured_at ASC
        """
    ).fetchall()
    for r in legacy_rows:
        content_id = content_map.get(int(r["keyword_id"]))
        if content_id is None or r["device"] not in DEVICES:
            dropped += 1
            continue
        upsert_serp_result(
            conn,
            content_id=content_id,
            device=r["device"],
            rank=r["rank"],
            rank_change=r["rank_change"] or 0,
            captured_at=str(r["captured_at"])[:10],
        )
        migrated += 1

    conn.execute("DROP TABLE serp_results_legacy")
    return {"contents_created": created, "serp_migrated": migrated, "serp_dropped": dropped}


def _with_id(row: sqlite3.Row, id_col: str) -> Dict[str, Any]:
    d = dict(row)
    d["id"] = d[id_col]
    return d


# ────────────────────────────────────────────
# 계정
# ────────────────────────────────────────────

def create_account(
    conn: sqlite3.Connection,
    name: str,
    platform: str = "naver",
    url: Optional[str] = None,
    blog_score: int = 50,
    daily_publish_limit: int = 2,
) -> int:
    name = (name or "").strip()
    if not name:
        raise ValueError("name is required")
    cur = conn.execute(
        """
        INSERT INTO accounts(name, platform, url, blog_score, daily_publish_limit)
        VALUES (?, ?, ?, ?, ?)
        """,
        (name, platform or "naver", url or None, int(blog_score), int(daily_publish_limit)),
    )
    return int(cur.lastrowid)


def update_account(conn: sqlite3.Connection, account_id: int, data: Dict[str, Any]) -> bool:
    sets: List[str] = []
    vals: List[Any] = []
    for key in ("name", "platform", "url", "blog_score", "daily_publish_limit"):
        if key in data:
            sets.append(f"{key}=?")
            vals.append(data[key] if key != "url" else (data[key] or None))
    if not sets:
        return get_account(conn, account_id) is not None
    vals.append(account_id)
    cur = conn.execute(
        f"UPDATE accounts SET {', '.join(sets)}, updated_at=datetime('now') WHERE account_id=?",
        vals,
    )
    return cur.rowcount > 0


def set_blog_score(conn: sqlite3.Connection, account_id: int, blog_score: int) -> None:
    conn.execute(
        "UPDATE accounts SET blog_score=?, updated_at=datetime('now') WHERE account_id=?",
        (int(blog_score), account_id),
    )


def get_account(conn: sqlite3.Connection, account_id: int) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM accounts WHERE account_id=?", (account_id,)).fetchone()
    return _with_id(row, "account_id") if row else None


def list_accounts(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM accounts ORDER BY blog_score DESC, account_id ASC"
    ).fetchall()
    return [_with_id(r, "account_id") for r in rows]


def load_accounts(conn: sqlite3.Connection) -> List[Account]:
    return [
        Account(
            id=r["account_id"],
            name=r["name"],
            platform=r["platform"],
            url=r["url"],
            blog_score=int(r["blog_score"]),
            daily_publish_limit=int(r["daily_publish_limit"]),
        )
        for r in list_accounts(conn)
    ]


def delete_account(conn: sqlite3.Connection, account_id: int) -> bool:
    row = conn.execute("SELECT name FROM accounts WHERE account_id=?", (account_id,)).fetchone()
    if not row:
        return False
    linked = conn.execute(
        "SELECT COUNT(*) AS cnt FROM contents WHERE account_id=?", (account_id,)
    ).fetchone()["cnt"]
    if linked:
        raise ValueError(f'"{row["name"]}" 계정에 {linked}개의 콘텐츠가 연결되어 있어 삭제할 수 없습니다.')
    conn.execute("DELETE FROM accounts WHERE account_id=?", (account_id,))
    return True


# ────────────────────────────────────────────
# 키워드
# ────────────────────────────────────────────

def create_keyword(
    conn: sqlite3.Connection,
    keyword: str,
    sub_keyword: Optional[str] = None,
    monthly_search_pc: int = 0,
    monthly_search_mo: int = 0,
    competition: Optional[str] = None,
) -> int:
    keyword = " ".join((keyword or "").split())
    if not keyword:
        raise ValueError("keyword is required")
    pc, mo = int(monthly_search_pc or 0), int(monthly_search_mo or 0)
    total = pc + mo
    cur = conn.execute(
        """
        INSERT INTO keywords(keyword, sub_keyword, monthly_search_pc, monthly_search_mo,
                             monthly_search_total, competition, mobile_ratio)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            keyword,
            (sub_keyword or "").strip() or None,
            pc,
            mo,
            total,
            competition_label(competition),
            round(mo / total * 100) if total > 0 else 0,
        ),
    )
    return int(cur.lastrowid)


def update_keyword(conn: sqlite3.Connection, keyword_id: int, data: Dict[str, Any]) -> bool:
    row = conn.execute("SELECT * FROM keywords WHERE keyword_id=?", (keyword_id,)).fetchone()
    if not row:
        return False
    sets: List[str] = []
    vals: List[Any] = []
    if "keyword" in data:
        text = " ".join((data["keyword"] or "").split())
        if not text:
            raise ValueError("keyword is required")
        sets.append("keyword=?")
        vals.append(text)
    if "sub_keyword" in data:
        sets.append("sub_keyword=?")
        vals.append((data["sub_keyword"] or "").strip() or None)
    if "competition" in data:
        sets.append("competition=?")
        vals.append(competition_label(data["competition"]))
    # 수동 수정 시 total = pc + mo
    if "monthly_search_pc" in data or "monthly_search_mo" in data:
        pc = int(data.get("monthly_search_pc", row["monthly_search_pc"]) or 0)
        mo = int(data.get("monthly_search_mo", row["monthly_search_mo"]) or 0)
        total = pc + mo
        sets += ["monthly_search_pc=?", "monthly_search_mo=?", "monthly_search_total=?", "mobile_ratio=?"]
        vals += [pc, mo, total, round(mo / total * 100) if total > 0 else 0]
    if not sets:
        return True
    vals.append(keyword_id)
    conn.execute(
        f"UPDATE keywords SET {', '.join(sets)}, updated_at=datetime('now') WHERE keyword_id=?",
        vals,
    )
    return True


def update_keyword_volume(
    conn: sqlite3.Connection,
    keyword_id: int,
    pc_volume: int,
    mo_volume: int,
    total_volume: int,
    competition: Optional[str],
) -> None:
    conn.execute(
        """
        UPDATE keywords
        SET monthly_search_pc=?, monthly_search_mo=?, monthly_search_total=?,
            competition=?, mobile_ratio=?, updated_at=datetime('now')
        WHERE keyword_id=?
        """,
        (
            pc_volume,
            mo_volume,
            total_volume,
            competition_label(competition),
            round(mo_volume / total_volume * 100) if total_volume > 0 else 0,
            keyword_id,
        ),
    )


def update_keyword_metrics(
    conn: sqlite3.Connection, keyword_id: int, opportunity_score: int, difficulty_score: int
) -> None:
    conn.execute(
        """
        UPDATE keywords
        SET opportunity_score=?, difficulty_score=?, updated_at=datetime('now')
        WHERE keyword_id=?
        """,
        (opportunity_score, difficulty_score, keyword_id),
    )


def bulk_upsert_keywords(conn: sqlite3.Connection, items: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    """키워드 텍스트 기준 일괄 동기화. 이미 있으면 sub_keyword/competition만 갱신."""
    created = updated = 0
    for it in items:
        text = " ".join((it.get("keyword") or "").split())
        if not text:
            continue
        row = conn.execute("SELECT keyword_id FROM keywords WHERE keyword=?", (text,)).fetchone()
        if row:
            patch = {k: it[k] for k in ("sub_keyword", "competition") if it.get(k)}
            update_keyword(conn, int(row["keyword_id"]), patch)
            updated += 1
        else:
            create_keyword(
                conn,
                text,
                sub_keyword=it.get("sub_keyword"),
                monthly_search_pc=it.get("monthly_search_pc", 0),
                monthly_search_mo=it.get("monthly_search_mo", 0),
                competition=it.get("competition"),
            )
            created += 1
    return {"created": created, "updated": updated}


def get_keyword(conn: sqlite3.Connection, keyword_id: int) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM keywords WHERE keyword_id=?", (keyword_id,)).fetchone()
    return _with_id(row, "keyword_id") if row else None


def list_keywords(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM keywords ORDER BY monthly_search_total DESC, keyword_id ASC"
    ).fetchall()
    return [_with_id(r, "keyword_id") for r in rows]


def delete_keyword(conn: sqlite3.Connection, keyword_id: int) -> bool:
    cur = conn.execute("DELETE FROM keywords WHERE keyword_id=?", (keyword_id,))
    return cur.rowcount > 0


# ────────────────────────────────────────────
# 콘텐츠
# ────────────────────────────────────────────

def create_content(
    conn: sqlite3.Connection,
    keyword_id: int,
    url: str,
    account_id: Optional[int] = None,
    title: Optional[str] = None,
    published_date: Optional[str] = None,
    is_active: bool = True,
    camfit_link: bool = False,
    source_file: Optional[str] = None,
) -> int:
    url = (url or "").strip()
    if not url:
        raise ValueError("url is required")
    try:
        cur = conn.execute(
            """
            INSERT INTO contents(keyword_id, account_id, url, title, published_date,
                                 is_active, camfit_link, source_file)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                keyword_id,
                account_id,
                url,
                title,
                published_date,
                1 if is_active else 0,
                1 if camfit_link else 0,
                source_file,
            ),
        )
    except sqlite3.IntegrityError as e:
        if "UNIQUE" in str(e):
            raise DuplicateContentError("이미 등록된 콘텐츠입니다 (같은 키워드에 같은 URL).") from e
        raise
    return int(cur.lastrowid)


def update_content(conn: sqlite3.Connection, content_id: int, data: Dict[str, Any]) -> bool:
    sets: List[str] = []
    vals: List[Any] = []
    for key in ("keyword_id", "account_id", "url", "title", "published_date", "source_file"):
        if key in data:
            sets.append(f"{key}=?")
            vals.append(data[key])
    for key in ("is_active", "camfit_link"):
        if key in data:
            sets.append(f"{key}=?")
            vals.append(1 if data[key] else 0)
    if not sets:
        return get_content(conn, content_id) is not None
    vals.append(content_id)
    try:
        cur = conn.execute(
            f"UPDATE contents SET {', '.join(sets)}, updated_at=datetime('now') WHERE content_id=?",
            vals,
        )
    except sqlite3.IntegrityError as e:
        if "UNIQUE" in str(e):
            raise DuplicateContentError("이미 등록된 콘텐츠입니다 (같은 키워드에 같은 URL).") from e
        raise
    return cur.rowcount > 0


def set_content_active(conn: sqlite3.Connection, content_id: int, is_active: bool) -> None:
    conn.execute(
        "UPDATE contents SET is_active=?, updated_at=datetime('now') WHERE content_id=?",
        (1 if is_active else 0, content_id),
    )


def _content_dict(row: sqlite3.Row) -> Dict[str, Any]:
    d = _with_id(row, "content_id")
    d["is_active"] = bool(d["is_active"])
    d["camfit_link"] = bool(d["camfit_link"])
    return d


def get_content(conn: sqlite3.Connection, content_id: int) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM contents WHERE content_id=?", (content_id,)).fetchone()
    return _content_dict(row) if row else None


def list_contents(
    conn: sqlite3.Connection,
    keyword_id: Optional[int] = None,
    account_id: Optional[int] = None,
    is_active: Optional[bool] = None,
) -> List[Dict[str, Any]]:
    where: List[str] = []
    vals: List[Any] = []
    if keyword_id is not None:
        where.append("c.keyword_id=?")
        vals.append(keyword_id)
    if account_id is not None:
        where.append("c.account_id=?")
        vals.append(account_id)
    if is_active is not None:
        where.append("c.is_active=?")
        vals.append(1 if is_active else 0)
    sql = """
        SELECT c.*, k.keyword, k.sub_keyword, a.name AS account_name
        FROM contents c
        JOIN keywords k ON k.keyword_id = c.keyword_id
        LEFT JOIN accounts a ON a.account_id = c.account_id
    """
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY COALESCE(c.published_date, '') DESC, c.content_id DESC"
    return [_content_dict(r) for r in conn.execute(sql, vals).fetchall()]


def delete_content(conn: sqlite3.Connection, content_id: int) -> bool:
    cur = conn.execute("DELETE FROM contents WHERE content_id=?", (content_id,))
    return cur.rowcount > 0


# ────────────────────────────────────────────
# SERP 결과
# ────────────────────────────────────────────

def upsert_serp_result(
    conn: sqlite3.Connection,
    content_id: int,
    device: str,
    rank: Optional[int],
    rank_change: int,
    captured_at: Optional[str] = None,
) -> None:
    if device not in DEVICES:
        raise ValueError(f"unknown device: {device}")
    captured = captured_at or date.today().isoformat()
    conn.execute(
        """
        INSERT INTO serp_results(content_id, device, rank, rank_change, is_exposed, captured_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(content_id, device, captured_at) DO UPDATE SET
          rank=excluded.rank,
          rank_change=excluded.rank_change,
          is_exposed=excluded.is_exposed,
          created_at=datetime('now')
        """,
        (content_id, device, rank, int(rank_change), 1 if rank is not None else 0, captured),
    )


def previous_rank(
    conn: sqlite3.Connection, content_id: int, device: str, before: Optional[str] = None
) -> Optional[int]:
    """같은 콘텐츠·디바이스에서 before 날짜 직전 캡처의 순위"""
    before = before or date.today().isoformat()
    row = conn.execute(
        """
        SELECT rank FROM serp_results
        WHERE content_id=? AND device=? AND captured_at < ?
        ORDER BY captured_at DESC LIMIT 1
        """,
        (content_id, device, before),
    ).fetchone()
    return row["rank"] if row else None


def _serp_from_row(r: sqlite3.Row) -> SerpResult:
    return SerpResult(
        id=r["serp_id"],
        content_id=r["content_id"],
        device=r["device"],
        rank=r["rank"],
        rank_change=int(r["rank_change"] or 0),
        is_exposed=bool(r["is_exposed"]),
        captured_at=r["captured_at"],
    )


def serp_history(conn: sqlite3.Connection, content_id: int, days: int = 30) -> List[Dict[str, Any]]:
    since = (date.today() - timedelta(days=int(days))).isoformat()
    rows = conn.execute(
        """
        SELECT * FROM serp_results
        WHERE content_id=? AND captured_at >= ?
        ORDER BY captured_at DESC, device ASC
        """,
        (content_id, since),
    ).fetchall()
    out = []
    for r in rows:
        d = _with_id(r, "serp_id")
        d["is_exposed"] = bool(d["is_exposed"])
        out.append(d)
    return out


def latest_serp_by_content(conn: sqlite3.Connection) -> Dict[int, Dict[str, SerpResult]]:
    """content_id → {"PC": 최신행, "MO": 최신행}"""
    latest: Dict[int, Dict[str, SerpResult]] = {}
    rows = conn.execute(
        "SELECT * FROM serp_results ORDER BY captured_at DESC, serp_id DESC"
    ).fetchall()
    for r in rows:
        per_device = latest.setdefault(int(r["content_id"]), {})
        if r["device"] not in per_device:
            per_device[r["device"]] = _serp_from_row(r)
    return latest


def load_keyword_graph(conn: sqlite3.Connection, active_only: bool = False) -> List[Keyword]:
    """키워드 + 콘텐츠 + 최신 PC/MO SERP (스코어링/리포트 입력)"""
    serp = latest_serp_by_content(conn)
    keywords: Dict[int, Keyword] = {}
    for r in conn.execute(
        "SELECT * FROM keywords ORDER BY monthly_search_total DESC, keyword_id ASC"
    ).fetchall():
        keywords[int(r["keyword_id"])] = Keyword(
            id=r["keyword_id"],
            keyword=r["keyword"],
            sub_keyword=r["sub_keyword"],
            monthly_search_pc=int(r["monthly_search_pc"] or 0),
            monthly_search_mo=int(r["monthly_search_mo"] or 0),
            monthly_search_total=int(r["monthly_search_total"] or 0),
            competition=r["competition"],
            mobile_ratio=int(r["mobile_ratio"] or 0),
            difficulty_score=r["difficulty_score"],
            opportunity_score=r["opportunity_score"],
        )

    sql = """
        SELECT c.*, a.name AS account_name
        FROM contents c
        LEFT JOIN accounts a ON a.account_id = c.account_id
    """
    if active_only:
        sql += " WHERE c.is_active = 1"
    sql += " ORDER BY COALESCE(c.published_date, '') DESC, c.content_id DESC"
    for r in conn.execute(sql).fetchall():
        kw = keywords.get(int(r["keyword_id"]))
        if kw is None:
            continue
        latest = serp.get(int(r["content_id"]), {})
        kw.contents.append(
            Content(
                id=r["content_id"],
                keyword_id=r["keyword_id"],
                url=r["url"],
                account_id=r["account_id"],
                account_name=r["account_name"],
                title=r["title"],
                published_date=r["published_date"],
                is_active=bool(r["is_active"]),
                camfit_link=bool(r["camfit_link"]),
                source_file=r["source_file"],
                pc=latest.get("PC"),
                mo=latest.get("MO"),
            )
        )
    return list(keywords.values())


# ────────────────────────────────────────────
# 설정 (key → JSON)
# ────────────────────────────────────────────

def get_setting(conn: sqlite3.Connection, key: str) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    if not row or row["value"] is None:
        return None
    return json.loads(row["value"])


def set_setting(
    conn: sqlite3.Connection, key: str, value: Dict[str, Any], description: Optional[str] = None
) -> None:
    conn.execute(
        """
        INSERT INTO settings(key, value, description, updated_at)
        VALUES (?, ?, ?, datetime('now'))
        ON CONFLICT(key) DO UPDATE SET
          value=excluded.value,
          description=COALESCE(excluded.description, settings.description),
          updated_at=datetime('now')
        """,
        (key, json.dumps(value, ensure_ascii=False), description),
    )


def list_settings(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM settings ORDER BY key").fetchall()
    out = []
    for r in rows:
        d = dict(r)
        d["value"] = json.loads(r["value"]) if r["value"] else None
        out.append(d)
    return out


def seed_default_settings(
    conn: sqlite3.Connection,
    defaults: Dict[str, Dict[str, Any]],
    descriptions: Optional[Dict[str, str]] = None,
) -> int:
    """없는 키만 기본값으로 채움"""
    descriptions = descriptions or {}
    inserted = 0
    for key, value in defaults.items():
        cur = conn.execute(
            "INSERT OR IGNORE INTO settings(key, value, description) VALUES (?, ?, ?)",
            (key, json.dumps(value, ensure_ascii=False), descriptions.get(key)),
        )
        inserted += cur.rowcount
    return inserted
