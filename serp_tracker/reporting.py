from __future__ import annotations
import math
import sqlite3
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

from serp_tracker import db
from serp_tracker.models import Account, Content, Keyword, Recommendation, normalize_competition
from serp_tracker.scoring import account_tier, best_rank, daily_limit, exposure_probability
from serp_tracker.settings import DailyPublishLimits


# 경쟁도별 추천 계정 지수 구간
ACCOUNT_SCORE_BANDS = {
    "high": (60, 100),
    "medium": (35, 69),
    "low": (0, 34),
    "unknown": (0, 100),
}

STATUS_WEIGHTS = {"urgent": 2.0, "recovery": 1.5, "new": 1.0}

RANKING_FILTERS = ("all", "up", "down", "new", "lost")
RANKING_SORTS = ("change", "volume", "rank")
PUBLISH_SORTS = ("date", "volume", "rank")
PUBLISH_LIMIT = 500


# ────────────────────────────────────────────
# 발행 추천
# ────────────────────────────────────────────

def classify_keyword(kw: Keyword) -> Optional[Tuple[str, str]]:
    """
    (status, reason) 또는 None(추천 제외).
    - urgent: 활성 콘텐츠가 있지만 모두 미노출
    - recovery: 활성 콘텐츠 없음 + 비활성(추적 중지) 콘텐츠만 있음
    - new: 콘텐츠 없음
    """
    active = [c for c in kw.contents if c.is_active]
    inactive = [c for c in kw.contents if not c.is_active]

    if active and not any(c.is_exposed for c in active):
        return "urgent", f"{len(active)}개 콘텐츠 모두 미노출"
    if not active and inactive:
        return "recovery", f"이전 {len(inactive)}개 콘텐츠 미노출 (추적 중지됨)"
    if not kw.contents:
        return "new", "미발행 키워드 (신규 발행 추천)"
    return None


def find_best_account(competition: Optional[str], accounts: List[Account]) -> Optional[Account]:
    """경쟁도 구간 안에서 지수 최고 계정, 없으면 전체 최고"""
    if not accounts:
        return None
    lo, hi = ACCOUNT_SCORE_BANDS[normalize_competition(competition)]
    ranked = sorted(accounts, key=lambda a: (-a.blog_score, a.id))
    for acc in ranked:
        if lo <= acc.blog_score <= hi:
            return acc
    return ranked[0]


def _existing_account(kw: Keyword, accounts: List[Account]) -> Optional[Account]:
    by_id = {a.id: a for a in accounts}
    with_account = [c for c in kw.contents if c.account_id is not None]
    if not with_account:
        return None
    latest = max(with_account, key=lambda c: (c.published_date or "", c.id))
    return by_id.get(latest.account_id)


def expected_impact(prob: float, volume: int, status: str) -> int:
    return round(prob * max(0.5, math.log10((volume or 0) + 10)) * STATUS_WEIGHTS.get(status, 1.0) * 100)


def generate_recommendations(
    graph: Iterable[Keyword],
    accounts: List[Account],
    limits: Optional[DailyPublishLimits] = None,
    sort: str = "volume",
) -> List[Recommendation]:
    recs: List[Recommendation] = []
    for kw in graph:
        classified = classify_keyword(kw)
        if classified is None:
            continue
        status, reason = classified

        account = None
        if status in ("urgent", "recovery"):
            account = _existing_account(kw, accounts)
        if account is None:
            account = find_best_account(kw.competition, accounts)

        prob = exposure_probability(kw.competition, account, limits)
        recs.append(
            Recommendation(
                keyword=kw,
                status=status,
                reason=reason,
                recommended_account=account,
                exposure_prob=prob,
                expected_impact=expected_impact(prob, kw.monthly_search_total, status),
            )
        )

    if sort == "impact":
        recs.sort(key=lambda r: (-r.expected_impact, r.keyword.keyword, r.keyword.id))
    else:
        recs.sort(key=lambda r: (-r.keyword.monthly_search_total, r.keyword.keyword, r.keyword.id))
    return recs


def recommendation_summary(recs: List[Recommendation]) -> Dict[str, int]:
    out = {"urgent": 0, "recovery": 0, "new": 0, "total": len(recs)}
    for r in recs:
        out[r.status] += 1
    return out


def account_allocation(
    accounts: List[Account], recs: List[Recommendation], limits: Optional[DailyPublishLimits] = None
) -> List[Dict[str, Any]]:
    """계정별 등급 / 일일 한도 / 추천 배정 수"""
    out = []
    for acc in accounts:
        tier = account_tier(acc.blog_score, limits)
        out.append({
            "account_id": acc.id,
            "name": acc.name,
            "blog_score": acc.blog_score,
            "tier": tier,
            "limit": daily_limit(tier, limits),
            "assigned": sum(
                1 for r in recs if r.recommended_account and r.recommended_account.id == acc.id
            ),
        })
    return out


# ────────────────────────────────────────────
# 순위 현황
# ────────────────────────────────────────────

def _ranking_row(kw: Keyword, contents: Optional[List[Content]] = None) -> Dict[str, Any]:
    """키워드의 콘텐츠 중 디바이스별 최고 순위와 그 변동"""
    pc_rank: Optional[int] = None
    mo_rank: Optional[int] = None
    pc_change = mo_change = 0
    captured_at = ""
    account_name: Optional[str] = None

    for c in kw.contents if contents is None else contents:
        if c.pc_rank is not None and (pc_rank is None or c.pc_rank < pc_rank):
            pc_rank = c.pc_rank
            pc_change = c.pc.rank_change
            captured_at = c.pc.captured_at
            account_name = c.account_name
        if c.mo_rank is not None and (mo_rank is None or c.mo_rank < mo_rank):
            mo_rank = c.mo_rank
            mo_change = c.mo.rank_change
            if not captured_at:
                captured_at = c.mo.captured_at
            if not account_name:
                account_name = c.account_name

    return {
        "keyword_id": kw.id,
        "keyword": kw.keyword,
        "sub_keyword": kw.sub_keyword,
        "monthly_search_total": kw.monthly_search_total,
        "competition": kw.competition,
        "content_count": len(kw.contents if contents is None else contents),
        "pc_rank": pc_rank,
        "mo_rank": mo_rank,
        "pc_change": pc_change,
        "mo_change": mo_change,
        "captured_at": captured_at or None,
        "account_name": account_name,
    }


def _is_up(row: Dict[str, Any]) -> bool:
    return row["pc_change"] > 0 or row["mo_change"] > 0


def _is_down(row: Dict[str, Any]) -> bool:
    return row["pc_change"] < 0 or row["mo_change"] < 0


def _is_exposed(row: Dict[str, Any]) -> bool:
    return row["pc_rank"] is not None or row["mo_rank"] is not None


def _is_lost(row: Dict[str, Any]) -> bool:
    return not _is_exposed(row) and (row["pc_change"] < -10 or row["mo_change"] < -10)


def keyword_rankings(
    graph: Iterable[Keyword],
    status_filter: str = "all",
    sort: str = "change",
    today: Optional[str] = None,
) -> List[Dict[str, Any]]:
    today = today or date.today().isoformat()
    rows = [_ranking_row(kw) for kw in graph]

    if status_filter == "up":
        rows = [r for r in rows if _is_up(r)]
    elif status_filter == "down":
        rows = [r for r in rows if _is_down(r)]
    elif status_filter == "new":
        rows = [r for r in rows if _is_exposed(r) and r["captured_at"] == today]
    elif status_filter == "lost":
        rows = [r for r in rows if _is_lost(r)]

    if sort == "change":
        rows.sort(key=lambda r: -(abs(r["pc_change"]) + abs(r["mo_change"])))
    elif sort == "volume":
        rows.sort(key=lambda r: -(r["monthly_search_total"] or 0))
    elif sort == "rank":
        rows.sort(key=lambda r: r["pc_rank"] if r["pc_rank"] is not None else (
            r["mo_rank"] if r["mo_rank"] is not None else 999
        ))
    return rows


def top_movers(rows: List[Dict[str, Any]], n: int = 5) -> Dict[str, List[Dict[str, Any]]]:
    up = sorted((r for r in rows if _is_up(r)), key=lambda r: -(r["pc_change"] + r["mo_change"]))
    down = sorted((r for r in rows if _is_down(r)), key=lambda r: r["pc_change"] + r["mo_change"])
    return {"up": up[:n], "down": down[:n]}


def rankings_stats(rows: List[Dict[str, Any]]) -> Dict[str, int]:
    return {
        "total": len(rows),
        "exposed": sum(1 for r in rows if _is_exposed(r)),
        "up": sum(1 for r in rows if _is_up(r)),
        "down": sum(1 for r in rows if _is_down(r)),
        "lost": sum(1 for r in rows if _is_lost(r)),
    }


# ────────────────────────────────────────────
# 대시보드 / 발행 현황 / 계정 통계
# ────────────────────────────────────────────

def dashboard_summary(conn: sqlite3.Connection) -> Dict[str, Any]:
    """활성 콘텐츠 기준 요약"""
    accounts = db.load_accounts(conn)
    graph = db.load_keyword_graph(conn, active_only=True)
    rows = [_ranking_row(kw) for kw in graph]

    exposed = sum(1 for r in rows if _is_exposed(r))
    movers = top_movers(rows, n=3)
    return {
        "total_accounts": len(accounts),
        "total_keywords": len(rows),
        "avg_blog_score": round(sum(a.blog_score for a in accounts) / len(accounts)) if accounts else 0,
        "exposed_keywords": exposed,
        "exposure_rate": round(exposed / len(rows) * 100) if rows else 0,
        "up_count": sum(1 for r in rows if _is_up(r)),
        "down_count": sum(1 for r in rows if _is_down(r)),
        "top_up": movers["up"],
        "top_down": movers["down"],
        "unexposed": [r for r in rows if not _is_exposed(r)][:5],
        "top_accounts": [
            {"id": a.id, "name": a.name, "blog_score": a.blog_score} for a in accounts[:5]
        ],
    }


def publish_records(
    conn: sqlite3.Connection,
    account_id: Optional[int] = None,
    q: Optional[str] = None,
    exposed: Optional[bool] = None,
    sort: str = "date",
) -> Dict[str, Any]:
    records: List[Dict[str, Any]] = []
    for kw in db.load_keyword_graph(conn):
        for c in kw.contents:
            records.append({
                "content_id": c.id,
                "keyword_id": kw.id,
                "keyword": kw.keyword,
                "sub_keyword": kw.sub_keyword,
                "monthly_search_total": kw.monthly_search_total,
                "competition": kw.competition,
                "mobile_ratio": kw.mobile_ratio,
                "account_id": c.account_id,
                "account_name": c.account_name,
                "url": c.url,
                "title": c.title,
                "published_date": c.published_date,
                "is_active": c.is_active,
                "camfit_link": c.camfit_link,
                "pc_rank": c.pc_rank,
                "mo_rank": c.mo_rank,
                "is_exposed": c.is_exposed,
            })

    if account_id is not None:
        records = [r for r in records if r["account_id"] == account_id]
    if q:
        needle = q.lower()
        records = [
            r for r in records
            if any(needle in (r[f] or "").lower() for f in ("keyword", "sub_keyword", "title"))
        ]
    if exposed is not None:
        records = [r for r in records if r["is_exposed"] == exposed]

    records.sort(key=lambda r: -r["content_id"])
    if sort == "volume":
        records.sort(key=lambda r: -(r["monthly_search_total"] or 0))
    elif sort == "rank":
        records.sort(key=lambda r: best_rank(r["pc_rank"], r["mo_rank"]) or 999)
    else:
        records.sort(key=lambda r: r["published_date"] or "", reverse=True)
    records = records[:PUBLISH_LIMIT]

    exposed_count = sum(1 for r in records if r["is_exposed"])
    return {
        "items": records,
        "stats": {
            "total": len(records),
            "exposed": exposed_count,
            "unexposed": len(records) - exposed_count,
            "camfit": sum(1 for r in records if r["camfit_link"]),
        },
    }


def account_stats(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    graph = db.load_keyword_graph(conn)
    out = []
    for acc in db.load_accounts(conn):
        rows = []
        for kw in graph:
            mine = [c for c in kw.contents if c.account_id == acc.id]
            if mine:
                rows.append(_ranking_row(kw, mine))
        exposed = sum(1 for r in rows if _is_exposed(r))
        out.append({
            "account_id": acc.id,
            "name": acc.name,
            "blog_score": acc.blog_score,
            "total_keywords": len(rows),
            "exposed_count": exposed,
            "exposure_rate": round(exposed / len(rows) * 100) if rows else 0,
            "total_up": sum(1 for r in rows if _is_up(r)),
            "total_down": sum(1 for r in rows if _is_down(r)),
        })
    return out
