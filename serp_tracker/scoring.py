from __future__ import annotations
import math
from typing import Dict, Iterable, List, Optional, Tuple

from serp_tracker.models import DEVICES, Account, Content, Keyword, SerpResult, normalize_competition
from serp_tracker.settings import BlogScoreFormula, DailyPublishLimits


# 경쟁도별 점수표
OPPORTUNITY_COMPETITION_POINTS = {"low": 30, "medium": 20, "high": 10, "unknown": 15}
DIFFICULTY_BASE = {"high": 80, "medium": 50, "low": 20, "unknown": 50}

# 노출 확률표: [경쟁도][계정 등급]
EXPOSURE_PROBABILITY = {
    "low": {"high": 0.95, "medium": 0.75, "low": 0.50},
    "medium": {"high": 0.80, "medium": 0.55, "low": 0.30},
    "high": {"high": 0.60, "medium": 0.25, "low": 0.10},
    "unknown": {"high": 0.70, "medium": 0.45, "low": 0.25},
}
DEFAULT_EXPOSURE_PROBABILITY = 0.3


def rank_delta(prev: Optional[int], curr: Optional[int]) -> int:
    """순위 변동 (양수 = 상승). 한쪽이라도 없으면 0"""
    if prev is None or curr is None:
        return 0
    return prev - curr


def best_rank(pc: Optional[int], mo: Optional[int]) -> Optional[int]:
    ranks = [r for r in (pc, mo) if r is not None]
    return min(ranks) if ranks else None


def latest_ranks(serp_rows: Iterable[SerpResult]) -> Dict[str, Optional[SerpResult]]:
    """디바이스별 가장 최근 캡처"""
    latest: Dict[str, Optional[SerpResult]] = {d: None for d in DEVICES}
    for row in serp_rows:
        if row.device not in latest:
            continue
        cur = latest[row.device]
        if cur is None or (row.captured_at, row.id or 0) > (cur.captured_at, cur.id or 0):
            latest[row.device] = row
    return latest


def contents_best_ranks(contents: Iterable[Content]) -> Tuple[Optional[int], Optional[int]]:
    """여러 콘텐츠 중 디바이스별 최고 순위"""
    pcs = [c.pc_rank for c in contents if c.pc_rank is not None]
    mos = [c.mo_rank for c in contents if c.mo_rank is not None]
    return (min(pcs) if pcs else None, min(mos) if mos else None)


# ────────────────────────────────────────────
# 키워드 지표
# ────────────────────────────────────────────

def calc_opportunity_score(volume: Optional[int], competition: Optional[str], rank: Optional[int]) -> int:
    """
    기회 점수 = 검색량(최대 40) + 경쟁도(10~30) + 현재 순위 보너스(15~30)
    100 근처에서 자연 상한, 별도 클램프 없음
    """
    volume_score = min(40.0, math.log10((volume or 0) + 10) * 10)
    comp_score = OPPORTUNITY_COMPETITION_POINTS[normalize_competition(competition)]

    if rank is not None and rank <= 5:
        rank_score = 30
    elif rank is not None and rank <= 10:
        rank_score = 25
    elif rank is not None and rank <= 20:
        rank_score = 20
    else:
        rank_score = 15

    return round(volume_score + comp_score + rank_score)


def calc_difficulty_score(competition: Optional[str], rank: Optional[int]) -> int:
    score = DIFFICULTY_BASE[normalize_competition(competition)]
    # 이미 1페이지면 난이도 하향
    if rank is not None and rank <= 10:
        score = max(10, score - 20)
    return score


# ────────────────────────────────────────────
# 블로그 지수
# ────────────────────────────────────────────

def account_keyword_signals(account_id: int, graph: Iterable[Keyword]) -> List[Dict[str, Optional[int]]]:
    """계정이 발행한 키워드별 (PC 최고순위, MO 최고순위, 기회점수)"""
    signals = []
    for kw in graph:
        mine = [c for c in kw.contents if c.account_id == account_id]
        if not mine:
            continue
        pc, mo = contents_best_ranks(mine)
        signals.append({"pc_rank": pc, "mo_rank": mo, "opportunity_score": kw.opportunity_score})
    return signals


def compute_blog_score(
    signals: List[Dict[str, Optional[int]]],
    formula: Optional[BlogScoreFormula] = None,
) -> Optional[int]:
    """
    blog_score = 노출률 × we + 평균 순위점수 × wr + 키워드 품질 × wq
    - 순위점수: 1위 100, 20위 5 (노출 키워드만 평균)
    - 품질: opportunity_score 평균 (없으면 50)
    키워드가 없으면 None (기존 점수 유지)
    """
    if not signals:
        return None
    formula = formula or BlogScoreFormula()

    exposed = 0
    rank_total = 0.0
    quality_total = 0.0
    for s in signals:
        best = best_rank(s.get("pc_rank"), s.get("mo_rank"))
        if best is not None:
            exposed += 1
            rank_total += max(0, 100 - (best - 1) * 5)
        opp = s.get("opportunity_score")
        quality_total += opp if opp is not None else 50

    exposure_rate = exposed / len(signals) * 100
    rank_avg = rank_total / exposed if exposed else 0.0
    quality_avg = quality_total / len(signals)

    score = round(
        exposure_rate * formula.exposure_weight / 100
        + rank_avg * formula.rank_weight / 100
        + quality_avg * formula.quality_weight / 100
    )
    return min(100, max(0, score))


# ────────────────────────────────────────────
# 계정 등급 / 노출 확률
# ────────────────────────────────────────────

def account_tier(score: int, limits: Optional[DailyPublishLimits] = None) -> str:
    limits = limits or DailyPublishLimits()
    if score >= limits.high_tier_threshold:
        return "high"
    if score >= limits.medium_tier_threshold:
        return "medium"
    return "low"


def daily_limit(tier: str, limits: Optional[DailyPublishLimits] = None) -> int:
    limits = limits or DailyPublishLimits()
    return {
        "high": limits.high_limit,
        "medium": limits.medium_limit,
        "low": limits.low_limit,
    }.get(tier, limits.low_limit)


def exposure_probability(
    competition: Optional[str],
    account: Optional[Account],
    limits: Optional[DailyPublishLimits] = None,
) -> float:
    if account is None:
        return DEFAULT_EXPOSURE_PROBABILITY
    tier = account_tier(account.blog_score, limits)
    return EXPOSURE_PROBABILITY.get(normalize_competition(competition), {}).get(
        tier, DEFAULT_EXPOSURE_PROBABILITY
    )
