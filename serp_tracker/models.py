from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# 경쟁도 표기: DB/크롤러는 한글, 내부 계산은 영문 키
COMPETITION_LABELS = {
    "low": "낮음",
    "medium": "중간",
    "high": "높음",
    "unknown": "알 수 없음",
}

_COMPETITION_ALIASES = {
    "낮음": "low",
    "중간": "medium",
    "높음": "high",
    "알 수 없음": "unknown",
    "알수없음": "unknown",
    "low": "low",
    "medium": "medium",
    "mid": "medium",
    "high": "high",
    "unknown": "unknown",
}

DEVICES = ("PC", "MO")


def normalize_competition(value: Optional[str]) -> str:
    """한글/영문 경쟁도 → 'low' | 'medium' | 'high' | 'unknown'"""
    if not value:
        return "unknown"
    key = value.strip()
    return _COMPETITION_ALIASES.get(key, _COMPETITION_ALIASES.get(key.lower(), "unknown"))


def competition_label(value: Optional[str]) -> str:
    return COMPETITION_LABELS[normalize_competition(value)]


@dataclass
class Account:
    id: int
    name: str
    platform: str = "naver"
    url: Optional[str] = None
    blog_score: int = 50
    daily_publish_limit: int = 2


@dataclass
class SerpResult:
    content_id: int
    device: str  # PC / MO
    rank: Optional[int]
    rank_change: int
    is_exposed: bool
    captured_at: str  # YYYY-MM-DD
    id: Optional[int] = None


@dataclass
class Content:
    id: int
    keyword_id: int
    url: str
    account_id: Optional[int] = None
    account_name: Optional[str] = None
    title: Optional[str] = None
    published_date: Optional[str] = None
    is_active: bool = True
    camfit_link: bool = False
    source_file: Optional[str] = None
    pc: Optional[SerpResult] = None  # 최신 PC 결과
    mo: Optional[SerpResult] = None  # 최신 MO 결과

    @property
    def pc_rank(self) -> Optional[int]:
        return self.pc.rank if self.pc else None

    @property
    def mo_rank(self) -> Optional[int]:
        return self.mo.rank if self.mo else None

    @property
    def is_exposed(self) -> bool:
        return bool((self.pc and self.pc.is_exposed) or (self.mo and self.mo.is_exposed))


@dataclass
class Keyword:
    id: int
    keyword: str
    sub_keyword: Optional[str] = None
    monthly_search_pc: int = 0
    monthly_search_mo: int = 0
    monthly_search_total: int = 0
    competition: str = "알 수 없음"
    mobile_ratio: int = 0
    difficulty_score: Optional[int] = None
    opportunity_score: Optional[int] = None
    contents: List[Content] = field(default_factory=list)


@dataclass
class Recommendation:
    keyword: Keyword
    status: str  # urgent / recovery / new
    reason: str
    recommended_account: Optional[Account]
    exposure_prob: float
    expected_impact: int

    def to_dict(self) -> Dict[str, Any]:
        kw = self.keyword
        acc = self.recommended_account
        return {
            "keyword_id": kw.id,
            "keyword": kw.keyword,
            "sub_keyword": kw.sub_keyword,
            "monthly_search_total": kw.monthly_search_total,
            "competition": kw.competition,
            "content_count": len(kw.contents),
            "status": self.status,
            "reason": self.reason,
            "recommended_account": (
                {"id": acc.id, "name": acc.name, "blog_score": acc.blog_score} if acc else None
            ),
            "exposure_prob": self.exposure_prob,
            "expected_impact": self.expected_impact,
        }
