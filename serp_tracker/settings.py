from __future__ import annotations
import sqlite3
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, Field, model_validator

from serp_tracker import db


class Ec2ApiConfig(BaseModel):
    base_url: str = ""
    secret: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.base_url.strip())


class BlogScoreFormula(BaseModel):
    exposure_weight: int = Field(40, ge=0, le=100)
    rank_weight: int = Field(30, ge=0, le=100)
    quality_weight: int = Field(30, ge=0, le=100)

    @model_validator(mode="after")
    def _weights_sum_to_100(self):
        total = self.exposure_weight + self.rank_weight + self.quality_weight
        if total != 100:
            raise ValueError(f"가중치 합계는 100이어야 합니다 (현재 {total})")
        return self


class DailyPublishLimits(BaseModel):
    high_tier_threshold: int = Field(70, ge=0, le=100)
    medium_tier_threshold: int = Field(40, ge=0, le=100)
    high_limit: int = Field(4, ge=1, le=10)
    medium_limit: int = Field(3, ge=1, le=10)
    low_limit: int = Field(2, ge=1, le=10)

    @model_validator(mode="after")
    def _thresholds_ordered(self):
        if self.high_tier_threshold < self.medium_tier_threshold:
            raise ValueError("상위 기준점은 중위 기준점 이상이어야 합니다")
        return self


class SerpTrackingConfig(BaseModel):
    rank_max: int = Field(20, ge=1, le=100)
    unexposed_rank: int = Field(21, ge=1, le=101)
    search_sleep_min: float = Field(1.0, ge=0)
    search_sleep_max: float = Field(2.0, ge=0)

    @model_validator(mode="after")
    def _sleep_range(self):
        if self.search_sleep_max < self.search_sleep_min:
            raise ValueError("search_sleep_max는 search_sleep_min 이상이어야 합니다")
        return self


class GptPromptConfig(BaseModel):
    model: str = "gpt-4o-mini"
    prompt: str = ""


class SlackWebhookConfig(BaseModel):
    enabled: bool = False
    webhook_url: str = ""
    notify_serp_complete: bool = True
    notify_unexposed_alert: bool = True
    notify_weekly_report: bool = True


class AnalysisTimestamp(BaseModel):
    timestamp: Optional[str] = None


SETTINGS_RECORDS: Dict[str, Type[BaseModel]] = {
    "ec2_api": Ec2ApiConfig,
    "blog_score_formula": BlogScoreFormula,
    "daily_publish_limits": DailyPublishLimits,
    "serp_tracking": SerpTrackingConfig,
    "gpt_keyword_extraction": GptPromptConfig,
    "gpt_serp_analysis": GptPromptConfig,
    "slack_webhook": SlackWebhookConfig,
    "last_analysis_time": AnalysisTimestamp,
}

SETTINGS_DESCRIPTIONS = {
    "ec2_api": "크롤러 서버 주소/시크릿",
    "blog_score_formula": "블로그 점수 가중치 (합계 100)",
    "daily_publish_limits": "계정 등급 기준점 및 일일 발행 한도",
    "serp_tracking": "SERP 추적 범위/대기시간",
    "gpt_keyword_extraction": "키워드 추출 프롬프트",
    "gpt_serp_analysis": "SERP 분석 프롬프트",
    "slack_webhook": "슬랙 알림",
    "last_analysis_time": "마지막 주간 분석 실행 시각",
}

# ec2_api / last_analysis_time 은 기본값 시드 대상이 아님 (없음 = 미설정)
DEFAULT_SETTINGS: Dict[str, Dict[str, Any]] = {
    key: SETTINGS_RECORDS[key]().model_dump()
    for key in (
        "blog_score_formula",
        "daily_publish_limits",
        "serp_tracking",
        "gpt_keyword_extraction",
        "gpt_serp_analysis",
        "slack_webhook",
    )
}


class UnknownSettingError(KeyError):
    pass


class SettingsProvider:
    """
    settings 테이블의 key → 타입 레코드 로더.
    값은 읽는 시점에 검증되고, 저장 전에도 검증된다.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def record_type(key: str) -> Type[BaseModel]:
        try:
            return SETTINGS_RECORDS[key]
        except KeyError:
            raise UnknownSettingError(key) from None

    def get_or_none(self, key: str) -> Optional[BaseModel]:
        record = self.record_type(key)
        raw = db.get_setting(self.conn, key)
        if raw is None:
            return None
        return record.model_validate(raw)

    def get(self, key: str) -> BaseModel:
        """없는 키는 레코드 기본값"""
        found = self.get_or_none(key)
        return found if found is not None else self.record_type(key)()

    def save(self, key: str, raw: Dict[str, Any]) -> BaseModel:
        record = self.record_type(key).model_validate(raw)
        db.set_setting(self.conn, key, record.model_dump(), SETTINGS_DESCRIPTIONS.get(key))
        return record
