from __future__ import annotations
import logging
import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import requests

from serp_tracker.settings import Ec2ApiConfig, SettingsProvider

logger = logging.getLogger(__name__)


class MissingConfigError(RuntimeError):
    """ec2_api 설정 없음 (네트워크 호출 전 중단)"""


class CrawlerError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _rank(value: Any) -> Optional[int]:
    # None = 미노출
    return None if value is None else int(value)


@dataclass
class ServerStatus:
    """크롤러가 보고하는 작업 잠금 상태 (참고용, 로컬에서 강제하지 않음)"""
    ok: bool = False
    rank_locked: bool = False
    volume_locked: bool = False
    analysis_locked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CrawlerClient:
    """
    원격 크롤러 서버(HTTP JSON) 호출 클라이언트.
    시크릿은 항상 X-API-Secret 헤더로, POST 시 body의 secret 필드로도 보냄.
    재시도하지 않음.
    """

    def __init__(self, base_url: str, secret: str, timeout: Optional[float] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.timeout = timeout if timeout is not None else float(os.environ.get("CRAWLER_TIMEOUT", "30"))

    def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {"X-API-Secret": self.secret}
        body = None
        if method == "POST":
            body = dict(payload or {})
            body["secret"] = self.secret
        try:
            r = requests.request(method, url, headers=headers, json=body, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error("crawler %s /%s failed: %s", method, path.lstrip("/"), e)
            raise CrawlerError(f"서버 연결 실패: {e}") from e

        if not (200 <= r.status_code < 300):
            detail = r.text[:200]
            try:
                data = r.json()
            except ValueError:
                data = None
            if isinstance(data, dict):
                detail = data.get("detail") or data.get("error") or detail
            logger.warning("crawler %s /%s → %d", method, path.lstrip("/"), r.status_code)
            raise CrawlerError(f"크롤러 오류 ({r.status_code}): {detail}", status_code=r.status_code)

        try:
            data = r.json()
        except ValueError as e:
            raise CrawlerError("크롤러 응답이 JSON이 아닙니다", status_code=r.status_code) from e
        if not isinstance(data, dict):
            logger.warning("crawler %s /%s returned %s body", method, path.lstrip("/"), type(data).__name__)
            raise CrawlerError("크롤러 응답 형식 오류", status_code=r.status_code)
        return data

    # ── 데이터 조회 ──

    def keyword_volume(self, keywords: List[str]) -> List[Dict[str, Any]]:
        """[{keyword, pc_volume, mo_volume, total_volume, competition}]"""
        data = self._call("POST", "/api/keyword/volume", {"keywords": list(keywords)})
        results = data.get("results") or []
        if not isinstance(results, list):
            raise CrawlerError("크롤러 응답 형식 오류: results")
        try:
            return [
                {
                    "keyword": res.get("keyword"),
                    "pc_volume": int(res.get("pc_volume") or 0),
                    "mo_volume": int(res.get("mo_volume") or 0),
                    "total_volume": int(res.get("total_volume") or 0),
                    "competition": res.get("competition"),
                }
                for res in results
            ]
        except (AttributeError, TypeError, ValueError) as e:
            raise CrawlerError(f"크롤러 응답 형식 오류: {e}") from e

    def serp_check(self, keyword: str, url: str, rank_max: int = 20) -> Dict[str, Optional[int]]:
        data = self._call("POST", "/api/serp/check", {"keyword": keyword, "url": url, "rank_max": rank_max})
        try:
            return {key: _rank(data.get(key)) for key in ("pc_rank", "mo_rank")}
        except (TypeError, ValueError) as e:
            raise CrawlerError(f"크롤러 응답 형식 오류: {e}") from e

    def blog_analyze(self, url: str) -> Dict[str, Any]:
        """{main_keyword, sub_keyword}"""
        return self._call("POST", "/api/blog/analyze", {"url": url})

    def health(self) -> ServerStatus:
        data = self._call("GET", "/health")
        return ServerStatus(
            ok=bool(data.get("ok")),
            rank_locked=bool(data.get("rank_locked")),
            volume_locked=bool(data.get("volume_locked")),
            analysis_locked=bool(data.get("analysis_locked")),
        )

    # ── 원격 작업 실행 ──

    def _run(self, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = self._call("POST", path, payload)
        if data.get("ok") is False:
            raise CrawlerError(str(data.get("detail") or "실행 실패"))
        return {"ok": True, "pid": data.get("pid")}

    def run_rank(self, mode: str = "weekly") -> Dict[str, Any]:
        return self._run("/run", {"mode": mode})

    def run_volume(self) -> Dict[str, Any]:
        return self._run("/run-volume")

    def run_analysis(self) -> Dict[str, Any]:
        return self._run("/run-analysis")


def client_from_settings(provider: SettingsProvider) -> CrawlerClient:
    config = provider.get_or_none("ec2_api")
    if not isinstance(config, Ec2ApiConfig) or not config.configured:
        raise MissingConfigError("EC2 API 설정이 없습니다")
    return CrawlerClient(config.base_url, config.secret)
