from __future__ import annotations
import logging
import os
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from serp_tracker import db
from serp_tracker.crawler_client import CrawlerClient, CrawlerError, MissingConfigError
from serp_tracker.models import DEVICES
from serp_tracker.notifier import SlackNotifier
from serp_tracker.scoring import (
    account_keyword_signals,
    best_rank,
    calc_difficulty_score,
    calc_opportunity_score,
    compute_blog_score,
    contents_best_ranks,
    rank_delta,
)
from serp_tracker.settings import SettingsProvider

logger = logging.getLogger("serp_tracker.jobs")

# 원격 호출 사이 대기 (초). SERP_JOB_DELAY 는 임포트 시 읽고, JobQueue 는 생성 시점의 모듈 값을 씀
DEFAULT_DELAY = float(os.environ.get("SERP_JOB_DELAY", "2.0"))
VOLUME_BATCH_SIZE = 10

ProgressCb = Callable[[Dict[str, Any]], None]


class SkipItem(Exception):
    """처리 대상이 아닌 항목 (report.skipped 로 기록)"""


@dataclass
class JobReport:
    kind: str
    total: int = 0
    succeeded: List[Any] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)  # {"item", "error"}
    skipped: List[Any] = field(default_factory=list)
    cancelled: bool = False
    aborted: bool = False
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "aborted": self.aborted,
            "error": self.error,
            **self.extra,
        }


class Job:
    def __init__(self, kind: str, job_id: Optional[str] = None) -> None:
        self.kind = kind
        self.id = job_id or uuid.uuid4().hex[:12]
        self.started_at = datetime.now().isoformat(timespec="seconds")
        self._cancel = threading.Event()

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def wait(self, seconds: float) -> bool:
        """대기 중 취소되면 True"""
        return self._cancel.wait(seconds)


class JobRegistry:
    """실행 중 작업 (HTTP 취소용)"""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def start(self, kind: str) -> Job:
        job = Job(kind)
        with self._lock:
            self._jobs[job.id] = job
        return job

    def finish(self, job: Job) -> None:
        with self._lock:
            self._jobs.pop(job.id, None)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def cancel(self, job_id: str) -> bool:
        job = self.get(job_id)
        if job is None:
            return False
        job.cancel()
        return True

    def running(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [{"job_id": j.id, "kind": j.kind, "started_at": j.started_at} for j in self._jobs.values()]


registry = JobRegistry()


class JobQueue:
    """
    동시성 1 + 작업 간 대기 고정 큐.
    - 각 작업 전, 대기 중에 취소 확인
    - abort_on_error=False: 항목 실패는 기록 후 계속
    - abort_on_error=True: 첫 실패에서 중단 (이미 처리된 결과는 유지)
    """

    def __init__(
        self,
        job: Job,
        delay: Optional[float] = None,
        progress_cb: Optional[ProgressCb] = None,
        abort_on_error: bool = False,
    ) -> None:
        self.job = job
        self.delay = DEFAULT_DELAY if delay is None else delay
        self.progress_cb = progress_cb or (lambda _: None)
        self.abort_on_error = abort_on_error

    def progress(self, stage: str, current: int, total: int, message: str) -> None:
        self.progress_cb({"stage": stage, "current": current, "total": total, "message": message})

    def run(
        self,
        items: List[Any],
        task: Callable[[Any], Any],
        label: Callable[[Any], Any] = lambda item: item,
        report: Optional[JobReport] = None,
    ) -> JobReport:
        report = report or JobReport(kind=self.job.kind)
        report.total = len(items)
        for i, item in enumerate(items):
            if self.job.cancelled:
                report.cancelled = True
                break
            if i > 0 and self.delay > 0 and self.job.wait(self.delay):
                report.cancelled = True
                break

            name = label(item)
            self.progress(self.job.kind, i + 1, len(items), f"{name} 처리 중")
            try:
                task(item)
                report.succeeded.append(name)
            except SkipItem as e:
                report.skipped.append(name)
                logger.info("[%s] skip %s: %s", self.job.kind, name, e)
            except (CrawlerError, sqlite3.Error) as e:
                if self.abort_on_error:
                    logger.error("[%s] aborted at %s: %s", self.job.kind, name, e)
                    report.aborted = True
                    report.error = str(e)
                    break
                logger.warning("[%s] %s failed: %s", self.job.kind, name, e)
                report.failed.append({"item": name, "error": str(e)})

        if report.cancelled:
            logger.info("[%s] job %s cancelled", self.job.kind, self.job.id)
        self.progress("done", len(report.succeeded), report.total, "완료")
        return report


def _chunks(seq: List[Any], size: int) -> List[List[Any]]:
    return [seq[i:i + size] for i in range(0, len(seq), size)]


# ────────────────────────────────────────────
# 검색량 갱신
# ────────────────────────────────────────────

def refresh_volumes(
    conn: sqlite3.Connection,
    client: CrawlerClient,
    job: Optional[Job] = None,
    progress_cb: Optional[ProgressCb] = None,
    keyword_ids: Optional[Iterable[int]] = None,
    delay: Optional[float] = None,
) -> JobReport:
    """검색어(sub_keyword 우선) 10개씩 조회. 배치 실패 시 중단"""
    job = job or Job("volume")
    rows = db.list_keywords(conn)
    if keyword_ids is not None:
        wanted = set(keyword_ids)
        rows = [r for r in rows if r["keyword_id"] in wanted]

    report = JobReport(kind=job.kind)
    updated: List[int] = []

    def task(batch: List[Dict[str, Any]]) -> None:
        by_name: Dict[str, List[Dict[str, Any]]] = {}
        for r in batch:
            by_name.setdefault(r["sub_keyword"] or r["keyword"], []).append(r)
        results = client.keyword_volume(list(by_name))
        for res in results:
            for r in by_name.get(res["keyword"], []):
                db.update_keyword_volume(
                    conn,
                    r["keyword_id"],
                    res["pc_volume"],
                    res["mo_volume"],
                    res["total_volume"],
                    res["competition"],
                )
                updated.append(r["keyword_id"])
        conn.commit()

    queue = JobQueue(job, delay=delay, progress_cb=progress_cb, abort_on_error=True)
    queue.run(
        _chunks(rows, VOLUME_BATCH_SIZE),
        task,
        label=lambda batch: ", ".join(r["sub_keyword"] or r["keyword"] for r in batch),
        report=report,
    )
    report.extra["updated"] = len(updated)
    return report


# ────────────────────────────────────────────
# SERP 순위 체크
# ────────────────────────────────────────────

def check_serp_batch(
    conn: sqlite3.Connection,
    client: CrawlerClient,
    provider: SettingsProvider,
    job: Optional[Job] = None,
    progress_cb: Optional[ProgressCb] = None,
    content_ids: Optional[Iterable[int]] = None,
    delay: Optional[float] = None,
    captured_at: Optional[str] = None,
    notifier: Optional[SlackNotifier] = None,
) -> JobReport:
    """
    콘텐츠별 PC/MO 순위 저장 (당일 행은 덮어씀).
    두 디바이스 모두 미노출이면 콘텐츠 추적 중지.
    항목 실패는 기록 후 계속.
    """
    job = job or Job("serp")
    captured = captured_at or date.today().isoformat()
    rank_max = provider.get("serp_tracking").rank_max

    if content_ids is not None:
        wanted = set(content_ids)
        targets = [c for c in db.list_contents(conn) if c["content_id"] in wanted]
    else:
        targets = [c for c in db.list_contents(conn, is_active=True) if (c["url"] or "").strip()]

    report = JobReport(kind=job.kind)
    exposed: List[int] = []
    deactivated: List[Dict[str, Any]] = []

    def task(content: Dict[str, Any]) -> None:
        if not (content["url"] or "").strip():
            raise SkipItem("url 없음")
        query = content["sub_keyword"] or content["keyword"]
        ranks = client.serp_check(query, content["url"], rank_max)
        pc, mo = ranks.get("pc_rank"), ranks.get("mo_rank")
        for device, rank in zip(DEVICES, (pc, mo)):
            prev = db.previous_rank(conn, content["content_id"], device, captured)
            db.upsert_serp_result(
                conn, content["content_id"], device, rank, rank_delta(prev, rank), captured
            )
        if pc is None and mo is None:
            db.set_content_active(conn, content["content_id"], False)
            deactivated.append({
                "content_id": content["content_id"],
                "keyword": content["keyword"],
                "url": content["url"],
            })
        else:
            exposed.append(content["content_id"])
        conn.commit()

    queue = JobQueue(job, delay=delay, progress_cb=progress_cb)
    queue.run(
        targets,
        task,
        label=lambda c: f"{c['sub_keyword'] or c['keyword']} #{c['content_id']}",
        report=report,
    )
    report.extra["exposed"] = len(exposed)
    report.extra["deactivated"] = deactivated

    notifier = notifier or SlackNotifier(provider.get("slack_webhook"))
    notifier.notify_serp_complete({
        "succeeded": len(report.succeeded),
        "failed": len(report.failed),
        "exposed": len(exposed),
        "cancelled": report.cancelled,
    })
    notifier.notify_unexposed(deactivated)
    return report


# ────────────────────────────────────────────
# 로컬 계산 작업
# ────────────────────────────────────────────

def calc_keyword_metrics(
    conn: sqlite3.Connection,
    job: Optional[Job] = None,
    progress_cb: Optional[ProgressCb] = None,
    keyword_ids: Optional[Iterable[int]] = None,
) -> JobReport:
    """opportunity/difficulty 재계산 (활성 콘텐츠의 최신 최고 순위 기준)"""
    job = job or Job("metrics")
    graph = db.load_keyword_graph(conn)
    if keyword_ids is not None:
        wanted = set(keyword_ids)
        graph = [kw for kw in graph if kw.id in wanted]

    def task(kw) -> None:
        active = [c for c in kw.contents if c.is_active]
        rank = best_rank(*contents_best_ranks(active))
        db.update_keyword_metrics(
            conn,
            kw.id,
            calc_opportunity_score(kw.monthly_search_total, kw.competition, rank),
            calc_difficulty_score(kw.competition, rank),
        )

    report = JobQueue(job, delay=0, progress_cb=progress_cb).run(graph, task, label=lambda kw: kw.keyword)
    conn.commit()
    return report


def recalc_blog_scores(
    conn: sqlite3.Connection,
    provider: SettingsProvider,
    job: Optional[Job] = None,
    progress_cb: Optional[ProgressCb] = None,
) -> JobReport:
    """계정별 blog_score 덮어쓰기. 키워드 없는 계정은 건너뜀"""
    job = job or Job("blog-score")
    formula = provider.get("blog_score_formula")
    graph = db.load_keyword_graph(conn)
    scores: List[Dict[str, Any]] = []

    def task(acc) -> None:
        score = compute_blog_score(account_keyword_signals(acc.id, graph), formula)
        if score is None:
            raise SkipItem("키워드 없음")
        db.set_blog_score(conn, acc.id, score)
        scores.append({"account_id": acc.id, "name": acc.name, "previous": acc.blog_score, "blog_score": score})

    report = JobQueue(job, delay=0, progress_cb=progress_cb).run(
        db.load_accounts(conn), task, label=lambda acc: acc.name
    )
    report.extra["scores"] = scores
    conn.commit()
    return report


# ────────────────────────────────────────────
# 원격 작업 트리거
# ────────────────────────────────────────────

REMOTE_JOB_KINDS = ("rank", "volume", "analysis")


def record_analysis_time(provider: SettingsProvider) -> str:
    now = datetime.now().isoformat(timespec="seconds")
    provider.save("last_analysis_time", {"timestamp": now})
    return now


def trigger_remote_job(client: CrawlerClient, provider: SettingsProvider, kind: str) -> Dict[str, Any]:
    if kind == "rank":
        result = client.run_rank("weekly")
    elif kind == "volume":
        result = client.run_volume()
    elif kind == "analysis":
        result = client.run_analysis()
        result["analyzed_at"] = record_analysis_time(provider)
    else:
        raise ValueError(f"unknown remote job: {kind}")
    logger.info("remote %s started (pid=%s)", kind, result.get("pid"))
    return result


def request_analysis(
    provider: SettingsProvider,
    client_factory: Callable[[SettingsProvider], CrawlerClient],
) -> Dict[str, Any]:
    """추천 화면의 수동 분석: 원격 실패는 경고만 하고 시각은 기록"""
    try:
        remote = client_factory(provider).run_analysis()
    except (MissingConfigError, CrawlerError) as e:
        logger.warning("analysis trigger failed: %s", e)
        remote = {"ok": False, "detail": str(e)}
    return {"remote": remote, "analyzed_at": record_analysis_time(provider)}
