from __future__ import annotations
import asyncio
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError
import httpx
import uvicorn

# .env 로드
load_dotenv(Path(__file__).parent / ".env")

from serp_tracker import db, jobs, reporting
from serp_tracker.crawler_client import CrawlerClient, CrawlerError, MissingConfigError, client_from_settings
from serp_tracker.maintenance import cleanup_all
from serp_tracker.notifier import SlackNotifier
from serp_tracker.settings import (
    DEFAULT_SETTINGS,
    SETTINGS_DESCRIPTIONS,
    SETTINGS_RECORDS,
    SettingsProvider,
    SlackWebhookConfig,
    UnknownSettingError,
)
from serp_tracker.sse import sse_job_stream

logger = logging.getLogger("serp_tracker")

app = FastAPI(title="SERP Tracker")

ALLOWED_ORIGINS = [
    o.strip()
    for o in os.environ.get(
        "ALLOWED_ORIGINS",
        "http://localhost:3000,http://localhost:8001,http://127.0.0.1:8001",
    ).split(",")
    if o.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.on_event("startup")
def on_startup():
    with db.conn_ctx() as conn:
        db.init_db(conn)
        db.seed_default_settings(conn, DEFAULT_SETTINGS, SETTINGS_DESCRIPTIONS)
        deleted = cleanup_all(conn)
        logger.info("startup cleanup: %s", deleted)


# ============================
# 의존성 / 예외 매핑
# ============================
CrawlerFactory = Callable[[SettingsProvider], CrawlerClient]


def get_settings_provider() -> Iterator[SettingsProvider]:
    with db.conn_ctx() as conn:
        yield SettingsProvider(conn)


def get_crawler_factory() -> CrawlerFactory:
    return client_from_settings


@app.exception_handler(MissingConfigError)
async def _missing_config(request: Request, exc: MissingConfigError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(CrawlerError)
async def _crawler_error(request: Request, exc: CrawlerError):
    return JSONResponse(status_code=502, content={"detail": str(exc), "status_code": exc.status_code})


@app.exception_handler(db.DuplicateContentError)
async def _duplicate_content(request: Request, exc: db.DuplicateContentError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(UnknownSettingError)
async def _unknown_setting(request: Request, exc: UnknownSettingError):
    return JSONResponse(status_code=404, content={"detail": f"설정 키를 찾을 수 없습니다: {exc.args[0]}"})


@app.exception_handler(ValidationError)
async def _settings_invalid(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
    )


@app.exception_handler(sqlite3.Error)
async def _db_error(request: Request, exc: sqlite3.Error):
    logger.error("db error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": f"저장 실패: {exc}"})


# ============================
# 계정
# ============================
class AccountRequest(BaseModel):
    name: str
    platform: str = "naver"
    url: Optional[str] = None
    blog_score: int = 50
    daily_publish_limit: int = 2


class AccountUpdateRequest(BaseModel):
    name: Optional[str] = None
    platform: Optional[str] = None
    url: Optional[str] = None
    blog_score: Optional[int] = None
    daily_publish_limit: Optional[int] = None


@app.get("/api/accounts")
def list_accounts():
    with db.conn_ctx() as conn:
        return db.list_accounts(conn)


@app.get("/api/accounts/stats")
def accounts_stats():
    with db.conn_ctx() as conn:
        return reporting.account_stats(conn)


@app.post("/api/accounts")
def create_account(data: AccountRequest):
    if not data.name.strip():
        raise HTTPException(400, "계정 이름을 입력해주세요.")
    if not 0 <= data.blog_score <= 100:
        raise HTTPException(400, "블로그 지수는 0~100 사이여야 합니다.")
    with db.conn_ctx() as conn:
        account_id = db.create_account(conn, **data.model_dump())
        return db.get_account(conn, account_id)


@app.put("/api/accounts/{account_id}")
def update_account(account_id: int, data: AccountUpdateRequest):
    patch = data.model_dump(exclude_unset=True)
    if "blog_score" in patch and not 0 <= (patch["blog_score"] or 0) <= 100:
        raise HTTPException(400, "블로그 지수는 0~100 사이여야 합니다.")
    with db.conn_ctx() as conn:
        if not db.update_account(conn, account_id, patch):
            raise HTTPException(404, "계정을 찾을 수 없습니다.")
        return db.get_account(conn, account_id)


@app.delete("/api/accounts/{account_id}")
def delete_account(account_id: int):
    with db.conn_ctx() as conn:
        try:
            deleted = db.delete_account(conn, account_id)
        except ValueError as e:
            raise HTTPException(409, str(e))
        if not deleted:
            raise HTTPException(404, "계정을 찾을 수 없습니다.")
    return {"ok": True}


# ============================
# 키워드
# ============================
class KeywordRequest(BaseModel):
    keyword: str
    sub_keyword: Optional[str] = None
    monthly_search_pc: int = 0
    monthly_search_mo: int = 0
    competition: Optional[str] = None


class KeywordUpdateRequest(BaseModel):
    keyword: Optional[str] = None
    sub_keyword: Optional[str] = None
    monthly_search_pc: Optional[int] = None
    monthly_search_mo: Optional[int] = None
    competition: Optional[str] = None


class KeywordBulkRequest(BaseModel):
    items: List[KeywordRequest]


class AnalyzeUrlRequest(BaseModel):
    url: str


@app.get("/api/keywords")
def list_keywords():
    with db.conn_ctx() as conn:
        return db.list_keywords(conn)


@app.post("/api/keywords")
def create_keyword(data: KeywordRequest):
    if not data.keyword.strip():
        raise HTTPException(400, "키워드를 입력해주세요.")
    with db.conn_ctx() as conn:
        try:
            keyword_id = db.create_keyword(conn, **data.model_dump())
        except sqlite3.IntegrityError:
            raise HTTPException(409, "이미 등록된 키워드입니다.")
        return db.get_keyword(conn, keyword_id)


@app.put("/api/keywords/{keyword_id}")
def update_keyword(keyword_id: int, data: KeywordUpdateRequest):
    with db.conn_ctx() as conn:
        try:
            found = db.update_keyword(conn, keyword_id, data.model_dump(exclude_unset=True))
        except sqlite3.IntegrityError:
            raise HTTPException(409, "이미 등록된 키워드입니다.")
        except ValueError:
            raise HTTPException(400, "키워드를 입력해주세요.")
        if not found:
            raise HTTPException(404, "키워드를 찾을 수 없습니다.")
        return db.get_keyword(conn, keyword_id)


@app.delete("/api/keywords/{keyword_id}")
def delete_keyword(keyword_id: int):
    with db.conn_ctx() as conn:
        if not db.delete_keyword(conn, keyword_id):
            raise HTTPException(404, "키워드를 찾을 수 없습니다.")
    return {"ok": True}


@app.post("/api/keywords/bulk")
def bulk_keywords(data: KeywordBulkRequest):
    with db.conn_ctx() as conn:
        return db.bulk_upsert_keywords(conn, [it.model_dump() for it in data.items])


@app.post("/api/keywords/analyze-url")
def analyze_url(
    data: AnalyzeUrlRequest,
    provider: SettingsProvider = Depends(get_settings_provider),
    factory: CrawlerFactory = Depends(get_crawler_factory),
):
    """발행 URL에서 메인/서브 키워드 추출 (저장하지 않음)"""
    if not data.url.strip():
        raise HTTPException(400, "URL을 입력해주세요.")
    result = factory(provider).blog_analyze(data.url.strip())
    return {"main_keyword": result.get("main_keyword"), "sub_keyword": result.get("sub_keyword")}


# ============================
# 콘텐츠
# ============================
class ContentRequest(BaseModel):
    keyword_id: int
    url: str
    account_id: Optional[int] = None
    title: Optional[str] = None
    published_date: Optional[str] = None
    is_active: bool = True
    camfit_link: bool = False
    source_file: Optional[str] = None


class ContentUpdateRequest(BaseModel):
    keyword_id: Optional[int] = None
    url: Optional[str] = None
    account_id: Optional[int] = None
    title: Optional[str] = None
    published_date: Optional[str] = None
    is_active: Optional[bool] = None
    camfit_link: Optional[bool] = None
    source_file: Optional[str] = None


@app.get("/api/contents")
def list_contents(
    keyword_id: Optional[int] = Query(None),
    account_id: Optional[int] = Query(None),
    is_active: Optional[bool] = Query(None),
):
    with db.conn_ctx() as conn:
        return db.list_contents(conn, keyword_id=keyword_id, account_id=account_id, is_active=is_active)


@app.post("/api/contents")
def create_content(data: ContentRequest):
    if not data.url.strip():
        raise HTTPException(400, "URL을 입력해주세요.")
    with db.conn_ctx() as conn:
        if db.get_keyword(conn, data.keyword_id) is None:
            raise HTTPException(404, "키워드를 찾을 수 없습니다.")
        content_id = db.create_content(conn, **data.model_dump())
        return db.get_content(conn, content_id)


@app.put("/api/contents/{content_id}")
def update_content(content_id: int, data: ContentUpdateRequest):
    with db.conn_ctx() as conn:
        if not db.update_content(conn, content_id, data.model_dump(exclude_unset=True)):
            raise HTTPException(404, "콘텐츠를 찾을 수 없습니다.")
        return db.get_content(conn, content_id)


@app.delete("/api/contents/{content_id}")
def delete_content(content_id: int):
    with db.conn_ctx() as conn:
        if not db.delete_content(conn, content_id):
            raise HTTPException(404, "콘텐츠를 찾을 수 없습니다.")
    return {"ok": True}


@app.get("/api/contents/{content_id}/serp")
def content_serp(content_id: int, days: int = Query(30, ge=1, le=365)):
    with db.conn_ctx() as conn:
        if db.get_content(conn, content_id) is None:
            raise HTTPException(404, "콘텐츠를 찾을 수 없습니다.")
        return db.serp_history(conn, content_id, days)


# ============================
# 대시보드 / 순위 / 발행 현황
# ============================
@app.get("/api/dashboard")
def dashboard():
    with db.conn_ctx() as conn:
        return reporting.dashboard_summary(conn)


@app.get("/api/rankings")
def rankings(
    filter_: str = Query("all", alias="filter"),
    sort: str = Query("change"),
):
    if filter_ not in reporting.RANKING_FILTERS:
        raise HTTPException(400, f"filter는 {', '.join(reporting.RANKING_FILTERS)} 중 하나여야 합니다.")
    if sort not in reporting.RANKING_SORTS:
        raise HTTPException(400, f"sort는 {', '.join(reporting.RANKING_SORTS)} 중 하나여야 합니다.")
    with db.conn_ctx() as conn:
        graph = db.load_keyword_graph(conn)
    all_rows = reporting.keyword_rankings(graph)
    return {
        "items": reporting.keyword_rankings(graph, status_filter=filter_, sort=sort),
        "stats": reporting.rankings_stats(all_rows),
        **reporting.top_movers(all_rows, n=5),
    }


@app.get("/api/publish")
def publish(
    account_id: Optional[int] = Query(None),
    q: Optional[str] = Query(None),
    exposed: Optional[bool] = Query(None),
    sort: str = Query("date"),
):
    if sort not in reporting.PUBLISH_SORTS:
        raise HTTPException(400, f"sort는 {', '.join(reporting.PUBLISH_SORTS)} 중 하나여야 합니다.")
    with db.conn_ctx() as conn:
        return reporting.publish_records(conn, account_id=account_id, q=q, exposed=exposed, sort=sort)


# ============================
# 발행 추천
# ============================
@app.get("/api/recommendations")
def recommendations(
    sort: str = Query("volume"),
    provider: SettingsProvider = Depends(get_settings_provider),
):
    if sort not in ("volume", "impact"):
        raise HTTPException(400, "sort는 volume 또는 impact 여야 합니다.")
    limits = provider.get("daily_publish_limits")
    accounts = db.load_accounts(provider.conn)
    recs = reporting.generate_recommendations(
        db.load_keyword_graph(provider.conn), accounts, limits, sort=sort
    )
    last = provider.get("last_analysis_time")
    return {
        "items": [r.to_dict() for r in recs],
        "stats": reporting.recommendation_summary(recs),
        "allocation": reporting.account_allocation(accounts, recs, limits),
        "last_analysis_time": last.timestamp,
    }


@app.post("/api/recommendations/analyze")
def recommendations_analyze(
    provider: SettingsProvider = Depends(get_settings_provider),
    factory: CrawlerFactory = Depends(get_crawler_factory),
):
    return jobs.request_analysis(provider, factory)


# ============================
# 설정
# ============================
@app.get("/api/settings")
def list_settings():
    with db.conn_ctx() as conn:
        return db.list_settings(conn)


@app.get("/api/settings/{key}")
def get_setting(key: str, provider: SettingsProvider = Depends(get_settings_provider)):
    return {"key": key, "value": provider.get(key).model_dump()}


@app.put("/api/settings/{key}")
def put_setting(
    key: str,
    value: Dict[str, Any],
    provider: SettingsProvider = Depends(get_settings_provider),
):
    if key not in SETTINGS_RECORDS:
        raise HTTPException(404, f"설정 키를 찾을 수 없습니다: {key}")
    record = provider.save(key, value)
    return {"key": key, "value": record.model_dump()}


@app.post("/api/settings/slack_webhook/test")
def slack_test(
    data: Optional[SlackWebhookConfig] = None,
    provider: SettingsProvider = Depends(get_settings_provider),
):
    """저장 전 폼 값이 오면 그 값으로, 없으면 저장된 설정으로 전송"""
    config = data or provider.get("slack_webhook")
    if not config.webhook_url.strip():
        raise HTTPException(400, "웹훅 URL을 입력해주세요.")
    ok = SlackNotifier(config).send_test()
    if not ok:
        raise HTTPException(502, "슬랙 전송 실패")
    return {"ok": True}


@app.post("/api/settings/ec2_api/test")
def ec2_test(
    provider: SettingsProvider = Depends(get_settings_provider),
    factory: CrawlerFactory = Depends(get_crawler_factory),
):
    return factory(provider).health().to_dict()


# ============================
# 배치 작업 (SSE + 동기 폴백)
# ============================
JOB_KINDS = ("volume", "serp", "metrics", "blog-score")


class JobRequest(BaseModel):
    ids: Optional[List[int]] = None


def _sync_job(
    kind: str,
    job: jobs.Job,
    ids: Optional[List[int]],
    factory: CrawlerFactory,
    progress_cb: jobs.ProgressCb,
) -> Dict[str, Any]:
    _logger = logging.getLogger("serp_tracker.jobs")
    try:
        with db.conn_ctx() as conn:
            provider = SettingsProvider(conn)
            if kind == "volume":
                report = jobs.refresh_volumes(
                    conn, factory(provider), job=job, progress_cb=progress_cb, keyword_ids=ids
                )
            elif kind == "serp":
                report = jobs.check_serp_batch(
                    conn, factory(provider), provider, job=job, progress_cb=progress_cb, content_ids=ids
                )
            elif kind == "metrics":
                report = jobs.calc_keyword_metrics(conn, job=job, progress_cb=progress_cb, keyword_ids=ids)
            else:
                report = jobs.recalc_blog_scores(conn, provider, job=job, progress_cb=progress_cb)
        _logger.info(
            "[%s] job %s: ok=%d failed=%d skipped=%d",
            kind, job.id, len(report.succeeded), len(report.failed), len(report.skipped),
        )
        return {"job_id": job.id, **report.to_dict()}
    finally:
        jobs.registry.finish(job)


def _check_kind(kind: str) -> None:
    if kind not in JOB_KINDS:
        raise HTTPException(404, f"알 수 없는 작업입니다: {kind}")


@app.get("/api/jobs")
def running_jobs():
    return jobs.registry.running()


@app.post("/api/jobs/{job_id}/cancel")
def cancel_job(job_id: str):
    if not jobs.registry.cancel(job_id):
        raise HTTPException(404, "실행 중인 작업을 찾을 수 없습니다.")
    return {"ok": True, "job_id": job_id}


@app.get("/api/jobs/{kind}/stream")
async def job_stream(
    kind: str,
    ids: Optional[str] = Query(None, description="쉼표 구분 id"),
    factory: CrawlerFactory = Depends(get_crawler_factory),
):
    _check_kind(kind)
    id_list = [int(x) for x in ids.split(",") if x.strip()] if ids else None

    loop = asyncio.get_event_loop()
    queue: asyncio.Queue[dict] = asyncio.Queue()

    def progress_cb(msg: dict):
        loop.call_soon_threadsafe(queue.put_nowait, msg)

    job = jobs.registry.start(kind)
    queue.put_nowait({"stage": "start", "job_id": job.id, "current": 0, "total": 0, "message": "작업 시작"})

    task = loop.run_in_executor(None, _sync_job, kind, job, id_list, factory, progress_cb)

    return StreamingResponse(
        sse_job_stream(queue, task),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.post("/api/jobs/{kind}")
def run_job(
    kind: str,
    data: Optional[JobRequest] = None,
    factory: CrawlerFactory = Depends(get_crawler_factory),
):
    _check_kind(kind)
    job = jobs.registry.start(kind)
    return _sync_job(kind, job, data.ids if data else None, factory, lambda _: None)


# ============================
# 원격 크롤러 서버
# ============================
@app.get("/api/server/status")
def server_status(
    provider: SettingsProvider = Depends(get_settings_provider),
    factory: CrawlerFactory = Depends(get_crawler_factory),
):
    status = factory(provider).health().to_dict()
    status["running_jobs"] = jobs.registry.running()
    return status


@app.post("/api/server/run/{kind}")
def server_run(
    kind: str,
    provider: SettingsProvider = Depends(get_settings_provider),
    factory: CrawlerFactory = Depends(get_crawler_factory),
):
    if kind not in jobs.REMOTE_JOB_KINDS:
        raise HTTPException(404, f"알 수 없는 작업입니다: {kind}")
    return jobs.trigger_remote_job(factory(provider), provider, kind)


# ============================
# 프록시 → 크롤러 서버
# ============================
_proxy_logger = logging.getLogger("serp_tracker.proxy")

_proxy_client: httpx.AsyncClient | None = None


async def _get_proxy_client() -> httpx.AsyncClient:
    global _proxy_client
    if _proxy_client is None:
        _proxy_client = httpx.AsyncClient(timeout=float(os.environ.get("CRAWLER_TIMEOUT", "30")))
    return _proxy_client


@app.api_route("/api/ec2/{path:path}", methods=["GET", "POST"])
async def proxy_ec2(
    request: Request,
    path: str,
    provider: SettingsProvider = Depends(get_settings_provider),
):
    config = provider.get_or_none("ec2_api")
    if config is None or not config.configured:
        return JSONResponse(status_code=500, content={"error": "EC2 설정 없음"})

    url = f"{config.base_url.rstrip('/')}/{path}"
    headers = {"X-API-Secret": config.secret}
    try:
        client = await _get_proxy_client()
        if request.method == "POST":
            try:
                body = await request.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            body["secret"] = config.secret
            resp = await client.post(url, json=body, headers=headers)
        else:
            resp = await client.get(url, headers=headers, params=dict(request.query_params))
        _proxy_logger.info(f"[Proxy] {request.method} /{path} → {resp.status_code}")
        return JSONResponse(status_code=resp.status_code, content=resp.json())
    except Exception as e:
        _proxy_logger.error(f"[Proxy] {request.method} /{path} 실패: {e}")
        return JSONResponse(status_code=500, content={"error": "서버 연결 실패"})


@app.on_event("shutdown")
async def on_shutdown():
    global _proxy_client
    if _proxy_client is not None:
        await _proxy_client.aclose()
        _proxy_client = None


if __name__ == "__main__":
    uvicorn.run("serp_tracker.app:app", host="0.0.0.0", port=int(os.environ.get("PORT", 8001)), reload=True)
