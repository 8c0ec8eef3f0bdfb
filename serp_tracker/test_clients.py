"""
SERP 트래커 외부 HTTP 클라이언트 테스트 (TC-46 ~ TC-50)
CrawlerClient / SlackNotifier 를 requests 함수 교체로 실행합니다.
크롤러가 깨진 응답을 보내도 배치가 끝까지 도는지 함께 확인합니다.
"""
from __future__ import annotations
import sys
import json
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List

# 모듈 임포트를 위해 상위 경로 추가
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import requests

from serp_tracker.crawler_client import CrawlerClient, CrawlerError
from serp_tracker.db import create_content, create_keyword, get_content, get_keyword
from serp_tracker.jobs import check_serp_batch, refresh_volumes
from serp_tracker.notifier import SlackNotifier
from serp_tracker.settings import SettingsProvider, SlackWebhookConfig
from serp_tracker.test_scenarios import TEST_DB, TODAY, _remove_db, fresh_conn

passed = 0
failed = 0
results = []


def report(tc_id: str, name: str, ok: bool, detail: str = ""):
    global passed, failed
    status = "PASS" if ok else "FAIL"
    if ok:
        passed += 1
    else:
        failed += 1
    results.append((tc_id, name, status, detail))
    print(f"  [{status}] {tc_id}: {name}" + (f" - {detail}" if detail and not ok else ""))


def json_response(status: int, body: Any) -> requests.Response:
    """body 가 bytes 면 그대로, 아니면 JSON 직렬화"""
    r = requests.Response()
    r.status_code = status
    r._content = body if isinstance(body, bytes) else json.dumps(body, ensure_ascii=False).encode("utf-8")
    r.encoding = "utf-8"
    r.headers["Content-Type"] = "application/json"
    return r


class HttpRecorder:
    """requests.request / requests.post 대역: 호출 기록 후 handler 응답 반환"""

    def __init__(self, handler: Callable[[str, str, Dict[str, Any]], Any]):
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        result = self.handler(method, url, kwargs)
        if isinstance(result, Exception):
            raise result
        return result

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)


@contextmanager
def patched_requests(recorder: HttpRecorder):
    saved = requests.request, requests.post
    requests.request, requests.post = recorder.request, recorder.post
    try:
        yield recorder
    finally:
        requests.request, requests.post = saved


# ==================== TC-46 ~ TC-47: 크롤러 클라이언트 ====================

def test_tc46_crawler_secret_and_ranks():
    def handler(method, url, kwargs):
        if url.endswith("/health"):
            return json_response(200, {"ok": True, "rank_locked": True})
        return json_response(200, {"pc_rank": "3", "mo_rank": None})

    client = CrawlerClient("http://crawler.test/", "sek", timeout=5)
    with patched_requests(HttpRecorder(handler)) as rec:
        ranks = client.serp_check("강남 맛집", "https://blog.naver.com/a/1", 15)
        status = client.health()
    post, get = rec.calls
    ok = (
        post["method"] == "POST"
        and post["url"] == "http://crawler.test/api/serp/check"
        and post["headers"] == {"X-API-Secret": "sek"}
        and post["json"] == {"keyword": "강남 맛집", "url": "https://blog.naver.com/a/1", "rank_max": 15, "secret": "sek"}
        and post["timeout"] == 5
    )
    ok2 = get["method"] == "GET" and get["json"] is None and get["headers"] == {"X-API-Secret": "sek"}
    ok3 = ranks == {"pc_rank": 3, "mo_rank": None} and status.ok and status.rank_locked and not status.volume_locked
    report("TC-46", "시크릿 헤더 + POST body secret 주입", ok and ok2, f"{rec.calls}")
    report("TC-46b", "순위 정수 변환 / 서버 상태", ok3, f"{ranks} {status}")
    assert ok and ok2 and ok3


def test_tc47_crawler_error_mapping():
    replies = {
        "/api/keyword/volume": json_response(503, {"detail": "busy"}),
        "/api/blog/analyze": json_response(500, b"<html>oops</html>"),
        "/run": json_response(200, {"ok": False, "detail": "이미 실행 중"}),
        "/run-volume": json_response(200, {"ok": True, "pid": 7}),
        "/run-analysis": requests.exceptions.ConnectionError("refused"),
        "/health": json_response(200, [1, 2]),
    }

    def handler(method, url, kwargs):
        return replies[url[len("http://crawler.test"):]]

    client = CrawlerClient("http://crawler.test", "sek", timeout=5)
    errors: Dict[str, CrawlerError] = {}
    with patched_requests(HttpRecorder(handler)):
        for name, call in (
            ("volume", lambda: client.keyword_volume(["a"])),
            ("analyze", lambda: client.blog_analyze("https://blog.naver.com/a/1")),
            ("rank", lambda: client.run_rank()),
            ("analysis", lambda: client.run_analysis()),
            ("health", lambda: client.health()),
        ):
            try:
                call()
            except CrawlerError as e:
                errors[name] = e
        started = client.run_volume()

    ok = errors["volume"].status_code == 503 and "busy" in str(errors["volume"])
    ok2 = errors["analyze"].status_code == 500 and "oops" in str(errors["analyze"])
    ok3 = str(errors["rank"]) == "이미 실행 중" and started == {"ok": True, "pid": 7}
    ok4 = str(errors["analysis"]).startswith("서버 연결 실패") and errors["analysis"].status_code is None
    ok5 = "형식" in str(errors["health"])
    report("TC-47", "비정상 상태 코드 → CrawlerError(status_code)", ok and ok2, f"{errors}")
    report("TC-47b", "ok=false / 연결 실패 / 객체 아닌 응답 → CrawlerError", ok3 and ok4 and ok5)
    assert ok and ok2 and ok3 and ok4 and ok5


# ==================== TC-48 ~ TC-49: 깨진 응답과 배치 작업 ====================

def test_tc48_serp_batch_survives_malformed_reply():
    conn = fresh_conn()
    urls = ["https://blog.naver.com/n/1", "https://blog.naver.com/n/2", "https://blog.naver.com/n/3"]
    ids = [
        create_content(conn, create_keyword(conn, f"깨진 응답 {i}"), url, published_date=f"2026-01-0{i + 1}")
        for i, url in enumerate(urls)
    ]
    conn.commit()
    replies = {
        urls[0]: json_response(200, None),
        urls[1]: json_response(200, {"pc_rank": 3, "mo_rank": 4}),
        urls[2]: json_response(200, {"pc_rank": "N/A", "mo_rank": 1}),
    }

    def handler(method, url, kwargs):
        return replies[kwargs["json"]["url"]]

    client = CrawlerClient("http://crawler.test", "sek", timeout=5)
    with patched_requests(HttpRecorder(handler)) as rec:
        rep = check_serp_batch(conn, client, SettingsProvider(conn), delay=0, captured_at=TODAY)
    saved = conn.execute(
        "SELECT content_id, device, rank FROM serp_results ORDER BY content_id, device"
    ).fetchall()
    ok = len(rec.calls) == 3 and len(rep.succeeded) == 1 and len(rep.failed) == 2 and not rep.aborted
    ok2 = all("형식" in f["error"] for f in rep.failed)
    ok3 = [tuple(r) for r in saved] == [(ids[1], "MO", 4), (ids[1], "PC", 3)]
    ok4 = get_content(conn, ids[0])["is_active"] is True and get_content(conn, ids[2])["is_active"] is True
    report("TC-48", "깨진 SERP 응답은 항목 실패로 기록, 다음 항목 계속", ok and ok2, f"{rep.to_dict()}")
    report("TC-48b", "정상 항목만 저장, 실패 항목은 추적 유지", ok3 and ok4, f"{[tuple(r) for r in saved]}")
    conn.close()
    assert ok and ok2 and ok3 and ok4


def test_tc49_volume_batch_malformed_reply():
    conn = fresh_conn()
    k = create_keyword(conn, "콤마 검색량")
    conn.commit()

    def handler(method, url, kwargs):
        return json_response(200, {"results": [
            {"keyword": "콤마 검색량", "pc_volume": "1,200", "mo_volume": 300, "total_volume": 1500},
        ]})

    client = CrawlerClient("http://crawler.test", "sek", timeout=5)
    with patched_requests(HttpRecorder(handler)):
        rep = refresh_volumes(conn, client, delay=0)
        try:
            client.keyword_volume(["콤마 검색량"])
            raised = False
        except CrawlerError:
            raised = True
    ok = rep.aborted and "형식" in (rep.error or "") and rep.extra["updated"] == 0 and raised
    ok2 = get_keyword(conn, k)["monthly_search_total"] == 0
    report("TC-49", "깨진 검색량 응답 → 작업 중단 보고 (예외 전파 없음)", ok and ok2, f"{rep.to_dict()}")
    conn.close()
    assert ok and ok2


# ==================== TC-50: 슬랙 알림 ====================

def test_tc50_slack_notifier():
    url = "https://hooks.slack.test/services/x"
    status = {"code": 200}

    def handler(method, hook, kwargs):
        return json_response(status["code"], b"ok")

    unexposed = [{"keyword": f"키워드{i}", "url": f"https://blog.naver.com/u/{i}"} for i in range(25)]
    with patched_requests(HttpRecorder(handler)) as rec:
        disabled = SlackNotifier(SlackWebhookConfig(enabled=False, webhook_url=url))
        sent_disabled = disabled.notify_serp_complete({"succeeded": 1}) or disabled.notify_unexposed(unexposed)
        calls_disabled = len(rec.calls)

        no_complete = SlackNotifier(SlackWebhookConfig(enabled=True, webhook_url=url, notify_serp_complete=False))
        sent_complete = no_complete.notify_serp_complete({"succeeded": 1})
        sent_unexposed = no_complete.notify_unexposed(unexposed)
        sent_test = disabled.send_test()

        status["code"] = 500
        sent_500 = no_complete.send_test()
    with patched_requests(HttpRecorder(lambda *a: requests.exceptions.ConnectionError("refused"))):
        sent_refused = no_complete.send_test()

    ok = not sent_disabled and calls_disabled == 0 and not sent_complete
    alert, test_msg = rec.calls[0], rec.calls[1]
    lines = alert["json"]["blocks"][0]["text"]["text"].split("\n")
    ok2 = (
        sent_unexposed
        and alert["url"] == url
        and alert["json"]["text"] == "⚠️ 미노출 콘텐츠 25건 (추적 중지)"
        and len(lines) == 22
        and lines[1] == "• 키워드0 | https://blog.naver.com/u/0"
        and lines[-1] == "… 외 5건"
    )
    ok3 = sent_test and set(test_msg["json"]) == {"text", "blocks"} and test_msg["timeout"] == 10.0
    ok4 = not sent_500 and not sent_refused
    report("TC-50", "알림 비활성 / 유형별 끄기 → 전송 안 함", ok, f"{rec.calls}")
    report("TC-50b", "미노출 알림 20줄 제한 + 외 N건", ok2, f"{lines}")
    report("TC-50c", "테스트 전송 payload, 실패 응답 → False", ok3 and ok4)
    assert ok and ok2 and ok3 and ok4


def main():
    print("=" * 60)
    print("SERP 트래커 외부 클라이언트 테스트 실행")
    print("=" * 60)

    print("\n[크롤러 클라이언트 TC-46~47]")
    test_tc46_crawler_secret_and_ranks()
    test_tc47_crawler_error_mapping()

    print("\n[깨진 응답 배치 TC-48~49]")
    test_tc48_serp_batch_survives_malformed_reply()
    test_tc49_volume_batch_malformed_reply()

    print("\n[슬랙 알림 TC-50]")
    test_tc50_slack_notifier()

    _remove_db(TEST_DB)

    print("\n" + "=" * 60)
    print(f"결과: {passed} PASS / {failed} FAIL (총 {passed+failed}건)")
    print("=" * 60)

    if failed:
        print("\n실패 목록:")
        for tc_id, name, status, detail in results:
            if status == "FAIL":
                print(f"  {tc_id}: {name} - {detail}")

    return failed


if __name__ == "__main__":
    sys.exit(main())
