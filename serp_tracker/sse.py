from __future__ import annotations
import asyncio
import json
from typing import Any, AsyncIterator, Dict


def sse_event(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def sse_job_stream(
    queue: "asyncio.Queue[Dict[str, Any]]",
    task: "asyncio.Future[Dict[str, Any]]",
) -> AsyncIterator[str]:
    """작업 스레드 진행 메시지 → progress 이벤트, 끝나면 result 이벤트"""
    while True:
        try:
            msg = await asyncio.wait_for(queue.get(), timeout=0.5)
            yield sse_event("progress", msg)
            if msg.get("stage") == "done":
                break
        except asyncio.TimeoutError:
            if task.done():
                # 큐에 남은 것 모두 처리
                while not queue.empty():
                    yield sse_event("progress", queue.get_nowait())
                break
            yield sse_event("progress", {"stage": "waiting", "current": 0, "total": 0, "message": "처리 중..."})

    try:
        result = await task
        yield sse_event("result", result)
    except Exception as e:
        yield sse_event("result", {"error": str(e)})
