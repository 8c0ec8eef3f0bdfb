from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

import requests

from serp_tracker.settings import SlackWebhookConfig

logger = logging.getLogger(__name__)


class SlackNotifier:
    def __init__(self, config: SlackWebhookConfig, timeout: float = 10.0) -> None:
        self.config = config
        self.timeout = timeout

    @property
    def active(self) -> bool:
        return self.config.enabled and bool(self.config.webhook_url.strip())

    def send(self, text: str, blocks: Optional[List[Dict[str, Any]]] = None) -> bool:
        """웹훅 POST. 실패는 로그만 남기고 False"""
        if not self.config.webhook_url.strip():
            return False
        payload: Dict[str, Any] = {"text": text}
        if blocks:
            payload["blocks"] = blocks
        try:
            r = requests.post(self.config.webhook_url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning("slack webhook failed: %s", e)
            return False
        if not r.ok:
            logger.warning("slack webhook → %d", r.status_code)
            return False
        return True

    def send_test(self) -> bool:
        return self.send(
            "🔔 SERP Tracker 테스트 알림입니다!",
            [{
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": "*🔔 SERP Tracker 연동 테스트*\n웹훅 연결이 정상적으로 설정되었습니다!",
                },
            }],
        )

    def notify_serp_complete(self, report: Dict[str, Any]) -> bool:
        if not (self.active and self.config.notify_serp_complete):
            return False
        text = (
            f"✅ SERP 체크 완료: 성공 {report.get('succeeded', 0)}건"
            f" / 실패 {report.get('failed', 0)}건"
            f" / 노출 {report.get('exposed', 0)}건"
        )
        if report.get("cancelled"):
            text += " (중단됨)"
        return self.send(text, [{"type": "section", "text": {"type": "mrkdwn", "text": text}}])

    def notify_unexposed(self, contents: List[Dict[str, Any]]) -> bool:
        """이번 체크에서 미노출로 추적 중지된 콘텐츠 목록"""
        if not contents or not (self.active and self.config.notify_unexposed_alert):
            return False
        lines = [f"• {c.get('keyword', '')} | {c.get('url', '')}" for c in contents[:20]]
        if len(contents) > 20:
            lines.append(f"… 외 {len(contents) - 20}건")
        text = f"⚠️ 미노출 콘텐츠 {len(contents)}건 (추적 중지)"
        return self.send(
            text,
            [{"type": "section", "text": {"type": "mrkdwn", "text": f"*{text}*\n" + "\n".join(lines)}}],
        )
