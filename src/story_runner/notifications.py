"""Push notifications for run milestones via an ntfy server.

Delivery is best effort: every failure is logged and swallowed so a flaky
notification endpoint can never stop the run loop.
"""

from __future__ import annotations

from typing import Optional

import httpx
from loguru import logger

from .config import NotificationConfig
from .models import StoryStats


class NotificationManager:
    """Send ntfy notifications for the events enabled in config."""

    def __init__(self, config: NotificationConfig, client: Optional[httpx.Client] = None, project: str = ""):
        self.config = config
        self.project = project
        self.enabled = bool(config.enabled and config.topic)
        self._client = client

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.config.timeout_seconds)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def wants(self, event: str) -> bool:
        return self.enabled and event in self.config.events

    def notify_all_complete(self, stats: Optional[StoryStats], iterations: int) -> bool:
        body = f"All stories complete after {iterations} iterations."
        if stats is not None:
            body += f"\n{stats.completed}/{stats.total} stories, {stats.criteria_checked}/{stats.criteria_total} criteria"
        return self._send_notification("all_complete", "Run complete", body, priority="default", tags="white_check_mark")

    def notify_all_blocked(self, blocked: int) -> bool:
        return self._send_notification(
            "all_blocked",
            "All stories blocked",
            f"{blocked} stories are blocked and need attention.",
            priority="high",
            tags="no_entry",
        )

    def notify_story_complete(self, story_id: str, title: str = "") -> bool:
        body = f"{story_id} {title}".strip()
        return self._send_notification("story_complete", "Story complete", body, tags="heavy_check_mark")

    def notify_error(self, error: str, story_id: Optional[str] = None) -> bool:
        body = f"Story: {story_id}\n{error}" if story_id else error
        return self._send_notification("error", "Run failed", body, priority="high", tags="x")

    def notify_max_iterations(self, iterations: int, stats: Optional[StoryStats]) -> bool:
        body = f"Stopped after {iterations} iterations."
        if stats is not None:
            body += f"\n{stats.pending} pending, {stats.blocked} blocked"
        return self._send_notification("max_iterations", "Iteration limit reached", body, tags="hourglass")

    def _send_notification(
        self,
        event: str,
        title: str,
        body: str,
        *,
        priority: str = "default",
        tags: str = "",
    ) -> bool:
        if not self.wants(event):
            return False
        if self.project:
            title = f"[{self.project}] {title}"
        headers = {"Title": title.encode("ascii", "replace").decode("ascii"), "Priority": priority}
        if tags:
            headers["Tags"] = tags
        url = f"{self.config.server}/{self.config.topic}"
        try:
            response = self._get_client().post(url, content=body.encode("utf-8"), headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Failed to send {} notification: {}", event, exc)
            return False
        logger.debug("Sent {} notification to {}", event, url)
        return True
