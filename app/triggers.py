"""
Trigger Dispatcher: publishes content / illustration regeneration requests
for a book onto the pipeline topic. Publishing is fire-and-forget; there is
no local retry and no ordering guarantee once a message leaves the process.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from celery import Celery
from fastapi.concurrency import run_in_threadpool

from app.exceptions import ConfigurationError, TopicNotFoundError, TriggerValidationError
from app.settings import AppConfig
from app.utils import title_from_safe_title

logger = logging.getLogger("storybook-admin")

CONTENT = "content"
ILLUSTRATIONS = "illustrations"
BOTH = "both"
ACTIONS = (CONTENT, ILLUSTRATIONS, BOTH)

# the worker works out the real chapter count itself
DEFAULT_CHAPTER_COUNT = 1

_ACTION_FLAGS = {
    CONTENT: "regenerate_content",
    ILLUSTRATIONS: "regenerate_illustrations_only",
}
_ACTION_LABELS = {
    CONTENT: "content regeneration",
    ILLUSTRATIONS: "illustration regeneration",
}


def build_trigger_message(
    book_safe_title: str,
    action: str,
    chapter_title: Optional[str] = None,
    output_formats: Optional[List[str]] = None,
) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """Payload and routing attributes for a single content or illustrations message."""
    if action not in _ACTION_FLAGS:
        raise TriggerValidationError(f"Unsupported single action: {action}")
    payload: Dict[str, Any] = {
        "book_title": title_from_safe_title(book_safe_title),
        "chapter_count": DEFAULT_CHAPTER_COUNT,
        "output_formats": list(output_formats or ["pdf", "html", "epub"]),
    }
    if chapter_title:
        payload["chapter_title"] = chapter_title
    payload[_ACTION_FLAGS[action]] = True
    attributes = {"action": action, "book_safe_title": book_safe_title}
    return payload, attributes


def validate_trigger(book_safe_title: Optional[str], action: Optional[str]) -> str:
    if not book_safe_title:
        raise TriggerValidationError("bookSafeTitle is required")
    action = action or CONTENT
    if action not in ACTIONS:
        raise TriggerValidationError(
            f"Unsupported action: {action}. Expected one of {', '.join(ACTIONS)}"
        )
    return action


class TriggerDispatcher:
    """Publishes trigger messages to one topic through Celery"""

    def __init__(
        self,
        celery: Optional[Celery] = None,
        topic: str = None,
        task_name: str = None,
    ):
        if celery is None:
            from app.celery_app import celery_app

            celery = celery_app
        self.celery = celery
        self.topic = topic or AppConfig.get_value("pipeline_topic")
        self.task_name = task_name or AppConfig.get_value("pipeline_task_name")
        if not self.topic or not self.task_name:
            raise ConfigurationError(
                "STORYBOOK_PIPELINE_TOPIC and STORYBOOK_PIPELINE_TASK_NAME are required"
            )
        self.output_formats = AppConfig.get_list("pipeline_output_formats")

    def topic_exists(self) -> bool:
        # Queues is a dict; membership does not auto-create missing queues
        return self.topic in self.celery.amqp.queues

    async def publish(self, payload: Dict[str, Any], attributes: Dict[str, str]) -> str:
        result = await run_in_threadpool(
            self.celery.send_task,
            self.task_name,
            kwargs=payload,
            queue=self.topic,
            headers=attributes,
        )
        logger.info(
            f"Published {attributes['action']} trigger for {attributes['book_safe_title']} "
            f"to {self.topic}: message_id={result.id}"
        )
        return result.id

    async def dispatch(
        self,
        book_safe_title: Optional[str],
        action: Optional[str],
        chapter_title: Optional[str] = None,
    ) -> Dict[str, Any]:
        action = validate_trigger(book_safe_title, action)
        if not self.topic_exists():
            raise TopicNotFoundError(self.topic)

        book_title = title_from_safe_title(book_safe_title)
        logger.info(f"Publishing to topic={self.topic} for {book_safe_title} (action={action})")

        if action == BOTH:
            # content first, then illustrations; the worker must serialize them
            message_ids = []
            for single in (CONTENT, ILLUSTRATIONS):
                payload, attributes = build_trigger_message(
                    book_safe_title, single, chapter_title, self.output_formats
                )
                message_ids.append(await self.publish(payload, attributes))
            message = "Both pipelines triggered successfully"
            if chapter_title:
                message += f" for chapter: {chapter_title}"
            message += " (audiobook first, then picture book)"
            return {
                "success": True,
                "message": message,
                "messageIds": message_ids,
                "bookTitle": book_title,
                "chapterTitle": chapter_title or None,
            }

        payload, attributes = build_trigger_message(
            book_safe_title, action, chapter_title, self.output_formats
        )
        message_id = await self.publish(payload, attributes)
        message = f"Pipeline {_ACTION_LABELS[action]} triggered successfully"
        if chapter_title:
            message += f" for chapter: {chapter_title}"
        return {
            "success": True,
            "message": message,
            "messageId": message_id,
            "bookTitle": book_title,
            "chapterTitle": chapter_title or None,
        }
