from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from app.exceptions import TopicNotFoundError, TriggerValidationError
from app.triggers import TriggerDispatcher, build_trigger_message

pytestmark = pytest.mark.anyio

TOPIC = "tiny-tales-books-topic"
TASK = "tiny_tales.pipeline.process_book"


def _celery(queues=(TOPIC,), fail=False):
    celery = MagicMock()
    celery.amqp.queues = {name: MagicMock() for name in queues}
    ids = iter(["msg-1", "msg-2", "msg-3"])

    def send_task(name, kwargs=None, queue=None, headers=None):
        if fail:
            raise ConnectionError("broker unreachable")
        return SimpleNamespace(id=next(ids))

    celery.send_task.side_effect = send_task
    return celery


def test_build_content_message() -> None:
    payload, attributes = build_trigger_message(
        "Harry_Potter", "content", "Chapter 3", ["pdf"]
    )

    assert payload == {
        "book_title": "Harry Potter",
        "chapter_count": 1,
        "output_formats": ["pdf"],
        "chapter_title": "Chapter 3",
        "regenerate_content": True,
    }
    assert attributes == {"action": "content", "book_safe_title": "Harry_Potter"}


def test_build_illustrations_message_without_chapter() -> None:
    payload, _ = build_trigger_message("Harry_Potter", "illustrations")

    assert payload["regenerate_illustrations_only"] is True
    assert "chapter_title" not in payload
    assert "regenerate_content" not in payload


async def test_single_action_publishes_once() -> None:
    celery = _celery()
    dispatcher = TriggerDispatcher(celery, topic=TOPIC, task_name=TASK)

    result = await dispatcher.dispatch("Harry_Potter", "illustrations")

    assert result["success"] is True
    assert result["messageId"] == "msg-1"
    assert result["bookTitle"] == "Harry Potter"
    assert result["chapterTitle"] is None
    assert result["message"] == "Pipeline illustration regeneration triggered successfully"
    celery.send_task.assert_called_once()
    _, kwargs = celery.send_task.call_args
    assert kwargs["queue"] == TOPIC
    assert kwargs["headers"]["action"] == "illustrations"


async def test_missing_action_defaults_to_content() -> None:
    celery = _celery()
    dispatcher = TriggerDispatcher(celery, topic=TOPIC, task_name=TASK)

    result = await dispatcher.dispatch("Harry_Potter", None, "Chapter 1")

    assert result["message"] == (
        "Pipeline content regeneration triggered successfully for chapter: Chapter 1"
    )
    assert celery.send_task.call_args.kwargs["kwargs"]["regenerate_content"] is True


async def test_both_publishes_content_then_illustrations() -> None:
    celery = _celery()
    dispatcher = TriggerDispatcher(celery, topic=TOPIC, task_name=TASK)

    result = await dispatcher.dispatch("Harry_Potter", "both", "Chapter 2")

    assert result["messageIds"] == ["msg-1", "msg-2"]
    assert result["message"] == (
        "Both pipelines triggered successfully for chapter: Chapter 2 "
        "(audiobook first, then picture book)"
    )
    actions = [call.kwargs["headers"]["action"] for call in celery.send_task.call_args_list]
    assert actions == ["content", "illustrations"]


async def test_missing_topic_publishes_nothing() -> None:
    celery = _celery(queues=("other-topic",))
    dispatcher = TriggerDispatcher(celery, topic=TOPIC, task_name=TASK)

    with pytest.raises(TopicNotFoundError) as excinfo:
        await dispatcher.dispatch("Harry_Potter", "content")

    assert excinfo.value.status_code == 404
    celery.send_task.assert_not_called()


@pytest.mark.parametrize("safe_title, action", [("", "content"), (None, "both"), ("Book", "audio")])
async def test_invalid_requests_rejected(safe_title, action) -> None:
    celery = _celery()
    dispatcher = TriggerDispatcher(celery, topic=TOPIC, task_name=TASK)

    with pytest.raises(TriggerValidationError):
        await dispatcher.dispatch(safe_title, action)

    celery.send_task.assert_not_called()


async def test_publish_failure_propagates_without_retry() -> None:
    celery = _celery(fail=True)
    dispatcher = TriggerDispatcher(celery, topic=TOPIC, task_name=TASK)

    with pytest.raises(ConnectionError):
        await dispatcher.dispatch("Harry_Potter", "both")

    assert celery.send_task.call_count == 1


def test_default_dispatcher_uses_declared_queues() -> None:
    dispatcher = TriggerDispatcher()

    assert dispatcher.topic == TOPIC
    assert dispatcher.task_name == TASK
    assert dispatcher.output_formats == ["pdf", "html", "epub"]
    assert dispatcher.topic_exists()
    assert TriggerDispatcher(dispatcher.celery, topic="undeclared-topic").topic_exists() is False
