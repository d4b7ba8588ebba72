"""
Error taxonomy shared by the store, resolver, status and trigger layers.
The API layer maps each class to an HTTP status code.
"""

import logging
from contextlib import contextmanager

logger = logging.getLogger("storybook-admin")


class StorybookError(Exception):
    """Base class for errors surfaced to admin console callers"""

    status_code = 500


class BookNotFoundError(StorybookError):
    """The book (or one of its children) does not exist"""

    status_code = 404

    def __init__(self, safe_title: str):
        super().__init__(f"Book not found: {safe_title}")
        self.safe_title = safe_title


class BadRequestError(StorybookError):
    """The request is missing a field or names something unknown"""

    status_code = 400


class TriggerValidationError(BadRequestError):
    """A trigger request is missing required fields"""


class TopicNotFoundError(StorybookError):
    """The configured pipeline topic is not declared on the broker"""

    status_code = 404

    def __init__(self, topic: str):
        super().__init__(
            f"Pipeline topic does not exist: {topic}. Please create it first."
        )
        self.topic = topic


class ConfigurationError(StorybookError):
    """Required configuration is missing"""

    status_code = 500


class UpstreamError(StorybookError):
    """The entity store, blob store or message broker call failed"""

    status_code = 500

    def __init__(self, operation: str, cause: Exception):
        super().__init__(str(cause) or f"{operation} failed")
        self.operation = operation
        self.cause = cause


class SubStorySaveError(StorybookError):
    """A sub-story row could not be written, so its pages have no owner"""

    def __init__(self, sub_story_number: int, cause: Exception):
        super().__init__(
            f"Failed to save sub-story {sub_story_number}: {cause or 'Unknown error'}"
        )
        self.sub_story_number = sub_story_number


@contextmanager
def upstream_call(operation: str, **context):
    """
    Wrap store, blob and broker calls. Taxonomy errors pass through untouched;
    anything else is logged with its context and re-raised as UpstreamError.
    """
    try:
        yield
    except StorybookError:
        raise
    except Exception as e:
        details = ", ".join(f"{key}={value}" for key, value in context.items())
        logger.error(f"{operation} failed ({details}): {e}", exc_info=True)
        raise UpstreamError(operation, e) from e
