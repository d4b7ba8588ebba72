"""
Celery application used only to publish pipeline triggers. The consuming
worker lives in the pipeline project; no tasks are registered here.
"""

from dotenv import load_dotenv

load_dotenv()

import ssl

from celery import Celery
from kombu import Queue

from app.settings import AppConfig

broker_url = AppConfig.get_value("broker_url")
broker_use_ssl = broker_url.startswith("rediss://")

ssl_options = None
if broker_use_ssl:
    ssl_options = {
        "ssl_cert_reqs": ssl.CERT_NONE,
        "ssl_check_hostname": False,
    }

# topics the broker knows about; publishing anywhere else is refused
declared_topics = AppConfig.get_list("declared_topics") or [
    AppConfig.get_value("pipeline_topic")
]

celery_app = Celery(
    "storybook_admin",
    broker=broker_url,
    broker_use_ssl=ssl_options,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_queues=[Queue(topic) for topic in declared_topics],
    task_create_missing_queues=False,
    task_ignore_result=True,
    broker_connection_retry_on_startup=True,
    broker_connection_retry=True,
    broker_connection_max_retries=3,
)
