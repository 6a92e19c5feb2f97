"""Process-wide service container"""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import Settings, get_settings
from .queue import TaskQueue
from .store import TaskStore
from .webhook import WebhookNotifier

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """The store, queue and notifier shared by every request in the process"""

    settings: Settings
    store: TaskStore
    queue: TaskQueue
    notifier: WebhookNotifier

    async def close(self):
        """Stop running jobs and release connections"""
        await self.queue.stop()
        await self.notifier.aclose()
        await self.store.close()


async def build_services(settings: Optional[Settings] = None) -> Services:
    """Build and initialise the services. Call once from the running event loop."""
    settings = settings or get_settings()

    store = TaskStore(settings)
    await store.init()

    services = Services(
        settings=settings,
        store=store,
        queue=TaskQueue(store, max_concurrent=settings.task_max_concurrent),
        notifier=WebhookNotifier(
            timeout_seconds=settings.webhook_timeout_seconds,
            retry_delays=settings.webhook_retry_delays,
        ),
    )
    logger.info("Services ready (storage mode: %s)", store.get_mode())
    return services
