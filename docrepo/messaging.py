# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from celery import Celery

from docrepo.models.events import EntityChanged

logger = logging.getLogger(__name__)


class MessagePublisher(ABC):
    """Abstract base class for outbound change notification publishers"""

    @abstractmethod
    async def publish(self, message: EntityChanged, delay: Optional[float] = None) -> None:
        """
        Publish a change notification

        Args:
            message: The entity change to publish
            delay: Seconds to wait before consumers see the message
        """
        pass


class CeleryMessagePublisher(MessagePublisher):
    """Publishes notifications as Celery tasks, using the countdown for the delivery delay"""

    def __init__(self, app: Celery = None, task_name: str = None):
        from docrepo.config import settings

        self._app = app or Celery("docrepo", broker=settings.celery_broker_url)
        self._task_name = task_name or settings.notification_task

    async def publish(self, message: EntityChanged, delay: Optional[float] = None) -> None:
        result = self._app.send_task(
            self._task_name,
            args=[message.model_dump(mode="json")],
            countdown=delay if delay else None,
        )
        logger.debug(f"Published {message.change_type.value} notification for {message.type} {message.id} as task {result.id}")


class InMemoryMessagePublisher(MessagePublisher):
    """Local implementation for testing or single-process deployments"""

    def __init__(self):
        self.messages: List[Tuple[EntityChanged, Optional[float]]] = []

    async def publish(self, message: EntityChanged, delay: Optional[float] = None) -> None:
        self.messages.append((message, delay))

    def clear(self) -> None:
        self.messages.clear()


def create_publisher(publisher_type: str = None) -> Optional[MessagePublisher]:
    """
    Factory function to create a message publisher

    Args:
        publisher_type: "celery", "memory" or "none". Defaults to settings.publisher_type

    Returns:
        MessagePublisher instance, or None when notifications are disabled
    """
    from docrepo.config import settings

    publisher_type = publisher_type or settings.publisher_type
    if publisher_type == "celery":
        return CeleryMessagePublisher()
    elif publisher_type == "memory":
        return InMemoryMessagePublisher()
    elif publisher_type == "none":
        return None
    else:
        raise ValueError(f"Unknown publisher type: {publisher_type}")
