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

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    docrepo settings

    Environment variables use the DOCREPO_ prefix, for example
    DOCREPO_ELASTICSEARCH_URL or DOCREPO_CACHE_EXPIRATION.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DOCREPO_",
        extra="ignore",
    )

    # Backends: "elasticsearch" | "memory"
    store_type: str = "elasticsearch"
    elasticsearch_url: str = "http://localhost:9200"
    elasticsearch_request_timeout: float = 30.0

    # Backends: "redis" | "memory" | "none"
    cache_type: str = "redis"
    redis_url: str = "redis://localhost:6379"

    # Backends: "celery" | "memory" | "none"
    publisher_type: str = "celery"
    celery_broker_url: str = "redis://localhost:6379/1"
    notification_task: str = "docrepo.entity_changed"
    notification_delay: float = 0.0

    # Seconds
    cache_expiration: int = 300
    deleted_ids_expiration: int = 30
    snapshot_lifetime: int = 300

    default_page_limit: int = 10
    max_page_limit: int = 10000
    batch_page_limit: int = 500
    remove_all_page_limit: int = 1000

    bulk_retry_attempts: int = 3
    bulk_retry_max_wait: float = 2.0
    patch_retry_attempts: int = 3

    reindex_poll_interval: float = 10.0
    reindex_stall_timeout: float = 600.0


settings = Settings()
