"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Data service (PostgREST-style relational API) ──────────────────────
    data_service_url: str = "http://data-service:3000"
    data_service_api_key: str = ""
    data_service_timeout: float = 5.0

    # ── Feed ───────────────────────────────────────────────────────────────
    feed_page_size: int = 50
    feed_new_activities_limit: int = 20
    feed_cache_ttl_seconds: int = 120     # 2 min staleness window
    feed_cache_backend: str = "memory"    # 'memory' | 'redis'

    # ── Redis ──────────────────────────────────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_cache_prefix: str = "activity-feed"

    # ── Kafka (one insert topic per source kind) ───────────────────────────
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_topic_posts: str = "posts.insert"
    kafka_topic_saves: str = "restaurant_saves.insert"
    kafka_topic_follows: str = "user_relationships.insert"
    kafka_topic_community_joins: str = "community_members.insert"
    kafka_topic_likes: str = "post_likes.insert"
    kafka_topic_comments: str = "post_comments.insert"

    # ── Live channel reconnect policy ──────────────────────────────────────
    realtime_reconnect_attempts: int = 3  # 0 = drop the subscription
    realtime_reconnect_base_delay: float = 0.5
    realtime_reconnect_max_delay: float = 10.0

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "activity-feed"
    environment: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
