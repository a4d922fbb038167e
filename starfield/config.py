"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.

Every engine component takes its tuning values as constructor arguments and
falls back to this module's `settings` singleton, so tests can build
components without touching the environment.
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Remote data service (Parse-style REST) ─────────────────────────────
    remote_base_url: str = "https://parseapi.back4app.com"
    remote_files_base_url: str = "https://parsefiles.back4app.com"
    remote_app_id: str = ""
    remote_rest_key: str = ""
    remote_timeout: float = 10.0
    remote_max_tries: int = 3            # attempts for transient failures

    # ── Key-value store (cursor, snapshot, nav-cache mirror) ───────────────
    kv_backend: str = "redis"            # 'redis' | 'memory'
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_db: int = 0
    kv_quota_bytes: int = 5 * 1024 * 1024    # mirrors a browser storage quota
    kv_key_prefix: str = "starfield:"

    # ── Ingestion ──────────────────────────────────────────────────────────
    ingest_user_page_size: int = 1000    # remote service caps a page at 1000
    ingest_post_page_size: int = 200
    ingest_comment_page_size: int = 300
    ingest_max_members: int = 600_000
    ingest_max_pages_per_run: int = 5
    ingest_page_delay: float = 0.05      # seconds between pages (rate limit)
    ingest_reschedule_delay: float = 5.0
    ingest_layout_min_members: int = 10
    ingest_refine_steps: int = 3
    snapshot_fresh_seconds: float = 3600.0

    # ── Caches ─────────────────────────────────────────────────────────────
    search_cache_ttl: float = 5 * 60
    search_cache_max: int = 30
    search_cache_version: int = 2
    image_cache_max: int = 80
    post_cache_ttl: float = 60 * 60
    post_cache_max: int = 10
    post_data_cache_max: int = 2000
    beam_cache_ttl: float = 60 * 60
    beam_cache_max: int = 12

    # ── Snapshot persistence ───────────────────────────────────────────────
    snapshot_version: int = 4
    snapshot_max_members: int = 30_000
    snapshot_image_ref_cutoff: int = 15_000
    snapshot_reduced_members: int = 15_000
    nav_cache_version: int = 1
    nav_cache_max_users: int = 60

    # ── Rendering / LOD ────────────────────────────────────────────────────
    max_points_displayed: int = 100_000
    planet_sprite_lod: int = 80
    beam_batch_size: int = 28
    frame_interval: float = 1 / 30

    # ── Decorations (planets / beams) ──────────────────────────────────────
    post_page_size: int = 40
    max_posts_fetch: int = 250
    comment_page_size: int = 150
    comment_page_size_large: int = 400
    comment_page_size_threshold: int = 2000
    max_comments: int = 15_000
    post_chunk: int = 40
    supporter_count: int = 3

    # ── Selection / travel ─────────────────────────────────────────────────
    travel_duration: float = 1.0
    deep_link_travel_duration: float = 2.8
    deep_link_max_wait: float = 15.0
    profile_priority_delay: float = 0.4
    camera_distance_from_member: float = 10 / 3
    reselect_travel_skip_distance: float = 12.0

    # ── Search ─────────────────────────────────────────────────────────────
    search_debounce: float = 0.3
    search_result_limit: int = 10

    # ── HTTP server ────────────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    tracing_enabled: bool = True
    service_name: str = "starfield"
    environment: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
