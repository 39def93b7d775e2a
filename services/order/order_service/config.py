"""
Order Service — 設定

すべて環境変数から読む。時間の単位は秒。
"""

import os
from dataclasses import dataclass, field

CPU_COUNT = os.cpu_count() or 1


@dataclass(frozen=True)
class PipelineConfig:
    # アドミッションゲート
    admission_capacity: int = 5000
    admission_wait: float = 0.0
    # 商品検証
    validation_timeout: float = 0.2
    reject_out_of_stock: bool = False
    # 永続化 (DB ワーカープール)
    db_workers: int = CPU_COUNT * 20
    db_acquire_timeout: float = 0.1
    persist_timeout: float = 1.0
    # イベント発行 (DB とは別のプール)
    event_workers: int = CPU_COUNT * 30
    event_queue_size: int = 1000
    publish_timeout: float = 1.0
    # 読み取り
    read_timeout_by_id: float = 1.0
    read_timeout_by_product: float = 2.0
    # 注文一覧キャッシュの削除 (アドミッションスロット保持中)
    invalidate_timeout: float = 0.1
    slow_order_threshold: float = 0.5


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379"
    product_service_url: str = "http://localhost:3000"
    log_level: str = "INFO"
    local_cache_ttl: float = 30.0
    remote_cache_ttl: float = 300.0
    remote_cache_timeout: float = 0.03
    origin_timeout: float = 0.15
    order_list_ttl: float = 10.0
    listing_cache_timeout: float = 0.05
    warmup_product_ids: tuple[int, ...] = ()
    stats_log_interval: float = 30.0
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = PipelineConfig()
        pipeline = PipelineConfig(
            admission_capacity=_int("ADMISSION_CAPACITY", defaults.admission_capacity),
            admission_wait=_float("ADMISSION_WAIT", defaults.admission_wait),
            validation_timeout=_float("VALIDATION_TIMEOUT", defaults.validation_timeout),
            reject_out_of_stock=_bool("REJECT_OUT_OF_STOCK", defaults.reject_out_of_stock),
            db_workers=_int("DB_WORKERS", defaults.db_workers),
            db_acquire_timeout=_float("DB_ACQUIRE_TIMEOUT", defaults.db_acquire_timeout),
            persist_timeout=_float("PERSIST_TIMEOUT", defaults.persist_timeout),
            event_workers=_int("EVENT_WORKERS", defaults.event_workers),
            event_queue_size=_int("EVENT_QUEUE_SIZE", defaults.event_queue_size),
            publish_timeout=_float("PUBLISH_TIMEOUT", defaults.publish_timeout),
            invalidate_timeout=_float("INVALIDATE_TIMEOUT", defaults.invalidate_timeout),
        )
        return cls(
            database_url=os.environ["DATABASE_URL"],
            redis_url=os.environ.get("REDIS_URL", cls.redis_url),
            product_service_url=os.environ.get(
                "PRODUCT_SERVICE_URL", cls.product_service_url
            ),
            log_level=os.environ.get("LOG_LEVEL", cls.log_level),
            local_cache_ttl=_float("LOCAL_CACHE_TTL", cls.local_cache_ttl),
            remote_cache_ttl=_float("REMOTE_CACHE_TTL", cls.remote_cache_ttl),
            remote_cache_timeout=_float("REMOTE_CACHE_TIMEOUT", cls.remote_cache_timeout),
            origin_timeout=_float("ORIGIN_TIMEOUT", cls.origin_timeout),
            order_list_ttl=_float("ORDER_LIST_TTL", cls.order_list_ttl),
            listing_cache_timeout=_float(
                "LISTING_CACHE_TIMEOUT", cls.listing_cache_timeout
            ),
            warmup_product_ids=tuple(
                int(pid)
                for pid in os.environ.get("PRODUCT_WARMUP_IDS", "").split(",")
                if pid.strip()
            ),
            stats_log_interval=_float("STATS_LOG_INTERVAL", cls.stats_log_interval),
            pipeline=pipeline,
        )


def _int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


def _bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")
