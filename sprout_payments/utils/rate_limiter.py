import logging
import random
import threading
import time
from collections import defaultdict, deque
from typing import Optional, Tuple

from fastapi import Request
from sqlalchemy import BigInteger, Column, Integer, MetaData, String, Table, delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from sprout_payments.config import Settings
from sprout_payments.database import engine
from sprout_payments.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

# Kept out of the ORM metadata; the limiter creates its own table on first use.
bucket_metadata = MetaData()
rate_limit_buckets = Table(
    "rate_limit_buckets",
    bucket_metadata,
    Column("rate_key", String(255), primary_key=True),
    Column("window_start", BigInteger, primary_key=True, autoincrement=False),
    Column("request_count", Integer, nullable=False, default=0),
    Column("updated_at", BigInteger, nullable=False, index=True),
)

UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class InMemoryRateLimiter:
    """Sliding log of request times per key. Per-process only."""

    def __init__(self) -> None:
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def allow(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
        now = time.time()
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= now - window_seconds:
                hits.popleft()
            if len(hits) >= limit:
                return False, int(max(1, window_seconds - (now - hits[0])))
            hits.append(now)
        return True, 0

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


class DatabaseRateLimiter:
    """Fixed-window counters in ``rate_limit_buckets`` so every worker sees the same totals."""

    def __init__(self, bind: Engine) -> None:
        self.bind = bind
        self._ready = False
        self._lock = threading.Lock()

    @property
    def supported(self) -> bool:
        return self.bind.dialect.name in UPSERT_DIALECTS

    def _ensure_table(self) -> None:
        if self._ready:
            return
        with self._lock:
            if not self._ready:
                bucket_metadata.create_all(bind=self.bind, checkfirst=True)
                self._ready = True

    def allow(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
        self._ensure_table()
        window_seconds = max(window_seconds, 1)
        now = int(time.time())
        window_start = now - (now % window_seconds)

        upsert = UPSERT_DIALECTS[self.bind.dialect.name](rate_limit_buckets).values(
            rate_key=key,
            window_start=window_start,
            request_count=1,
            updated_at=now,
        )
        upsert = upsert.on_conflict_do_update(
            index_elements=[rate_limit_buckets.c.rate_key, rate_limit_buckets.c.window_start],
            set_={"request_count": rate_limit_buckets.c.request_count + 1, "updated_at": now},
        )
        current = select(rate_limit_buckets.c.request_count).where(
            rate_limit_buckets.c.rate_key == key,
            rate_limit_buckets.c.window_start == window_start,
        )

        with self.bind.begin() as conn:
            # Old windows are swept occasionally rather than on every hit.
            if random.randint(1, 100) == 1:
                conn.execute(
                    delete(rate_limit_buckets).where(rate_limit_buckets.c.updated_at < window_start - window_seconds * 4)
                )
            conn.execute(upsert)
            count = conn.execute(current).scalar() or 0

        if count > limit:
            return False, int(max(1, window_start + window_seconds - now))
        return True, 0


in_memory_rate_limiter = InMemoryRateLimiter()
database_rate_limiter = DatabaseRateLimiter(engine)


def _proxy_is_trusted(request: Request, settings: Settings) -> bool:
    # Forwarded headers are honoured only when the peer is a pinned proxy.
    if not (settings.trust_proxy_headers and settings.trusted_proxy_ips):
        return False
    peer = request.client.host if request.client else ""
    return bool(peer) and peer in settings.trusted_proxy_ips


def extract_client_ip(request: Request, settings: Settings) -> str:
    if _proxy_is_trusted(request, settings):
        for header in ("cf-connecting-ip", "x-forwarded-for", "x-real-ip"):
            value = request.headers.get(header)
            if value:
                return value.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def check_ip_rate_limit(
    request: Request,
    settings: Settings,
    scope: str,
    limit: int,
    window_seconds: int,
    extra_key: Optional[str] = None,
) -> Tuple[bool, int]:
    key = ":".join(part for part in (scope, extract_client_ip(request, settings), extra_key) if part)

    if settings.rate_limit_backend == "database" and database_rate_limiter.supported:
        try:
            return database_rate_limiter.allow(key=key, limit=limit, window_seconds=window_seconds)
        except SQLAlchemyError as exc:
            # Payment callbacks must not be blocked by a limiter outage.
            logger.warning("Database rate limiter unavailable, using in-memory fallback error=%s", exc)

    return in_memory_rate_limiter.allow(key=key, limit=limit, window_seconds=window_seconds)


def enforce_rate_limit(
    request: Request,
    settings: Settings,
    scope: str,
    limit: int,
    window_seconds: int,
    extra_key: Optional[str] = None,
) -> None:
    allowed, retry_after = check_ip_rate_limit(
        request=request,
        settings=settings,
        scope=scope,
        limit=limit,
        window_seconds=window_seconds,
        extra_key=extra_key,
    )
    if not allowed:
        logger.warning("Rate limit exceeded scope=%s retry_after=%s", scope, retry_after)
        raise RateLimitExceeded(retry_after=retry_after)
