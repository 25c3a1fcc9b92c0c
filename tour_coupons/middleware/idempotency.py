import asyncio
import json
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from ..core.config import settings

logger = logging.getLogger(__name__)

# Endpoints con reintento seguro y la clave de éxito esperada en el JSON
ALLOW = {
    "/coupons/apply": "usage_id",
}

REPLAY_HEADER = "Idempotent-Replay"


class _Cache:
    def __init__(self, ttl=3600, max_entries=2048):
        self.ttl = ttl
        self.max_entries = max_entries
        self._store = {}
        self._lock = asyncio.Lock()

    async def get(self, key):
        async with self._lock:
            item = self._store.get(key)
            if not item:
                return None
            if item["exp"] < time.time():
                self._store.pop(key, None)
                return None
            return item

    async def set(self, key, val):
        async with self._lock:
            if key not in self._store and len(self._store) >= self.max_entries:
                self._store.pop(next(iter(self._store)))
            val["exp"] = time.time() + self.ttl
            self._store[key] = val


class _KeyedLocks:
    def __init__(self):
        self._locks = {}
        self._guard = asyncio.Lock()

    async def acquire(self, key):
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
        await lock.acquire()
        return lock


def _drop_content_length(headers: dict) -> dict:
    # Content-Length se recalcula al reconstruir la respuesta
    return {k: v for k, v in headers.items() if k.lower() != "content-length"}


def _json_dict(body: bytes):
    try:
        js = json.loads(body.decode("utf-8"))
    except ValueError:
        return None
    return js if isinstance(js, dict) else None


def _replay(cached) -> Response:
    body = cached["body"]
    js = _json_dict(body)
    if js is not None:
        js.setdefault("replay", True)
        body = json.dumps(js).encode("utf-8")
    headers = _drop_content_length(dict(cached["headers"]))
    headers[REPLAY_HEADER] = "true"
    return Response(
        content=body,
        status_code=cached["status"],
        media_type=cached["media_type"],
        headers=headers,
    )


_idem_cache = _Cache(ttl=settings.idempotency_ttl_seconds)
_keyed_locks = _KeyedLocks()


class CouponApplyIdempotency(BaseHTTPMiddleware):
    """
    Un POST /coupons/apply repetido con el mismo Idempotency-Key devuelve
    la respuesta original sin volver a canjear el cupón. Solo se cachean
    respuestas 200 que traen la clave de éxito: un error se puede reintentar.
    """

    async def dispatch(self, request, call_next):
        if request.method != "POST":
            return await call_next(request)

        path = request.url.path
        success_key = ALLOW.get(path)
        if not success_key:
            return await call_next(request)

        idem_key = request.headers.get("Idempotency-Key")
        if not idem_key:
            return await call_next(request)

        cache_key = f"{request.method}:{path}:{idem_key}"

        cached = await _idem_cache.get(cache_key)
        if cached:
            logger.debug("idempotent replay for %s", cache_key)
            return _replay(cached)

        # Sección crítica por clave: dos requests simultáneos no canjean dos veces
        lock = await _keyed_locks.acquire(cache_key)
        try:
            cached = await _idem_cache.get(cache_key)
            if cached:
                return _replay(cached)

            response = await call_next(request)
            body = b""
            async for chunk in response.body_iterator:
                body += chunk

            headers = _drop_content_length(dict(response.headers))
            new_resp = Response(
                content=body,
                status_code=response.status_code,
                media_type=response.media_type,
                headers=headers,
            )

            js = _json_dict(body) if response.status_code == 200 else None
            if js is not None and success_key in js:
                await _idem_cache.set(
                    cache_key,
                    {
                        "status": new_resp.status_code,
                        "headers": dict(new_resp.headers),
                        "media_type": new_resp.media_type,
                        "body": body,
                    },
                )

            return new_resp
        finally:
            lock.release()


def install_idempotency(app):
    app.add_middleware(CouponApplyIdempotency)
