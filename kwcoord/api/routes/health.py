from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from kwcoord.adapters.store.base import AbstractKeyValueStore
from kwcoord.core.dependencies import get_result_cache, get_store
from kwcoord.core.errors import StoreError
from kwcoord.services.result_cache import ResultCache

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(
    store: AbstractKeyValueStore = Depends(get_store),
    cache: ResultCache = Depends(get_result_cache),
) -> JSONResponse:
    """Health check endpoint.

    Reports whether the shared store answers a ping and how the result
    cache is doing. Used by load balancers and monitoring systems; answers
    503 while the store is unreachable because no coordination call can
    succeed then.

    Returns:
        JSONResponse: ``status`` is ``ok`` or ``degraded``.
    """

    try:
        reachable = await store.ping()
        store_error = None
    except StoreError as exc:
        reachable = False
        store_error = exc.code

    cache_stats = cache.stats()
    body = {
        "status": "ok" if reachable else "degraded",
        "store": {
            "configured": store.configured,
            "reachable": reachable,
            "error": store_error,
        },
        "cache": cache_stats,
    }
    return JSONResponse(status_code=200 if reachable else 503, content=body)
