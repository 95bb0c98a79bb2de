# read_analytics/main.py
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Header

from read_analytics.models import ArticleOut, DailyAggregateOut
from read_analytics.ratelimit import read_key
from read_analytics.runtime import AnalyticsRuntime


def create_app(runtime: Optional[AnalyticsRuntime] = None) -> FastAPI:

    # --- LIFECYCLE (STARTUP / SHUTDOWN) ---
    @asynccontextmanager
    async def lifecycle(app: FastAPI):
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = AnalyticsRuntime.from_env()
        await app.state.runtime.start()
        yield
        await app.state.runtime.stop()

    app = FastAPI(lifespan=lifecycle)
    app.state.runtime = runtime

    # --- API ENDPOINTS ---

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/articles/{article_id}")
    async def get_article(article_id: str, request: Request,
                          x_user_id: Optional[str] = Header(default=None)):
        """
        Ambil artikel. Pencatatan read dilakukan SETELAH response dibangun
        dan tidak pernah ditunggu (fire-and-forget ke recorder).
        """
        rt = request.app.state.runtime
        article = await rt.store.get_article(article_id)
        if article is None:
            raise HTTPException(status_code=404, detail="Article not found")
        if article.deleted_at is not None:
            raise HTTPException(status_code=410, detail="News article no longer available")

        response = ArticleOut.model_validate(article)

        ip = request.client.host if request.client else None
        if await rt.limiter.allow(read_key(ip, x_user_id, article_id)):
            rt.recorder.submit(article_id, x_user_id)
        return response

    @app.get("/articles/{article_id}/analytics")
    async def get_article_analytics(article_id: str, request: Request):
        rt = request.app.state.runtime
        rows = await rt.store.daily_aggregates(article_id)
        return {
            "article_id": article_id,
            "total_views": await rt.store.total_views(article_id),
            "daily": [DailyAggregateOut.model_validate(row) for row in rows],
        }

    @app.get("/queue/stats")
    async def queue_stats(request: Request):
        return await request.app.state.runtime.queue.stats()

    return app


app = create_app()
