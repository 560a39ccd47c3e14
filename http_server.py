"""
NewsHarvest HTTP Server
An HTTP wrapper around the harvest pipeline for schedulers and dashboards.

Usage:
    python http_server.py                    # Run on default port 8000
    python http_server.py --port 3000        # Run on custom port
    uvicorn http_server:app --host 0.0.0.0   # Production with uvicorn
"""
import argparse
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

import settings
from errors import ConfigError, StoreUnavailable
from extraction import Extractor
from geo_filter import GeoRelevanceFilter
from health import report as health_report, update_streaks
from orchestrator import BatchOrchestrator
from registry import SourceRegistry, load_registry
from store import ArticleStore, GuardedStore, SqliteArticleStore

logger = settings.get_logger('http')

VERSION = "1.0.0"


class HarvestService:
    """Holds the long-lived collaborators and the most recent run."""

    def __init__(self, registry: SourceRegistry, store: ArticleStore,
                 extractor: Extractor = None, pause_seconds: float = settings.BATCH_PAUSE_SECONDS):
        self.registry = registry
        self.store = store
        self.extractor = extractor or Extractor()
        self.orchestrator = BatchOrchestrator(
            store,
            extractor=self.extractor,
            geo_filter=GeoRelevanceFilter.from_registry(registry),
            pause_seconds=pause_seconds,
        )
        self.streaks: Dict[str, int] = {}
        self.latest: Optional[Dict] = None
        self._run_lock = threading.Lock()

    def scrape(self, regions: Optional[List[str]], max_concurrency: int) -> Dict:
        if not self._run_lock.acquire(blocking=False):
            raise HTTPException(status_code=409, detail="a scrape run is already in progress")
        try:
            batch_report = self.orchestrator.run_regions(self.registry, regions, max_concurrency)
            self.streaks = update_streaks(self.streaks, batch_report)
            payload = {
                'generatedAt': datetime.now(timezone.utc).isoformat(),
                'report': batch_report.to_dict(),
                'health': health_report(batch_report, self.streaks).to_dict(),
            }
            self.latest = payload
            return payload
        finally:
            self._run_lock.release()

    def health(self) -> Dict:
        breaker = getattr(self.store, 'breaker', None)
        try:
            stored = self.store.count()
        except StoreUnavailable as e:
            logger.warning("Store count unavailable: %s", e, extra={'error_type': 'store'})
            stored = None
        return {
            "status": "healthy",
            "version": VERSION,
            "regionCount": len(self.registry.regions()),
            "sourceCount": len(self.registry),
            "store": self.store.name,
            "storedArticles": stored,
            "breaker": breaker.stats() if breaker else None,
            "metrics": self.extractor.metrics.get_stats(),
            "lastRunAt": self.latest['generatedAt'] if self.latest else None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


# =============================================================================
# FASTAPI APP SETUP
# =============================================================================

def create_app(registry: SourceRegistry = None, store: ArticleStore = None,
               extractor: Extractor = None, pause_seconds: float = settings.BATCH_PAUSE_SECONDS) -> FastAPI:
    """Build the app. Collaborators default to the configured registry and SQLite store."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings.configure_logging()
        logger.info("NewsHarvest HTTP Server starting...")
        if getattr(app.state, 'service', None) is None:
            app.state.service = HarvestService(
                registry or load_registry(),
                store or GuardedStore(SqliteArticleStore()),
                extractor,
                pause_seconds,
            )
        yield
        logger.info("NewsHarvest HTTP Server shutting down...")

    app = FastAPI(
        title="NewsHarvest",
        description="Regional news harvesting pipeline",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.service = None
    if registry is not None and store is not None:
        app.state.service = HarvestService(registry, store, extractor, pause_seconds)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def service() -> HarvestService:
        return app.state.service

    # =========================================================================
    # REST API ENDPOINTS
    # =========================================================================

    @app.get("/health")
    def health_endpoint():
        """Health check with extractor metrics and store breaker state."""
        return service().health()

    @app.get("/sources")
    def sources_endpoint():
        reg = service().registry
        return {
            region: {
                "aliases": list(reg.region(region).aliases),
                "sources": [
                    {"name": d.name, "url": d.url, "aggregator": d.aggregator,
                     "timeout": d.timeout, "minArticles": d.min_articles}
                    for d in reg.sources_for_region(region)
                ],
            }
            for region in reg.regions()
        }

    @app.post("/scrape/{region}")
    def scrape_region_endpoint(
        region: str,
        max_concurrency: int = Query(settings.MAX_CONCURRENCY, ge=1, description="Sources fetched at once"),
    ):
        """
        Scrape one region.

        Example: curl -X POST http://localhost:8000/scrape/manipur
        """
        svc = service()
        try:
            name = svc.registry.resolve_region(region).name
        except ConfigError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return svc.scrape([name], max_concurrency)

    @app.post("/scrape")
    def scrape_endpoint(
        regions: Optional[List[str]] = Body(None, embed=True),
        max_concurrency: int = Query(settings.MAX_CONCURRENCY, ge=1, description="Sources fetched at once"),
    ):
        """Scrape the given regions, or every region when none are given."""
        svc = service()
        names = None
        if regions:
            try:
                names = [svc.registry.resolve_region(r).name for r in regions]
            except ConfigError as e:
                raise HTTPException(status_code=404, detail=str(e))
        return svc.scrape(names, max_concurrency)

    @app.get("/reports/latest")
    def latest_report_endpoint():
        latest = service().latest
        if latest is None:
            raise HTTPException(status_code=404, detail="no run has completed yet")
        return latest

    @app.get("/")
    def root():
        return {
            "name": "NewsHarvest",
            "version": VERSION,
            "endpoints": {
                "health": "GET /health",
                "sources": "GET /sources",
                "scrape_region": "POST /scrape/{region}",
                "scrape": "POST /scrape",
                "latest_report": "GET /reports/latest",
            },
        }

    return app


app = create_app()

# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main():
    """Run the HTTP server."""
    parser = argparse.ArgumentParser(description="NewsHarvest HTTP Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to run on")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    args = parser.parse_args()

    print(f"NewsHarvest HTTP Server running at http://{args.host}:{args.port}")

    uvicorn.run(
        "http_server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info"
    )


if __name__ == "__main__":
    main()
