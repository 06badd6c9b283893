from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, HTTPException

from src.core.models import iso, utc_now
from src.generator.event_generator import EventGenerator
from src.generator.event_store import EventStore


def create_app(generator: EventGenerator, store: EventStore) -> FastAPI:
    """HTTP surface of the generator: health, stats and manual generation."""

    app = FastAPI(title="Event Generator API")

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "service": generator.service_name}

    @app.get("/api/events/stats")
    def stats() -> dict:
        total = store.count()
        processed = store.count_by_processed(True)
        unprocessed = store.count_by_processed(False)
        return {
            "serviceName": generator.service_name,
            "totalEvents": total,
            "processedEvents": processed,
            "unprocessedEvents": unprocessed,
            "processedPercentage": round(processed / total * 100, 2) if total else 0.0,
            "unprocessedPercentage": round(unprocessed / total * 100, 2) if total else 0.0,
            "generationStatus": "ACTIVE" if generator.generation_enabled else "PAUSED",
            "timestamp": iso(utc_now()),
        }

    @app.post("/api/events/generate")
    def generate(eventType: Optional[str] = None, payload: Optional[str] = None) -> dict:
        try:
            event = generator.generate(event_type=eventType, payload=payload)
        except Exception as e:
            raise HTTPException(status_code=500, detail=f"generation failed: {e}") from e
        return event.to_dict()

    return app
