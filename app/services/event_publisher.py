"""
Kafka event publisher — fire-and-forget.

Publishes ledger events (INTERVIEW_RESERVED, INTERVIEW_FINALIZED,
INTERVIEWS_RECONCILED) for downstream consumers (dashboards, exports,
notification senders). Gracefully degrades if Kafka is unavailable.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from app.core.config import get_settings

logger = structlog.get_logger()

INTERVIEW_RESERVED = "INTERVIEW_RESERVED"
INTERVIEW_FINALIZED = "INTERVIEW_FINALIZED"
INTERVIEWS_RECONCILED = "INTERVIEWS_RECONCILED"

_producer = None


async def _get_producer():
    global _producer
    settings = get_settings()
    if not settings.kafka_enabled:
        return None
    if _producer is None:
        from aiokafka import AIOKafkaProducer
        _producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_bootstrap)
        await _producer.start()
    return _producer


async def publish_ledger_event(event_type: str, payload: dict[str, Any], key: Optional[str] = None) -> None:
    settings = get_settings()
    if not settings.kafka_enabled:
        return

    try:
        producer = await _get_producer()
        if producer:
            event = {
                "event_type": event_type,
                "published_at": datetime.now(timezone.utc).isoformat(),
                **payload,
            }
            await producer.send_and_wait(
                settings.kafka_topic_ledger_events,
                json.dumps(event, default=str).encode("utf-8"),
                key=key.encode("utf-8") if key else None,
            )
            logger.info("kafka_event_published", event_type=event_type, key=key)
    except Exception as e:
        # Fire-and-forget: log but don't fail the request
        logger.warning("kafka_publish_failed", event_type=event_type, error=str(e))


async def stop_publisher() -> None:
    global _producer
    if _producer is not None:
        await _producer.stop()
        _producer = None
