"""build_consumer/lambda_function.py

Kafka (MSK) consumer for Screwdriver build messages.

Event source: MSK / self-managed Kafka event source mapping. Each record
value is a base64 JSON build message::

    {"job": "start" | "stop", "executorType": "eks" | "sls", "buildConfig": {...}}

Primary responsibilities:
- Fan out one worker per record, partition by partition.
- Start or stop the build on the named executor in the build's region.
- Report the build's host back to the Screwdriver API after a start.
- Return "Finished processing messages: <n>" regardless of per-record failures.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional

from config import AWS_REGION, STACKTRACE_DIR, logger
from dispatcher import BatchDispatcher, BatchRecord, MessageProcessor
from executor_registry import RegionalExecutorCache, default_registry
from screwdriver_api import new_api

__all__ = ["lambda_handler", "parse_kafka_event"]

_dispatcher: Optional[BatchDispatcher] = None
_dispatcher_lock = threading.Lock()


def parse_kafka_event(event: Optional[Dict[str, Any]]) -> Dict[str, List[BatchRecord]]:
    """Group the event's records by ``<topic>-<partition>`` key, keeping order."""
    event = event or {}
    raw = event.get("records")
    if raw is None:
        raw = event.get("Records")
    if not isinstance(raw, dict):
        return {}

    partitions: Dict[str, List[BatchRecord]] = {}
    for key, records in raw.items():
        batch: List[BatchRecord] = []
        for index, record in enumerate(records or []):
            record = record or {}
            batch.append(
                BatchRecord(
                    partition_key=str(key),
                    value=record.get("value") or "",
                    topic=record.get("topic") or "",
                    partition=int(record.get("partition") or 0),
                    offset=int(record.get("offset") or 0),
                    index=index,
                )
            )
        partitions[str(key)] = batch
    return partitions


def _get_dispatcher() -> BatchDispatcher:
    global _dispatcher
    if _dispatcher is None:
        with _dispatcher_lock:
            if _dispatcher is None:
                processor = MessageProcessor(
                    RegionalExecutorCache(default_registry),
                    new_api,
                    fallback_region=AWS_REGION,
                    stacktrace_dir=STACKTRACE_DIR,
                )
                _dispatcher = BatchDispatcher(processor)
    return _dispatcher


def lambda_handler(event: Dict[str, Any], context: Any) -> str:
    partitions = parse_kafka_event(event)
    logger.info(
        "[INFO] Received %d records in %d partitions",
        sum(len(records) for records in partitions.values()),
        len(partitions),
    )
    summary, _ = _get_dispatcher().dispatch(partitions, context)
    logger.info("[INFO] %s", summary)
    return summary
