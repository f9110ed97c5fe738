"""dispatcher.py — Per-message processing and per-partition fan-out.

Every record of a partition gets its own worker thread; the partition is
done once every worker has signalled the partition's CompletionCounter.
Partitions run one after another. A failure in one record never reaches
its siblings or the batch summary.
"""
from __future__ import annotations

import datetime as dt
import http.client
import json
import os
import sys
import time
import traceback
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from threading import Condition
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from build_message import BuildConfig, BuildConfigError, MessageDecodeError, decode_message
from config import AWS_REGION, STACKTRACE_DIR, logger
from executor_registry import ExecutorError, ExecutorRegistry
from screwdriver_api import ScrewdriverAPI, ScrewdriverAPIError

__all__ = [
    "BatchDispatcher",
    "BatchRecord",
    "CompletionCounter",
    "MessageProcessor",
    "Outcome",
    "report_build_stats",
    "summary_message",
    "write_stacktrace",
]

JOB_START = "start"
JOB_STOP = "stop"


class Outcome:
    STARTED = "started"
    STOPPED = "stopped"
    SKIPPED = "skipped"
    FAILED = "failed"
    CRASHED = "crashed"


def summary_message(total: int) -> str:
    return f"Finished processing messages: {total}"


def _now_z() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# Completion counter
# ---------------------------------------------------------------------------


class CompletionCounter:
    """Outstanding-work counter for one partition."""

    def __init__(self, count: int):
        if count < 0:
            raise ValueError("count must not be negative")
        self._remaining = count
        self._cond = Condition()

    @property
    def remaining(self) -> int:
        with self._cond:
            return self._remaining

    def done(self) -> None:
        with self._cond:
            if self._remaining <= 0:
                raise ValueError("CompletionCounter signalled more times than its count")
            self._remaining -= 1
            if self._remaining == 0:
                self._cond.notify_all()

    def wait(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._remaining == 0, timeout=timeout)


@dataclass(frozen=True)
class BatchRecord:
    partition_key: str
    value: str
    topic: str = ""
    partition: int = 0
    offset: int = 0
    index: int = 0


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def report_build_stats(api: ScrewdriverAPI, hostname: str, build_id: int) -> bool:
    """Tell the build API where the build landed. Failures are logged only."""
    if not hostname:
        return False
    stats = {
        "hostname": hostname,
        "imagePullStartTime": dt.datetime.now(dt.timezone.utc),
    }
    try:
        api.update_build(stats, build_id)
    except (ScrewdriverAPIError, ValueError, OSError, http.client.HTTPException) as exc:
        logger.error("Failed to update build %s stats: %s", build_id, exc)
        return False
    logger.info("Updated build %s with hostname %s", build_id, hostname)
    return True


def write_stacktrace(directory: str, text: str) -> Optional[str]:
    """Write ``text`` to ``<directory>/stacktrace-<timestamp>`` with mode 0600."""
    stamp = dt.datetime.now(dt.timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")
    path = os.path.join(directory, f"stacktrace-{stamp}")
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
    except OSError as exc:
        logger.error("Failed to write stacktrace to %s: %s", path, exc)
        return None
    logger.error("Stacktrace written to %s", path)
    return path


# ---------------------------------------------------------------------------
# Per-message processor
# ---------------------------------------------------------------------------


class MessageProcessor:
    """Decode one record, resolve its executor, run start/stop, report.

    ``registry_provider`` maps a build region to an ExecutorRegistry and
    ``api_factory`` builds a ScrewdriverAPI from ``(apiUri, token)``.
    """

    def __init__(
        self,
        registry_provider: Callable[[str], ExecutorRegistry],
        api_factory: Callable[[str, str], ScrewdriverAPI],
        *,
        fallback_region: str = AWS_REGION,
        stacktrace_dir: str = STACKTRACE_DIR,
    ):
        self._registry_provider = registry_provider
        self._api_factory = api_factory
        self.fallback_region = fallback_region
        self.stacktrace_dir = stacktrace_dir

    def process(self, record: BatchRecord, counter: CompletionCounter, context: Any = None) -> str:
        try:
            return self._process(record, context)
        except Exception:
            logger.exception(
                "Recovered from unexpected error processing record %s[%s]",
                record.partition_key,
                record.index,
            )
            write_stacktrace(self.stacktrace_dir, traceback.format_exc())
            return Outcome.CRASHED
        finally:
            counter.done()

    def _process(self, record: BatchRecord, context: Any) -> str:
        if context is not None and hasattr(context, "get_remaining_time_in_millis"):
            logger.info(
                "Processing record %s[%s], %sms remaining",
                record.partition_key,
                record.index,
                context.get_remaining_time_in_millis(),
            )

        try:
            message = decode_message(record.value)
        except (MessageDecodeError, BuildConfigError) as exc:
            logger.error("Failed to decode record %s[%s]: %s", record.partition_key, record.index, exc)
            return Outcome.SKIPPED

        if not message.is_actionable():
            logger.warning(
                "Skipping record %s[%s]: job=%r executorType=%r",
                record.partition_key,
                record.index,
                message.job,
                message.executor_type,
            )
            return Outcome.SKIPPED

        config = message.build_config
        try:
            region = config.build_region(self.fallback_region)
        except BuildConfigError as exc:
            logger.error("Invalid build region for record %s[%s]: %s", record.partition_key, record.index, exc)
            return Outcome.SKIPPED
        executor = self._registry_provider(region).resolve(message.executor_type)
        if executor is None:
            logger.error("Executor %r not found for region %s", message.executor_type, region)
            return Outcome.SKIPPED

        logger.info("Executor: %s, job: %s, region: %s", executor.name, message.job, region)

        if message.job not in (JOB_START, JOB_STOP):
            logger.warning("Unknown job %r for executor %s, ignoring", message.job, executor.name)
            return Outcome.SKIPPED

        try:
            if message.job == JOB_STOP:
                executor.stop(config)
                return Outcome.STOPPED
            hostname = executor.start(config)
        except BuildConfigError as exc:
            logger.error("Invalid build config for %s on executor %s: %s", message.job, executor.name, exc)
            return Outcome.SKIPPED
        except ExecutorError as exc:
            logger.error("Error running %s for executor %s: %s", message.job, executor.name, exc)
            return Outcome.FAILED

        logger.info("Build started, hostname: %r", hostname)
        if hostname:
            self._report(config, hostname)
        return Outcome.STARTED

    def _report(self, config: BuildConfig, hostname: str) -> None:
        try:
            api = self._api_factory(config.get_str("apiUri"), config.get_str("token"))
            build_id = config.build_id
        except (BuildConfigError, ValueError) as exc:
            logger.error("Cannot report build stats: %s", exc)
            return
        report_build_stats(api, hostname, build_id)


# ---------------------------------------------------------------------------
# Batch dispatcher
# ---------------------------------------------------------------------------


def _write_stderr(message: str) -> None:
    sys.stderr.write(f"{message}\n{traceback.format_exc()}")
    sys.stderr.flush()


class BatchDispatcher:
    def __init__(self, processor: MessageProcessor):
        self._processor = processor

    def _run_partition(
        self, key: str, records: Sequence[BatchRecord], context: Any, outcomes: Counter
    ) -> None:
        counter = CompletionCounter(len(records))
        with ThreadPoolExecutor(max_workers=len(records), thread_name_prefix="build-consumer") as pool:
            futures = [pool.submit(self._processor.process, record, counter, context) for record in records]
            counter.wait()
        for record, future in zip(records, futures):
            try:
                outcomes[future.result()] += 1
            except Exception as exc:
                outcomes[Outcome.CRASHED] += 1
                _write_stderr(f"build_consumer: unrecovered error in record {key}[{record.index}]: {exc!r}")

    def dispatch(
        self, partitions: Mapping[str, Sequence[BatchRecord]], context: Any = None
    ) -> Tuple[str, None]:
        started = time.monotonic()
        total = 0
        outcomes: Counter = Counter()
        try:
            for key, records in partitions.items():
                if not records:
                    continue
                logger.info("Processing partition %s with %s records", key, len(records))
                total += len(records)
                self._run_partition(key, records, context, outcomes)
        except Exception as exc:
            _write_stderr(f"build_consumer: unrecovered error dispatching batch: {exc!r}")

        _emit_observability(
            "batch_dispatched",
            partitions=len(partitions),
            records=total,
            outcomes=dict(outcomes),
            latency_ms=int((time.monotonic() - started) * 1000),
        )
        return summary_message(total), None


def _emit_observability(event: str, **fields: Any) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": "build_consumer",
        "event": event,
    }
    payload.update(fields)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
