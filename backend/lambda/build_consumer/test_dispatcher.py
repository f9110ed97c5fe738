"""Per-message processor and batch dispatcher tests.

Executors and the Screwdriver API are replaced by recording fakes; no AWS
credentials or network access are needed.
"""

from __future__ import annotations

import base64
import http.client
import io
import json
import os
import stat
import sys
import threading
import unittest
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.dirname(__file__))

import dispatcher  # noqa: E402
from dispatcher import (  # noqa: E402
    BatchDispatcher,
    BatchRecord,
    CompletionCounter,
    MessageProcessor,
    Outcome,
    report_build_stats,
)
from build_message import BuildConfigError  # noqa: E402
from executor_registry import ExecutorError, ExecutorRegistry  # noqa: E402
import screwdriver_api  # noqa: E402
from screwdriver_api import ScrewdriverAPI, ScrewdriverAPIError  # noqa: E402


def _encode(payload) -> str:
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def _message(job: str, executor: str, build_id: int = 353239, **provider) -> str:
    provider.setdefault("region", "us-west-2")
    return _encode(
        {
            "job": job,
            "executorType": executor,
            "buildConfig": {
                "buildId": build_id,
                "jobId": 126675,
                "jobName": "main",
                "token": "build-token",
                "apiUri": "https://api.screwdriver.cd",
                "provider": provider,
            },
        }
    )


def _record(value: str, key: str = "builds-0", index: int = 0) -> BatchRecord:
    return BatchRecord(partition_key=key, value=value, topic="builds", partition=0, offset=index, index=index)


class FakeExecutor:
    def __init__(self, name: str, hostname: str = "node-1", start_error=None, stop_error=None):
        self.name = name
        self.hostname = hostname
        self.start_error = start_error
        self.stop_error = stop_error
        self.started = []
        self.stopped = []
        self._lock = threading.Lock()

    def start(self, config):
        with self._lock:
            self.started.append(config)
        if self.start_error:
            raise self.start_error
        return self.hostname

    def stop(self, config):
        with self._lock:
            self.stopped.append(config)
        if self.stop_error:
            raise self.stop_error


class _Harness:
    def __init__(self, stacktrace_dir: str, **executors):
        self.eks = executors.get("eks") or FakeExecutor("eks")
        self.sls = executors.get("sls") or FakeExecutor("sls", hostname="arn:aws:codebuild:project/main-126675")
        self.registry = ExecutorRegistry([self.eks, self.sls])
        self.regions = []
        self.api = MagicMock()
        self.api_factory = MagicMock(return_value=self.api)
        self.processor = MessageProcessor(
            self._registry_for,
            self.api_factory,
            fallback_region="us-west-2",
            stacktrace_dir=stacktrace_dir,
        )
        self.dispatcher = BatchDispatcher(self.processor)

    def _registry_for(self, region: str) -> ExecutorRegistry:
        self.regions.append(region)
        return self.registry


@pytest.fixture
def harness(tmp_path):
    return _Harness(str(tmp_path))


# ---------------------------------------------------------------------------
# Batch scenarios
# ---------------------------------------------------------------------------


def test_single_start_calls_eks_once_and_reports(harness):
    summary, err = harness.dispatcher.dispatch({"builds-0": [_record(_message("start", "eks"))]})

    assert summary == "Finished processing messages: 1"
    assert err is None
    assert len(harness.eks.started) == 1
    assert harness.eks.started[0].build_id == 353239
    assert harness.sls.started == [] and harness.sls.stopped == []
    harness.api_factory.assert_called_once_with("https://api.screwdriver.cd", "build-token")
    stats, build_id = harness.api.update_build.call_args[0]
    assert build_id == 353239
    assert stats["hostname"] == "node-1"
    assert stats["imagePullStartTime"].tzinfo is not None


def test_empty_batch_makes_no_calls(harness):
    summary, err = harness.dispatcher.dispatch({})

    assert summary == "Finished processing messages: 0"
    assert err is None
    assert harness.regions == []


def test_empty_partition_counts_nothing(harness):
    summary, _ = harness.dispatcher.dispatch({"builds-0": []})
    assert summary == "Finished processing messages: 0"


def test_stop_sls_only_touches_serverless_executor(harness):
    summary, _ = harness.dispatcher.dispatch({"builds-0": [_record(_message("stop", "sls"))]})

    assert summary == "Finished processing messages: 1"
    assert len(harness.sls.stopped) == 1
    assert harness.sls.started == []
    assert harness.eks.started == [] and harness.eks.stopped == []
    harness.api.update_build.assert_not_called()


def test_unknown_executor_is_skipped_but_counted(harness):
    summary, _ = harness.dispatcher.dispatch({"builds-0": [_record(_message("start", "unknown"))]})

    assert summary == "Finished processing messages: 1"
    for executor in (harness.eks, harness.sls):
        assert executor.started == [] and executor.stopped == []


def test_two_partitions_total_five(harness):
    partitions = {
        "builds-0": [_record(_message("start", "eks", build_id=i), "builds-0", i) for i in range(2)],
        "builds-1": [_record(_message("stop", "sls", build_id=10 + i), "builds-1", i) for i in range(3)],
    }
    summary, _ = harness.dispatcher.dispatch(partitions)

    assert summary == "Finished processing messages: 5"
    assert sorted(c.build_id for c in harness.eks.started) == [0, 1]
    assert sorted(c.build_id for c in harness.sls.stopped) == [10, 11, 12]


def test_partition_completes_before_next_starts(harness):
    seen_before_second = []
    original = harness.processor.process

    def tracking_process(record, counter, context=None):
        if record.partition_key == "builds-1":
            seen_before_second.append(len(harness.eks.started))
        return original(record, counter, context)

    harness.processor.process = tracking_process
    partitions = {
        "builds-0": [_record(_message("start", "eks", build_id=i), "builds-0", i) for i in range(4)],
        "builds-1": [_record(_message("start", "eks", build_id=9), "builds-1", 0)],
    }
    harness.dispatcher.dispatch(partitions)

    assert seen_before_second == [4]


def test_region_comes_from_build_region_then_region(harness):
    harness.dispatcher.dispatch(
        {
            "builds-0": [
                _record(_message("start", "eks", region="us-east-1", buildRegion="eu-west-1"), index=0),
                _record(_message("start", "eks", region="us-east-1"), index=1),
            ]
        }
    )
    assert sorted(harness.regions) == ["eu-west-1", "us-east-1"]


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


def test_dispatch_error_is_logged_and_not_reported(tmp_path, caplog):
    h = _Harness(str(tmp_path), eks=FakeExecutor("eks", start_error=ExecutorError("CreatePod failed")))
    summary, _ = h.dispatcher.dispatch({"builds-0": [_record(_message("start", "eks"))]})

    assert summary == "Finished processing messages: 1"
    assert "CreatePod failed" in caplog.text
    h.api_factory.assert_not_called()


def test_empty_hostname_is_not_reported(tmp_path):
    h = _Harness(str(tmp_path), eks=FakeExecutor("eks", hostname=""))
    h.dispatcher.dispatch({"builds-0": [_record(_message("start", "eks"))]})
    h.api.update_build.assert_not_called()


def test_reporting_failure_does_not_fail_start(harness):
    harness.api.update_build.side_effect = ScrewdriverAPIError(500, "Internal Server Error", "boom")
    counter = CompletionCounter(1)

    outcome = harness.processor.process(_record(_message("start", "eks")), counter)

    assert outcome == Outcome.STARTED
    assert counter.remaining == 0


def test_dropped_connection_while_reporting_keeps_start(tmp_path, monkeypatch):
    h = _Harness(str(tmp_path))
    h.processor = MessageProcessor(
        lambda region: h.registry,
        lambda url, token: ScrewdriverAPI(url, token, max_retries=2, retry_wait_min=0, retry_wait_max=0),
        fallback_region="us-west-2",
        stacktrace_dir=str(tmp_path),
    )
    urlopen = MagicMock(side_effect=http.client.RemoteDisconnected("Remote end closed connection"))
    monkeypatch.setattr(screwdriver_api.urllib.request, "urlopen", urlopen)
    monkeypatch.setattr(screwdriver_api.time, "sleep", lambda _seconds: None)
    counter = CompletionCounter(1)

    outcome = h.processor.process(_record(_message("start", "eks")), counter)

    assert outcome == Outcome.STARTED
    assert urlopen.call_count == 3
    assert list(tmp_path.iterdir()) == []


def test_reset_connection_is_swallowed_by_reporting():
    api = MagicMock()
    api.update_build.side_effect = ConnectionResetError("reset by peer")
    assert report_build_stats(api, "node-1", 7) is False


@pytest.mark.parametrize("field", ["buildRegion", "region"])
def test_mistyped_region_is_skipped_without_stacktrace(tmp_path, field):
    h = _Harness(str(tmp_path))
    counter = CompletionCounter(1)

    outcome = h.processor.process(_record(_message("start", "eks", **{field: True})), counter)

    assert outcome == Outcome.SKIPPED
    assert counter.remaining == 0
    assert h.regions == []
    assert h.eks.started == []
    assert list(tmp_path.iterdir()) == []


def test_unknown_job_is_skipped(harness):
    counter = CompletionCounter(1)
    outcome = harness.processor.process(_record(_message("restart", "eks")), counter)

    assert outcome == Outcome.SKIPPED
    assert harness.eks.started == [] and harness.eks.stopped == []


def test_executor_config_rejection_is_skipped(tmp_path):
    h = _Harness(str(tmp_path), sls=FakeExecutor("sls", stop_error=BuildConfigError("buildConfig.jobName is required")))
    counter = CompletionCounter(1)

    assert h.processor.process(_record(_message("stop", "sls")), counter) == Outcome.SKIPPED
    assert list(tmp_path.iterdir()) == []


def test_executor_failure_is_failed(tmp_path):
    h = _Harness(str(tmp_path), sls=FakeExecutor("sls", stop_error=ExecutorError("DeleteProject denied")))
    counter = CompletionCounter(1)

    assert h.processor.process(_record(_message("stop", "sls")), counter) == Outcome.FAILED


def test_undecodable_record_is_skipped(harness):
    counter = CompletionCounter(1)
    outcome = harness.processor.process(_record("not base64 at all"), counter)

    assert outcome == Outcome.SKIPPED
    assert counter.remaining == 0


def test_missing_job_is_skipped(harness):
    counter = CompletionCounter(1)
    outcome = harness.processor.process(_record(_encode({"executorType": "eks", "buildConfig": {}})), counter)

    assert outcome == Outcome.SKIPPED
    assert harness.regions == []


def test_crash_is_isolated_and_writes_stacktrace(tmp_path):
    crashing = FakeExecutor("eks", start_error=KeyError("spec"))
    h = _Harness(str(tmp_path), eks=crashing)
    records = [
        _record(_message("start", "eks", build_id=1), index=0),
        _record(_message("stop", "sls", build_id=2), index=1),
        _record(_message("stop", "sls", build_id=3), index=2),
    ]

    summary, err = h.dispatcher.dispatch({"builds-0": records})

    assert summary == "Finished processing messages: 3"
    assert err is None
    assert sorted(c.build_id for c in h.sls.stopped) == [2, 3]
    artifacts = [p for p in tmp_path.iterdir() if p.name.startswith("stacktrace-")]
    assert len(artifacts) == 1
    assert "KeyError" in artifacts[0].read_text()
    assert stat.S_IMODE(artifacts[0].stat().st_mode) == 0o600


def test_unwritable_stacktrace_dir_is_only_logged(tmp_path, caplog):
    h = _Harness(str(tmp_path / "missing"), eks=FakeExecutor("eks", start_error=TypeError("bad")))
    counter = CompletionCounter(1)

    outcome = h.processor.process(_record(_message("start", "eks")), counter)

    assert outcome == Outcome.CRASHED
    assert counter.remaining == 0
    assert "Failed to write stacktrace" in caplog.text


def test_escaped_worker_error_goes_to_stderr(harness, monkeypatch):
    def broken_process(record, counter, context=None):
        counter.done()
        raise RuntimeError("recovery failed")

    harness.processor.process = broken_process
    stderr = io.StringIO()
    monkeypatch.setattr(sys, "stderr", stderr)

    summary, err = harness.dispatcher.dispatch({"builds-0": [_record(_message("start", "eks"))]})

    assert summary == "Finished processing messages: 1"
    assert err is None
    assert "recovery failed" in stderr.getvalue()


def test_partition_loop_failure_goes_to_stderr_and_counts_fanned_out_records(harness, monkeypatch):
    stderr = io.StringIO()
    monkeypatch.setattr(sys, "stderr", stderr)
    monkeypatch.setattr(dispatcher, "CompletionCounter", MagicMock(side_effect=RuntimeError("no counter")))

    summary, err = harness.dispatcher.dispatch({"builds-0": [_record(_message("start", "eks"))]})

    assert summary == "Finished processing messages: 1"
    assert err is None
    assert "no counter" in stderr.getvalue()


def test_batch_emits_outcome_summary(harness, caplog):
    with caplog.at_level("INFO"):
        harness.dispatcher.dispatch(
            {
                "builds-0": [
                    _record(_message("start", "eks"), index=0),
                    _record(_message("start", "unknown"), index=1),
                ]
            }
        )
    lines = [r.getMessage() for r in caplog.records if r.getMessage().startswith("[OBSERVABILITY]")]
    assert len(lines) == 1
    payload = json.loads(lines[0].split(" ", 1)[1])
    assert payload["records"] == 2
    assert payload["outcomes"] == {"started": 1, "skipped": 1}


def test_same_build_start_and_stop_are_not_serialized(harness):
    # Both workers run concurrently; the stop may land before the start.
    barrier = threading.Barrier(2, timeout=5)
    order = []
    original_start, original_stop = harness.eks.start, harness.eks.stop

    def start(config):
        barrier.wait()
        order.append("start")
        return original_start(config)

    def stop(config):
        barrier.wait()
        order.append("stop")
        return original_stop(config)

    harness.eks.start, harness.eks.stop = start, stop
    summary, _ = harness.dispatcher.dispatch(
        {"builds-0": [_record(_message("start", "eks"), index=0), _record(_message("stop", "eks"), index=1)]}
    )

    assert summary == "Finished processing messages: 2"
    assert sorted(order) == ["start", "stop"]


def test_context_remaining_time_is_logged(harness, caplog):
    context = MagicMock()
    context.get_remaining_time_in_millis.return_value = 12345
    with caplog.at_level("INFO"):
        harness.dispatcher.dispatch({"builds-0": [_record(_message("stop", "sls"))]}, context)
    assert "12345ms remaining" in caplog.text


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


class CompletionCounterTests(unittest.TestCase):
    def test_wait_returns_when_all_done(self) -> None:
        counter = CompletionCounter(3)
        for _ in range(3):
            threading.Thread(target=counter.done).start()
        self.assertTrue(counter.wait(timeout=5))
        self.assertEqual(counter.remaining, 0)

    def test_wait_times_out_while_outstanding(self) -> None:
        counter = CompletionCounter(1)
        self.assertFalse(counter.wait(timeout=0.01))

    def test_over_signal_raises(self) -> None:
        counter = CompletionCounter(1)
        counter.done()
        with self.assertRaises(ValueError):
            counter.done()

    def test_zero_count_is_already_done(self) -> None:
        self.assertTrue(CompletionCounter(0).wait(timeout=0))


class ReportBuildStatsTests(unittest.TestCase):
    def test_empty_hostname_is_noop(self) -> None:
        api = MagicMock()
        self.assertFalse(report_build_stats(api, "", 1))
        api.update_build.assert_not_called()

    def test_api_error_is_swallowed(self) -> None:
        api = MagicMock()
        api.update_build.side_effect = ScrewdriverAPIError(503, "Service Unavailable", "down")
        self.assertFalse(report_build_stats(api, "node-1", 7))

    def test_success(self) -> None:
        api = MagicMock()
        self.assertTrue(report_build_stats(api, "node-1", 7))
        api.update_build.assert_called_once()

    @patch.object(dispatcher.os, "open", side_effect=PermissionError("denied"))
    def test_write_stacktrace_failure_returns_none(self, _mock_open) -> None:
        self.assertIsNone(dispatcher.write_stacktrace("/tmp", "trace"))


if __name__ == "__main__":
    unittest.main()
