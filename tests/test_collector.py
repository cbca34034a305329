from __future__ import annotations

import asyncio
import io

import pytest

from vm_coverage import (
    CollectRequest,
    ConnectTimeoutError,
    PartialAggregationError,
    PauseTimeoutError,
    UserError,
    collect,
    collect_sync,
    load_config_dicts,
)
from vm_coverage.core.errors import VmServiceError
from vm_coverage.service.fake import FakeConnector, FakeIsolate, FakeVmService, make_range, make_script

_URI = "http://127.0.0.1:8181/abc=/"
_MAIN = make_script("package:app/main.dart", {1: 0, 2: 4, 3: 6})
_LIB = make_script("package:app/src/lib.dart", {1: 2})


def _request(**kwargs) -> CollectRequest:  # type: ignore[no-untyped-def]
    kwargs.setdefault("retry_interval_sec", 0.01)
    return CollectRequest(service_uri=_URI, **kwargs)


def test_collect_produces_code_coverage_document_and_closes_once() -> None:
    service = FakeVmService(
        [FakeIsolate("isolates/1", "main", ranges=[make_range(_MAIN, hits=[1, 2], misses=[3]), make_range(_LIB, hits=[1])])],
        [_MAIN, _LIB],
    )
    out = io.StringIO()

    report = asyncio.run(collect(_request(output=out), connector=FakeConnector(service)))

    assert report.complete is True
    assert report.error is None
    doc = report.to_json()
    assert doc["type"] == "CodeCoverage"
    by_source = {e["source"]: e for e in doc["coverage"]}
    assert by_source["package:app/main.dart"]["hits"] == [1, 1, 5, 1, 7, 0]
    assert by_source["package:app/src/lib.dart"]["hits"] == [3, 1]
    assert service.close_count == 1
    assert out.getvalue().startswith("Waiting for tests to complete...\n")
    assert "Collecting coverage for main (1/1)..." in out.getvalue()


def test_collect_fails_with_connect_timeout_when_unreachable() -> None:
    connector = FakeConnector(refuse_attempts=None)

    with pytest.raises(ConnectTimeoutError):
        asyncio.run(collect(_request(timeout_sec=0.1), connector=connector))

    assert connector.attempts >= 1


def test_collect_waits_for_pause_before_collecting() -> None:
    main = FakeIsolate("isolates/1", "main", paused=False, pause_after_loads=2, ranges=[make_range(_MAIN, hits=[1])])
    service = FakeVmService([main], [_MAIN])
    out = io.StringIO()

    report = asyncio.run(collect(_request(wait_paused=True, timeout_sec=5, output=out), connector=FakeConnector(service)))

    assert report.coverage[0]["hits"] == [1, 1]
    text = out.getvalue()
    assert text.index("Tests complete.") < text.index("Collecting coverage for main")
    # 采集完成后 isolate 被 resume
    assert service.resumed == ["isolates/1"]


def test_collect_pause_timeout_is_fatal_and_still_cleans_up() -> None:
    service = FakeVmService([FakeIsolate("isolates/1", "main", paused=False)], [_MAIN])

    with pytest.raises(PauseTimeoutError):
        asyncio.run(collect(_request(wait_paused=True, resume=True, timeout_sec=0.1), connector=FakeConnector(service)))

    assert service.close_count == 1
    assert ("getSourceReport", "isolates/1") not in service.calls


def test_aggregation_failure_is_narrated_and_cleanup_resumes_everything() -> None:
    ok = FakeIsolate("isolates/1", "main", ranges=[make_range(_MAIN, hits=[1])])
    broken = FakeIsolate("isolates/2", "worker", report_error=VmServiceError("isolate is gone", rpc_code=105))
    pending = FakeIsolate("isolates/3", "late", ranges=[make_range(_LIB, hits=[1])])
    service = FakeVmService([ok, broken, pending], [_MAIN, _LIB])
    out = io.StringIO()

    report = asyncio.run(collect(_request(resume=True, output=out), connector=FakeConnector(service)))

    assert report.complete is False
    assert "isolate is gone" in (report.error or "")
    assert [e["source"] for e in report.coverage] == ["package:app/main.dart"]
    assert "isolate is gone" in out.getvalue()
    assert "Traceback" in out.getvalue()
    assert not any(i.paused for i in service.isolates)
    assert sorted(service.resumed) == ["isolates/1", "isolates/2", "isolates/3"]
    assert service.close_count == 1


def test_aggregation_failure_can_be_raised_with_partial_report() -> None:
    ok = FakeIsolate("isolates/1", "main", ranges=[make_range(_MAIN, hits=[1, 1])])
    broken = FakeIsolate("isolates/2", "worker", report_error=RuntimeError("socket reset"))
    service = FakeVmService([ok, broken], [_MAIN])

    with pytest.raises(PartialAggregationError) as ei:
        asyncio.run(collect(_request(aggregation_errors="raise"), connector=FakeConnector(service)))

    err = ei.value
    assert isinstance(err.__cause__, RuntimeError)
    assert err.report.complete is False
    assert err.report.to_json()["coverage"][0]["hits"] == [1, 2]
    assert err.details["isolates_merged"] == 1
    assert service.close_count == 1


def test_cleanup_failures_do_not_mask_fatal_error() -> None:
    service = FakeVmService(
        [FakeIsolate("isolates/1", "main", paused=False)],
        resume_error=VmServiceError("resume failed"),
        close_error=RuntimeError("close failed"),
    )
    out = io.StringIO()

    with pytest.raises(PauseTimeoutError):
        asyncio.run(
            collect(
                _request(wait_paused=True, resume=True, timeout_sec=0.05, output=out),
                connector=FakeConnector(service),
            )
        )

    assert service.close_count == 1
    assert "Failed to close VM service connection" in out.getvalue()


def test_request_from_config_and_sync_entry() -> None:
    cfg = load_config_dicts([{"service_uri": _URI, "resume": True, "retry_interval_ms": 5, "timeout_sec": 2}])
    request = CollectRequest.from_config(cfg)
    assert request.retry_interval_sec == pytest.approx(0.005)
    assert request.resume is True
    assert request.timeout_sec == 2

    service = FakeVmService([FakeIsolate("isolates/1", "main", ranges=[make_range(_MAIN, misses=[1])])], [_MAIN])
    report = collect_sync(request, connector=FakeConnector(service))
    assert report.coverage[0]["hits"] == [1, 0]
    assert service.close_count == 1


def test_request_from_config_requires_service_uri() -> None:
    with pytest.raises(UserError) as ei:
        CollectRequest.from_config(load_config_dicts([]))
    assert ei.value.code == "MISSING_SERVICE_URI"
