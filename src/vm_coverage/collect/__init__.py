"""
覆盖率采集流程（连接、pause 同步、聚合、编码、清理）。
"""

from __future__ import annotations

from vm_coverage.collect.collector import CollectRequest, CoverageReport, collect, collect_sync
from vm_coverage.collect.connection import connect_to_service, to_websocket_uri
from vm_coverage.collect.encoder import to_coverage_document, to_script_coverage_json
from vm_coverage.collect.hitmap import CoverageAccumulator, merge_hit_map, record_hit, record_miss
from vm_coverage.collect.isolates import resume_isolates, wait_isolates_paused

__all__ = [
    "CollectRequest",
    "CoverageAccumulator",
    "CoverageReport",
    "collect",
    "collect_sync",
    "connect_to_service",
    "merge_hit_map",
    "record_hit",
    "record_miss",
    "resume_isolates",
    "to_coverage_document",
    "to_script_coverage_json",
    "to_websocket_uri",
    "wait_isolates_paused",
]
