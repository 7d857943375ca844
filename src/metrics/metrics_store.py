"""
공유 메트릭 저장소 모듈입니다.

역할:
- 파이프라인 구성 요소가 공유하는 thread-safe 메트릭 저장소
- 링 버퍼 상태, 장치 협상 결과, 캡처 결과(provenance / 백엔드 대체 횟수)를 중앙 관리
- 캡처 단계별 소요 시간을 기록하고 numpy로 P95/P99 통계 계산

사용 예시:
    >>> store = MetricsStore()
    >>> store.update_buffer_stats(length=12, capacity=32, dropped_total=0)
    >>> store.record_stage_latency("fusion", 41.5)
    >>> stats = store.get_latency_stats("fusion")
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Optional

import numpy as np

from src.metrics import LatencyStats

# 단계별 보관 샘플 수
_MAX_LATENCY_SAMPLES = 256


@dataclass
class BufferStats:
    """프레임 링 버퍼 통계입니다."""
    length: int = 0
    capacity: int = 0
    appended_total: int = 0
    dropped_total: int = 0
    updated_at_ns: int = 0


@dataclass
class NegotiationStatus:
    """장치 협상 상태입니다."""
    device_id: Optional[str] = None
    width: int = 0
    height: int = 0
    frame_rate: Optional[float] = None
    status: str = "idle"            # idle | upgraded | skipped | exhausted
    strategy: Optional[str] = None
    attempts: int = 0
    aspect_abandoned: bool = False
    updated_at_ns: int = 0


@dataclass
class CaptureStats:
    """캡처 결과 누적 통계입니다."""
    total_captures: int = 0
    failed_captures: int = 0
    backend_fallbacks: int = 0
    captures_by_mode: dict[str, int] = field(default_factory=dict)
    last_algorithm: Optional[str] = None
    last_backend: Optional[str] = None
    last_frame_count: int = 0
    updated_at_ns: int = 0


class MetricsStore:
    """
    파이프라인 전체 메트릭을 중앙에서 관리하는 thread-safe 저장소입니다.

    모든 공개 메서드는 RLock으로 보호되며, 조회 메서드는 복사본을 반환합니다.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._buffer_stats = BufferStats()
        self._negotiation = NegotiationStatus()
        self._capture_stats = CaptureStats()
        # 단계 이름 → 최근 소요 시간 (ms)
        self._latencies: dict[str, deque[float]] = {}

    # =========================================================================
    # 링 버퍼
    # =========================================================================

    def update_buffer_stats(
        self,
        length: int,
        capacity: int,
        dropped_total: int,
        appended_total: int = 0,
    ) -> None:
        """링 버퍼 통계를 업데이트합니다."""
        with self._lock:
            self._buffer_stats = BufferStats(
                length=length,
                capacity=capacity,
                appended_total=appended_total,
                dropped_total=dropped_total,
                updated_at_ns=time.time_ns(),
            )

    def get_buffer_stats(self) -> BufferStats:
        """현재 링 버퍼 통계를 반환합니다."""
        with self._lock:
            return replace(self._buffer_stats)

    # =========================================================================
    # 장치 협상
    # =========================================================================

    def update_negotiation(
        self,
        status: str,
        device_id: Optional[str] = None,
        width: int = 0,
        height: int = 0,
        frame_rate: Optional[float] = None,
        strategy: Optional[str] = None,
        attempts: int = 0,
        aspect_abandoned: bool = False,
    ) -> None:
        """장치 협상 결과를 업데이트합니다."""
        with self._lock:
            self._negotiation = NegotiationStatus(
                device_id=device_id,
                width=width,
                height=height,
                frame_rate=frame_rate,
                status=status,
                strategy=strategy,
                attempts=attempts,
                aspect_abandoned=aspect_abandoned,
                updated_at_ns=time.time_ns(),
            )

    def get_negotiation(self) -> NegotiationStatus:
        """현재 장치 협상 상태를 반환합니다."""
        with self._lock:
            return replace(self._negotiation)

    # =========================================================================
    # 캡처 결과
    # =========================================================================

    def record_capture(
        self,
        mode: str,
        algorithm: str,
        frame_count: int,
        backend: Optional[str] = None,
        fell_back: bool = False,
    ) -> None:
        """성공한 캡처 한 건을 기록합니다."""
        with self._lock:
            s = self._capture_stats
            s.total_captures += 1
            s.captures_by_mode[mode] = s.captures_by_mode.get(mode, 0) + 1
            if fell_back:
                s.backend_fallbacks += 1
            s.last_algorithm = algorithm
            s.last_backend = backend
            s.last_frame_count = frame_count
            s.updated_at_ns = time.time_ns()

    def record_capture_failure(self) -> None:
        """실패한 캡처 한 건을 기록합니다."""
        with self._lock:
            self._capture_stats.failed_captures += 1
            self._capture_stats.updated_at_ns = time.time_ns()

    def get_capture_stats(self) -> CaptureStats:
        """캡처 누적 통계를 반환합니다."""
        with self._lock:
            s = self._capture_stats
            return replace(s, captures_by_mode=dict(s.captures_by_mode))

    # =========================================================================
    # 단계별 소요 시간
    # =========================================================================

    def record_stage_latency(self, stage: str, elapsed_ms: float) -> None:
        """캡처 단계 하나의 소요 시간을 기록합니다."""
        with self._lock:
            samples = self._latencies.setdefault(stage, deque(maxlen=_MAX_LATENCY_SAMPLES))
            samples.append(float(elapsed_ms))

    def get_latency_stats(self, stage: str) -> Optional[LatencyStats]:
        """단계의 소요 시간 통계를 반환합니다. 기록이 없으면 None."""
        with self._lock:
            samples = self._latencies.get(stage)
            if not samples:
                return None
            values = np.asarray(samples, dtype=np.float64)

        return LatencyStats(
            stage=stage,
            count=int(values.size),
            mean_ms=float(values.mean()),
            min_ms=float(values.min()),
            max_ms=float(values.max()),
            p95_ms=float(np.percentile(values, 95)),
            p99_ms=float(np.percentile(values, 99)),
        )

    def get_all_latency_stats(self) -> dict[str, LatencyStats]:
        """기록된 모든 단계의 통계를 반환합니다."""
        with self._lock:
            stages = list(self._latencies)
        result: dict[str, LatencyStats] = {}
        for stage in stages:
            stats = self.get_latency_stats(stage)
            if stats is not None:
                result[stage] = stats
        return result
