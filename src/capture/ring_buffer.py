"""
프레임 링 버퍼 모듈입니다.

역할:
- 라이브 프레임 소스를 디스플레이 틱 주기로 샘플링하여 최근 프레임 보관
- 용량(기본 32장) 초과 시 가장 오래된 프레임부터 제거 (FIFO)
- 합성 엔진에 넘길 최근 N장 스냅샷(소유권 있는 복사 목록) 제공

사용 예시:
    >>> buffer = FrameRingBuffer(config)
    >>> await buffer.start(source)
    >>> frames = buffer.snapshot(8)
    >>> await buffer.stop()
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Optional

import numpy as np

from src.capture import Frame, make_frame
from src.capture.frame_source import FrameSource, has_valid_dimensions
from src.config.schema import AppConfig

# 모듈 로거
logger = logging.getLogger(__name__)


class FrameRingBuffer:
    """
    최근 프레임을 고정 용량으로 보관하는 링 버퍼입니다.

    수집 흐름:
        틱 대기 → 소스 크기 확인 → 스크래치 버퍼에 draw_into → 복사본 append

    길이는 항상 capacity 이하이며, 넘치면 가장 오래된 프레임이 먼저 빠집니다.
    """

    def __init__(self, config: AppConfig) -> None:
        """
        FrameRingBuffer를 초기화합니다.

        파라미터:
            config (AppConfig): 전체 애플리케이션 설정 객체
        """
        self._capacity = config.capture.ring_buffer_capacity
        self._interval_s = config.capture.tick_interval_ms / 1000.0

        self._frames: deque[Frame] = deque(maxlen=self._capacity)

        # 재사용 스크래치 버퍼 (소스 크기가 바뀌면 다시 할당)
        self._scratch: Optional[np.ndarray] = None

        # 실행 상태 플래그
        self._running: bool = False
        self._task: Optional[asyncio.Task] = None

        # 누적 통계
        self._appended_total: int = 0
        self._dropped_total: int = 0
        self._tick_errors: int = 0

    # =========================================================================
    # 공개 인터페이스
    # =========================================================================

    @property
    def capacity(self) -> int:
        """최대 보관 프레임 수"""
        return self._capacity

    @property
    def is_running(self) -> bool:
        """수집 태스크 실행 여부"""
        return self._running

    def __len__(self) -> int:
        return len(self._frames)

    async def start(self, source: FrameSource) -> None:
        """
        프레임 수집 태스크를 시작합니다.

        이미 실행 중이면 경고 로그를 출력하고 반환합니다.
        """
        if self._running:
            logger.warning("FrameRingBuffer가 이미 실행 중입니다.")
            return

        self._running = True
        self._task = asyncio.create_task(self._tick_loop(source), name="frame_ring_buffer")
        logger.info(
            f"프레임 링 버퍼 시작: capacity={self._capacity}, "
            f"tick={self._interval_s * 1000:.0f}ms"
        )

    async def stop(self) -> None:
        """수집 태스크를 취소하고 버퍼를 비웁니다."""
        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self.clear()
        logger.info(
            f"프레임 링 버퍼 정지: appended={self._appended_total}, "
            f"dropped={self._dropped_total}, tick_errors={self._tick_errors}"
        )

    def append(self, frame: Frame) -> None:
        """프레임을 추가합니다. 용량을 넘으면 가장 오래된 프레임이 제거됩니다."""
        if len(self._frames) == self._capacity:
            self._dropped_total += 1
        self._frames.append(frame)
        self._appended_total += 1

    def snapshot(self, count: Optional[int] = None) -> list[Frame]:
        """
        최근 count장의 프레임 목록을 오래된 것부터 반환합니다.

        반환 목록은 새 list이므로 이후 버퍼 변경의 영향을 받지 않습니다.
        count가 None이면 보관 중인 전체를 반환합니다.
        """
        frames = list(self._frames)
        if count is None:
            return frames
        if count <= 0:
            return []
        return frames[-count:]

    def clear(self) -> None:
        """보관 중인 프레임을 모두 제거합니다."""
        self._frames.clear()

    def get_stats(self) -> dict:
        """버퍼 상태 통계를 반환합니다."""
        return {
            "length": len(self._frames),
            "capacity": self._capacity,
            "appended_total": self._appended_total,
            "dropped_total": self._dropped_total,
            "tick_errors": self._tick_errors,
            "running": self._running,
        }

    # =========================================================================
    # 내부 구현
    # =========================================================================

    async def _tick_loop(self, source: FrameSource) -> None:
        """틱마다 라이브 프레임을 한 장씩 버퍼에 추가하는 루프입니다."""
        while self._running:
            await asyncio.sleep(self._interval_s)
            if not self._running:
                break
            try:
                self._capture_tick(source)
            except Exception as exc:
                self._tick_errors += 1
                logger.error(f"프레임 수집 틱 오류: {exc}", exc_info=True)

    def _capture_tick(self, source: FrameSource) -> None:
        """한 틱분 프레임을 스크래치 버퍼에 그린 뒤 복사본을 추가합니다."""
        if not has_valid_dimensions(source):
            return

        shape = (source.height, source.width, 4)
        if self._scratch is None or self._scratch.shape != shape:
            self._scratch = np.zeros(shape, dtype=np.uint8)

        source.draw_into(self._scratch)
        self.append(make_frame(self._scratch, copy=True))
