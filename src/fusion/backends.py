"""
합성 백엔드 모듈입니다.

역할:
- ComputeDevice: 지연 생성되는 프로세스 공용 스레드 풀 (명시적 shutdown)
- ParallelBackend: numpy 행 밴드를 작업 항목으로 ComputeDevice에 분배
- ScalarBackend: 순수 Python 픽셀 루프 (항상 사용 가능한 대체 경로)

두 백엔드는 같은 MergeRequest에 대해 채널당 1 이내로 같은 결과를 냅니다.

사용 예시:
    >>> device = ComputeDevice(workers=4)
    >>> backend = ParallelBackend(device, band_rows=64)
    >>> pixels = await backend.merge(MergeRequest(MergeKind.AVERAGE, frames))
    >>> device.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Sequence

import numpy as np

from src.fusion import BackendUnavailableError, FusionBackendError, MergeKind, MergeRequest
from src.fusion import merge

# 모듈 로거
logger = logging.getLogger(__name__)

# 자동 작업자 수 상한
_MAX_AUTO_WORKERS = 8


class ComputeDevice:
    """
    병렬 합성용 스레드 풀 래퍼입니다.

    첫 사용 시 풀을 생성하며, 프로세스 종료 시 shutdown()으로 정리합니다.
    shutdown 이후에는 BackendUnavailableError를 발생시킵니다.
    """

    def __init__(self, workers: int = 0) -> None:
        self._workers = workers if workers > 0 else min(_MAX_AUTO_WORKERS, os.cpu_count() or 1)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def workers(self) -> int:
        return self._workers

    @property
    def is_started(self) -> bool:
        return self._executor is not None

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._closed:
                raise BackendUnavailableError("ComputeDevice가 이미 종료되었습니다")
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._workers, thread_name_prefix="fusion"
                )
                logger.info(f"ComputeDevice 생성: workers={self._workers}")
            return self._executor

    async def run_bands(
        self,
        kernel: Callable[[int, int], np.ndarray],
        height: int,
        band_rows: int,
    ) -> np.ndarray:
        """
        [0, height) 행을 band_rows 단위로 나누어 kernel(start, end)를 병렬 실행하고
        결과를 행 순서대로 이어 붙입니다.
        """
        executor = self._get_executor()
        futures = [
            asyncio.wrap_future(executor.submit(kernel, start, min(start + band_rows, height)))
            for start in range(0, height, band_rows)
        ]
        bands = await asyncio.gather(*futures)
        return np.concatenate(bands, axis=0)

    def shutdown(self, wait: bool = True) -> None:
        """스레드 풀을 종료합니다. 여러 번 호출해도 안전합니다."""
        with self._lock:
            self._closed = True
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
            logger.info("ComputeDevice 종료")


class FusionBackend(ABC):
    """합성 백엔드 공통 인터페이스"""

    name: str = "abstract"

    def available(self) -> Optional[str]:
        """사용 불가 사유를 반환합니다. 사용 가능하면 None."""
        return None

    @abstractmethod
    async def merge(self, request: MergeRequest) -> np.ndarray:
        """요청을 합성하여 RGBA uint8 배열을 반환합니다."""


class ParallelBackend(FusionBackend):
    """
    numpy 행 밴드 단위 병렬 백엔드입니다.

    톤 매핑 합성은 두 단계로 분배됩니다.
        1) 원본 행 밴드별 선형 누적
        2) 회전된 누적 뷰의 출력 행 밴드별 톤 매핑
    """

    name = "parallel"

    def __init__(self, device: ComputeDevice, band_rows: int = 64, enabled: bool = True) -> None:
        self._device = device
        self._band_rows = max(1, band_rows)
        self._enabled = enabled

    def available(self) -> Optional[str]:
        if not self._enabled:
            return "disabled by config"
        if self._device.is_closed:
            return "compute device closed"
        return None

    async def merge(self, request: MergeRequest) -> np.ndarray:
        reason = self.available()
        if reason is not None:
            raise BackendUnavailableError(reason)

        stack = [frame.pixels for frame in request.frames]
        height = stack[0].shape[0]

        if request.kind is MergeKind.AVERAGE:
            return await self._device.run_bands(
                _band_kernel(merge.average_rows, stack), height, self._band_rows
            )
        if request.kind is MergeKind.WEIGHTED:
            return await self._device.run_bands(
                _band_kernel(merge.weighted_rows, stack), height, self._band_rows
            )
        if request.kind is MergeKind.TONE_MAP:
            return await self._tone_map(stack, height, request.rotation)
        raise FusionBackendError(f"알 수 없는 합성 종류: {request.kind}")

    async def _tone_map(self, stack: Sequence[np.ndarray], height: int, rotation: int) -> np.ndarray:
        linear_sum = await self._device.run_bands(
            _band_kernel(merge.accumulate_linear_rows, stack), height, self._band_rows
        )
        rotated = np.rot90(linear_sum, k=merge.quarter_turns(rotation))
        count = len(stack)

        def kernel(start: int, end: int) -> np.ndarray:
            return merge.tone_map_rows(rotated[start:end], count)

        return await self._device.run_bands(kernel, rotated.shape[0], self._band_rows)


def _band_kernel(
    rows_fn: Callable[[Sequence[np.ndarray]], np.ndarray],
    stack: Sequence[np.ndarray],
) -> Callable[[int, int], np.ndarray]:
    """프레임 스택의 같은 행 범위를 잘라 rows_fn에 넘기는 작업 함수를 만듭니다."""
    def kernel(start: int, end: int) -> np.ndarray:
        return rows_fn([pixels[start:end] for pixels in stack])
    return kernel


class ScalarBackend(FusionBackend):
    """순수 Python 픽셀 루프 백엔드입니다. 이벤트 루프를 막지 않도록 스레드에서 실행합니다."""

    name = "scalar"

    async def merge(self, request: MergeRequest) -> np.ndarray:
        if request.kind is MergeKind.AVERAGE:
            return await asyncio.to_thread(merge.average_scalar, request.frames)
        if request.kind is MergeKind.WEIGHTED:
            return await asyncio.to_thread(merge.weighted_scalar, request.frames)
        if request.kind is MergeKind.TONE_MAP:
            return await asyncio.to_thread(merge.tone_map_scalar, request.frames, request.rotation)
        raise FusionBackendError(f"알 수 없는 합성 종류: {request.kind}")
