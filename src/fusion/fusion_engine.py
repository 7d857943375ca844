"""
프레임 합성 엔진 모듈입니다.

역할:
- 평균 / 가중 장노출 / 누적+톤 매핑 합성을 순서가 정해진 백엔드 목록으로 실행
- 병렬 백엔드 실패(사용 불가 또는 오류)는 BackendFailure로 기록하고 같은 스냅샷으로 다음 백엔드 재시도
- 마지막 백엔드(스칼라)까지 실패하면 FusionError 발생
- 합성 전 입력 프레임 목록을 복사하여 소유권 있는 스냅샷으로 사용

사용 예시:
    >>> engine = FusionEngine(config, device)
    >>> result = await engine.average_merge(frames)
    >>> print(result.algorithm, result.backend)
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Sequence

import numpy as np

from src.capture import Frame
from src.config.schema import AppConfig
from src.fusion import (
    BackendFailure,
    BackendUnavailableError,
    FusionError,
    FusionResult,
    MergeKind,
    MergeRequest,
)
from src.fusion.backends import ComputeDevice, FusionBackend, ParallelBackend, ScalarBackend
from src.fusion.merge import check_frames, quarter_turns, rotate_pixels

# 모듈 로거
logger = logging.getLogger(__name__)


class FusionEngine:
    """
    합성 요청을 백엔드 전략 목록에 순서대로 시도하는 엔진입니다.

    기본 전략 목록: [ParallelBackend, ScalarBackend]
    """

    def __init__(
        self,
        config: AppConfig,
        device: ComputeDevice,
        backends: Optional[Sequence[FusionBackend]] = None,
    ) -> None:
        """
        FusionEngine을 초기화합니다.

        파라미터:
            config (AppConfig): 전체 애플리케이션 설정 객체
            device (ComputeDevice): 프로세스 공용 계산 장치 (공유 참조)
            backends: 전략 목록을 직접 지정할 때 사용
        """
        self._max_frames = config.fusion.max_frames
        if backends is None:
            backends = [
                ParallelBackend(
                    device,
                    band_rows=config.fusion.band_rows,
                    enabled=config.fusion.parallel_enabled,
                ),
                ScalarBackend(),
            ]
        self._backends = list(backends)

    @property
    def strategies(self) -> list[str]:
        """시도 순서대로의 백엔드 이름"""
        return [backend.name for backend in self._backends]

    @property
    def max_frames(self) -> int:
        return self._max_frames

    # =========================================================================
    # 합성 API
    # =========================================================================

    async def average_merge(self, frames: Sequence[Frame]) -> FusionResult:
        """프레임 평균 합성 (alpha 포함)"""
        return await self.merge(MergeKind.AVERAGE, frames)

    async def weighted_merge(self, frames: Sequence[Frame]) -> FusionResult:
        """가중 장노출 합성. 오래된 프레임일수록 가중치가 큽니다 (1/(i+1))."""
        return await self.merge(MergeKind.WEIGHTED, frames)

    async def tone_map_merge(self, frames: Sequence[Frame], rotation: int = 0) -> FusionResult:
        """
        선형 누적 + Reinhard 톤 매핑 합성입니다.

        최근 max_frames장만 누적하며, rotation은 톤 매핑 단계에서 적용됩니다.
        """
        return await self.merge(MergeKind.TONE_MAP, frames, rotation)

    async def merge(
        self,
        kind: MergeKind,
        frames: Sequence[Frame],
        rotation: int = 0,
    ) -> FusionResult:
        """
        합성을 실행합니다.

        예외:
            FusionError: 입력이 비었거나 크기 불일치, 지원하지 않는 회전, 모든 백엔드 실패
        """
        snapshot = list(frames)
        check_frames(snapshot)

        if kind is MergeKind.TONE_MAP:
            snapshot = snapshot[-self._max_frames:]
            try:
                quarter_turns(rotation)
            except ValueError as exc:
                raise FusionError(str(exc)) from exc
        else:
            rotation = 0

        request = MergeRequest(kind=kind, frames=snapshot, rotation=rotation)
        failures: list[BackendFailure] = []
        last_error: Optional[Exception] = None

        for backend in self._backends:
            reason = backend.available()
            if reason is not None:
                failures.append(BackendFailure(backend.name, "unavailable", reason))
                logger.info(f"합성 백엔드 사용 불가: {backend.name} ({reason})")
                continue

            started = time.perf_counter()
            try:
                pixels = await backend.merge(request)
            except BackendUnavailableError as exc:
                failures.append(BackendFailure(backend.name, "unavailable", str(exc)))
                last_error = exc
                logger.info(f"합성 백엔드 사용 불가: {backend.name} ({exc})")
                continue
            except Exception as exc:
                failures.append(BackendFailure(backend.name, "error", str(exc)))
                last_error = exc
                logger.warning(f"합성 백엔드 오류: {backend.name} ({exc})", exc_info=True)
                continue

            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.debug(
                f"합성 완료: {kind.value}, frames={len(snapshot)}, "
                f"backend={backend.name}, {elapsed_ms:.1f}ms"
            )
            return FusionResult(
                pixels=pixels,
                algorithm=kind.value,
                frame_count=len(snapshot),
                backend=backend.name,
                failures=failures,
                rotation_applied=rotation,
            )

        summary = ", ".join(f"{f.backend}:{f.reason}" for f in failures)
        raise FusionError(f"모든 합성 백엔드 실패 ({summary})") from last_error

    @staticmethod
    def rotate_frame(pixels: np.ndarray, rotation: int) -> np.ndarray:
        """
        톤 매핑 외 경로의 후처리 회전입니다 (반시계).

        예외:
            FusionError: 지원하지 않는 회전 각도
        """
        try:
            return rotate_pixels(pixels, rotation)
        except ValueError as exc:
            raise FusionError(str(exc)) from exc
