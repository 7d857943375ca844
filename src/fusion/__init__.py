"""
프레임 합성 모듈 패키지

공통 타입 정의:
- MergeKind: 합성 알고리즘 종류 (provenance 알고리즘 이름 포함)
- MergeRequest: 백엔드에 넘기는 합성 요청
- BackendFailure / FusionResult: 백엔드 실패 기록과 합성 결과
- FusionError / FusionBackendError / BackendUnavailableError: 합성 예외 계층
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np

from src.capture import Frame


class FusionError(Exception):
    """합성을 완료할 수 없을 때 발생하는 예외 (스칼라 백엔드까지 실패)"""
    pass


class FusionBackendError(FusionError):
    """개별 백엔드 실행 중 오류. 엔진이 기록 후 다음 백엔드로 재시도합니다."""
    pass


class BackendUnavailableError(FusionBackendError):
    """백엔드를 사용할 수 없는 환경 (설정으로 비활성화, 자원 없음 등)"""
    pass


class MergeKind(str, Enum):
    """합성 알고리즘 종류. 값은 provenance에 기록되는 알고리즘 이름입니다."""
    AVERAGE = "average-merge"
    WEIGHTED = "weighted-long-exposure"
    TONE_MAP = "accumulate-tone-map-v1"


@dataclass
class MergeRequest:
    """
    백엔드 하나에 전달되는 합성 요청입니다.

    필드:
        kind: 합성 알고리즘
        frames: 소유권 있는 프레임 목록 (오래된 것 → 최신)
        rotation: TONE_MAP에서 톤 매핑 중 적용할 회전 (0/90/180/270, 반시계)
    """
    kind: MergeKind
    frames: list[Frame]
    rotation: int = 0


@dataclass
class BackendFailure:
    """백엔드 실패 기록"""
    backend: str
    reason: str          # "unavailable" | "error"
    detail: str = ""


@dataclass
class FusionResult:
    """
    합성 결과입니다.

    필드:
        pixels: RGBA uint8 결과 배열
        algorithm: 사용한 알고리즘 이름
        frame_count: 실제로 합성한 프레임 수
        backend: 결과를 만든 백엔드 이름
        failures: 앞선 백엔드들의 실패 기록
        rotation_applied: 합성 중 이미 적용된 회전 각도
    """
    pixels: np.ndarray
    algorithm: str
    frame_count: int
    backend: str
    failures: list[BackendFailure] = field(default_factory=list)
    rotation_applied: int = 0

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def fell_back(self) -> bool:
        return bool(self.failures)


__all__ = [
    "BackendFailure",
    "BackendUnavailableError",
    "FusionBackendError",
    "FusionError",
    "FusionResult",
    "MergeKind",
    "MergeRequest",
]
