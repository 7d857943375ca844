"""
프레임 합성 수치 커널 모듈입니다.

역할:
- 세 가지 합성 알고리즘의 numpy 행 밴드 커널 (병렬 백엔드용)
    * 평균 합성: round(Σ채널 / N), alpha 포함
    * 가중 장노출 합성: w_i = 1/(i+1), Σ f_i·w_i / Σ w_i
    * 선형 누적 + 톤 매핑: (c/255)^2.2 누적 → 평균 → Reinhard c/(1+c) → ^(1/2.2)
- 같은 알고리즘의 순수 Python 픽셀 루프 구현 (스칼라 백엔드용)
- 회전 유틸리티 (반시계 방향, numpy.rot90과 같은 기하)

반올림은 모두 round-half-to-even (numpy.rint / 내장 round)입니다.
두 구현의 결과는 채널당 1 이내로 일치합니다.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from src.capture import Frame
from src.fusion import FusionError

# 감마 상수
GAMMA = 2.2
INV_GAMMA = 1.0 / GAMMA

# 8비트 값 → 선형 값 룩업 테이블
LINEAR_LUT: list[float] = [(value / 255.0) ** GAMMA for value in range(256)]
_LINEAR_LUT_NP = np.asarray(LINEAR_LUT, dtype=np.float64)

# 허용 회전 각도
ROTATIONS = (0, 90, 180, 270)


# =============================================================================
# 공통 유틸리티
# =============================================================================

def quarter_turns(degrees: int) -> int:
    """
    회전 각도를 90도 단위 회전 횟수(0~3)로 변환합니다.

    예외:
        ValueError: 90의 배수가 아닌 각도
    """
    normalized = int(degrees) % 360
    if normalized not in ROTATIONS:
        raise ValueError(f"지원하지 않는 회전 각도: {degrees}")
    return normalized // 90


def check_frames(frames: Sequence[Frame]) -> tuple[int, int]:
    """
    합성 입력을 검증하고 (height, width)를 반환합니다.

    예외:
        FusionError: 빈 목록이거나 프레임 크기가 서로 다른 경우
    """
    if not frames:
        raise FusionError("합성할 프레임이 없습니다")
    height, width = frames[0].height, frames[0].width
    for frame in frames[1:]:
        if (frame.height, frame.width) != (height, width):
            raise FusionError(
                f"프레임 크기 불일치: {width}x{height} vs {frame.width}x{frame.height}"
            )
    return height, width


def rotate_pixels(pixels: np.ndarray, degrees: int) -> np.ndarray:
    """
    RGBA 배열을 반시계 방향으로 회전한 새 배열을 반환합니다.

    90/270도는 가로세로가 바뀐 새 캔버스가 됩니다.
    """
    turns = quarter_turns(degrees)
    if turns == 0:
        return pixels
    return np.ascontiguousarray(np.rot90(pixels, k=turns))


# =============================================================================
# numpy 행 밴드 커널 (병렬 백엔드)
# =============================================================================

def average_rows(bands: Sequence[np.ndarray]) -> np.ndarray:
    """같은 행 범위의 밴드들을 평균합니다. alpha 채널도 평균합니다."""
    total = np.zeros(bands[0].shape, dtype=np.uint32)
    for band in bands:
        total += band
    return np.rint(total / len(bands)).astype(np.uint8)


def weighted_rows(bands: Sequence[np.ndarray]) -> np.ndarray:
    """i번째 밴드에 1/(i+1) 가중치를 주어 합성합니다."""
    total = np.zeros(bands[0].shape, dtype=np.float64)
    weight_sum = 0.0
    for index, band in enumerate(bands):
        weight = 1.0 / (index + 1)
        total += band * weight
        weight_sum += weight
    return np.clip(np.rint(total / weight_sum), 0, 255).astype(np.uint8)


def accumulate_linear_rows(bands: Sequence[np.ndarray]) -> np.ndarray:
    """RGB 채널을 선형화하여 float64로 누적합니다. 결과 shape=(rows, W, 3)."""
    total = np.zeros(bands[0].shape[:2] + (3,), dtype=np.float64)
    for band in bands:
        total += _LINEAR_LUT_NP[band[..., :3]]
    return total


def tone_map_rows(linear_sum: np.ndarray, count: int) -> np.ndarray:
    """누적 선형 값을 평균 → Reinhard → 감마 인코딩하여 RGBA uint8로 변환합니다."""
    mean = linear_sum / max(count, 1)
    mapped = mean / (1.0 + mean)
    encoded = np.clip(mapped, 0.0, 1.0) ** INV_GAMMA
    out = np.empty(linear_sum.shape[:2] + (4,), dtype=np.uint8)
    out[..., :3] = np.rint(encoded * 255.0)
    out[..., 3] = 255
    return out


# =============================================================================
# 순수 Python 구현 (스칼라 백엔드)
# =============================================================================

def _flatten(frames: Sequence[Frame]) -> list[list[int]]:
    return [frame.pixels.ravel().tolist() for frame in frames]


def _to_pixels(values: list[int], height: int, width: int) -> np.ndarray:
    return np.asarray(values, dtype=np.uint8).reshape(height, width, 4)


def average_scalar(frames: Sequence[Frame]) -> np.ndarray:
    """채널 값 하나씩 평균을 계산합니다."""
    height, width = check_frames(frames)
    count = len(frames)
    values = [round(sum(channel) / count) for channel in zip(*_flatten(frames))]
    return _to_pixels(values, height, width)


def weighted_scalar(frames: Sequence[Frame]) -> np.ndarray:
    """채널 값 하나씩 1/(i+1) 가중 평균을 계산합니다."""
    height, width = check_frames(frames)
    weights = [1.0 / (index + 1) for index in range(len(frames))]
    weight_sum = 0.0
    for weight in weights:
        weight_sum += weight

    values = []
    for channel in zip(*_flatten(frames)):
        total = 0.0
        for value, weight in zip(channel, weights):
            total += value * weight
        values.append(min(255, max(0, round(total / weight_sum))))
    return _to_pixels(values, height, width)


def tone_map_scalar(frames: Sequence[Frame], rotation: int = 0) -> np.ndarray:
    """
    선형 누적 + 톤 매핑을 픽셀 루프로 계산합니다.

    회전은 출력 픽셀마다 원본 좌표를 역산하여 톤 매핑 중에 적용합니다.
    """
    height, width = check_frames(frames)
    turns = quarter_turns(rotation)
    count = len(frames)
    lut = LINEAR_LUT

    # 누적 (RGB만)
    pixel_count = height * width
    accum = [0.0] * (pixel_count * 3)
    for data in _flatten(frames):
        for p in range(pixel_count):
            src = p * 4
            dst = p * 3
            accum[dst] += lut[data[src]]
            accum[dst + 1] += lut[data[src + 1]]
            accum[dst + 2] += lut[data[src + 2]]

    out_w, out_h = (height, width) if turns % 2 == 1 else (width, height)
    out: list[int] = []
    for y in range(out_h):
        for x in range(out_w):
            sx, sy = _source_coords(x, y, turns, width, height)
            base = (sy * width + sx) * 3
            for c in range(3):
                mean = accum[base + c] / count
                mapped = mean / (1.0 + mean)
                out.append(round(255.0 * min(max(mapped, 0.0), 1.0) ** INV_GAMMA))
            out.append(255)
    return _to_pixels(out, out_h, out_w)


def _source_coords(x: int, y: int, turns: int, width: int, height: int) -> tuple[int, int]:
    """반시계 회전 출력 좌표 (x, y)에 대응하는 원본 좌표를 반환합니다."""
    if turns == 1:
        return width - 1 - y, x
    if turns == 2:
        return width - 1 - x, height - 1 - y
    if turns == 3:
        return y, height - 1 - x
    return x, y
