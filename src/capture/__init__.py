"""
캡처 모듈 패키지

공통 데이터 타입 정의:
- Frame: RGBA 프레임 컨테이너 (생성 후 불변)
- make_frame: ndarray로부터 읽기 전용 Frame 생성
"""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass
from typing import Optional

import numpy as np

# 프레임 순번 발급기 (프로세스 전역)
_frame_ids = itertools.count()


@dataclass(frozen=True)
class Frame:
    """
    RGBA 프레임 데이터 컨테이너입니다.

    필드:
        frame_id: 프레임 순번 (0부터 시작)
        timestamp_ns: 캡처 시각 (nanoseconds, time.time_ns() 기준)
        width: 프레임 가로 픽셀 수
        height: 프레임 세로 픽셀 수
        pixels: RGBA uint8 배열, shape=(height, width, 4), 읽기 전용
    """
    frame_id: int
    timestamp_ns: int
    width: int
    height: int
    pixels: np.ndarray


def make_frame(
    pixels: np.ndarray,
    timestamp_ns: Optional[int] = None,
    frame_id: Optional[int] = None,
    copy: bool = True,
) -> Frame:
    """
    RGBA 배열로부터 Frame을 생성합니다.

    배열은 기본적으로 복사된 뒤 쓰기 불가로 표시됩니다.
    RGB(3채널) 배열이 들어오면 alpha=255 채널을 덧붙입니다.

    파라미터:
        pixels: shape=(H, W, 4) 또는 (H, W, 3)의 uint8 배열
        timestamp_ns: 캡처 시각. None이면 현재 시각
        frame_id: 프레임 순번. None이면 자동 발급
        copy: False면 호출자가 넘긴 배열을 그대로 소유

    반환값:
        Frame: 불변 프레임

    예외:
        ValueError: 배열 형태가 RGBA/RGB가 아닌 경우
    """
    if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
        raise ValueError(f"RGBA 프레임 형태가 아닙니다: shape={pixels.shape}")

    if pixels.shape[2] == 3:
        alpha = np.full(pixels.shape[:2] + (1,), 255, dtype=np.uint8)
        data = np.concatenate([pixels.astype(np.uint8, copy=False), alpha], axis=2)
    elif copy or pixels.dtype != np.uint8:
        data = np.array(pixels, dtype=np.uint8, copy=True)
    else:
        data = pixels

    data.setflags(write=False)
    height, width = data.shape[:2]
    return Frame(
        frame_id=next(_frame_ids) if frame_id is None else frame_id,
        timestamp_ns=time.time_ns() if timestamp_ns is None else timestamp_ns,
        width=int(width),
        height=int(height),
        pixels=data,
    )


__all__ = ["Frame", "make_frame"]
