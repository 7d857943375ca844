"""
JPEG 인코딩 모듈입니다.

역할:
- RGBA uint8 배열을 cv2.imencode로 JPEG 바이트로 변환
- 0~1 품질 값을 OpenCV JPEG 품질(0~100)로 변환
- 인코딩 실패 시 EncodingError 발생
"""

from __future__ import annotations

import logging

import cv2
import numpy as np

# 모듈 로거
logger = logging.getLogger(__name__)


class EncodingError(Exception):
    """결과 이미지를 JPEG로 인코딩할 수 없을 때 발생하는 예외"""
    pass


def encode_jpeg(pixels: np.ndarray, quality: float) -> bytes:
    """
    RGBA 배열을 JPEG 바이트로 인코딩합니다. alpha 채널은 버립니다.

    파라미터:
        pixels: shape=(H, W, 4) uint8 배열
        quality: 0~1 사이의 JPEG 품질

    예외:
        EncodingError: 배열 형태가 잘못되었거나 OpenCV 인코딩 실패
    """
    if pixels.ndim != 3 or pixels.shape[2] != 4 or pixels.size == 0:
        raise EncodingError(f"RGBA 배열이 아닙니다: shape={pixels.shape}")

    jpeg_quality = int(round(min(max(quality, 0.0), 1.0) * 100))
    bgr = cv2.cvtColor(pixels, cv2.COLOR_RGBA2BGR)
    try:
        ok, encoded = cv2.imencode(".jpg", bgr, [int(cv2.IMWRITE_JPEG_QUALITY), jpeg_quality])
    except cv2.error as exc:
        raise EncodingError(f"JPEG 인코딩 오류: {exc}") from exc
    if not ok:
        raise EncodingError("JPEG 인코딩 실패")

    data = encoded.tobytes()
    logger.debug(
        f"JPEG 인코딩: {pixels.shape[1]}x{pixels.shape[0]}, "
        f"quality={jpeg_quality}, {len(data)} bytes"
    )
    return data
