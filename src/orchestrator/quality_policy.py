"""
JPEG 품질 결정 정책 모듈입니다.

규칙 (위에서부터 먼저 맞는 것):
    quality_hint == "speed" → 0.85
    megapixels > 9          → 0.90
    mode == "night"         → 0.92
    그 외                   → 0.88
"""

from __future__ import annotations

from typing import Optional


def decide_jpeg_quality(
    megapixels: float,
    mode: str,
    quality_hint: Optional[str] = None,
) -> float:
    """캡처 조건에 맞는 JPEG 품질(0~1)을 반환합니다."""
    if quality_hint == "speed":
        return 0.85
    if megapixels > 9:
        return 0.90
    if mode == "night":
        return 0.92
    return 0.88
