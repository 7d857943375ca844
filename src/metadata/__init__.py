"""
이미지 메타데이터 모듈 패키지

JPEG 컨테이너의 EXIF Orientation 태그를 재압축 없이 읽고 쓰는 코덱을 제공합니다.
"""

from src.metadata.orientation_codec import (
    ExifParseError,
    quantize_rotation,
    read_orientation,
    stamp_orientation,
)

__all__ = ["ExifParseError", "quantize_rotation", "read_orientation", "stamp_orientation"]
