"""
OrientationCodec 단위 테스트

검증 조건:
- 회전 각도별 Orientation 코드 기록 후 재해석 시 매핑된 코드 반환 (0→1, 90→6, 180→3, 270→8)
- EXIF가 없는 JPEG에 기록하면 SOI가 유지되고 Exif 세그먼트가 정확히 1개 생김
- 기존 Orientation 엔트리는 제자리 수정 (길이 불변, 엔트리 외 바이트 불변)
- JPEG가 아니거나 지원하지 않는 각도면 입력을 그대로 반환
- 빅 엔디언(MM) TIFF 처리, 손상된 EXIF는 새 세그먼트 삽입으로 복구
"""

from __future__ import annotations

import struct

import numpy as np
import pytest

from src.metadata.orientation_codec import (
    SOI,
    build_exif_segment,
    orientation_code,
    quantize_rotation,
    read_orientation,
    stamp_orientation,
)
from src.orchestrator.image_encoder import encode_jpeg

from image_helpers import count_exif_segments, degrees_for_code


# =============================================================================
# 테스트 헬퍼
# =============================================================================

def _make_jpeg(width: int = 16, height: int = 8) -> bytes:
    """EXIF 세그먼트가 없는 작은 JPEG를 생성합니다."""
    pixels = np.zeros((height, width, 4), dtype=np.uint8)
    pixels[..., 0] = 200
    pixels[..., 3] = 255
    return encode_jpeg(pixels, 0.9)


def _big_endian_exif(orientation: int) -> bytes:
    """Make 태그와 Orientation 태그를 가진 MM 바이트 순서 APP1 세그먼트를 생성합니다."""
    tiff = b"MM" + struct.pack(">HI", 0x002A, 8)
    ifd = struct.pack(">H", 2)
    ifd += struct.pack(">HHI", 0x010F, 2, 4) + b"abc\x00"
    ifd += struct.pack(">HHIHH", 0x0112, 3, 1, orientation, 0)
    ifd += struct.pack(">I", 0)
    payload = b"Exif\x00\x00" + tiff + ifd
    return struct.pack(">BBH", 0xFF, 0xE1, len(payload) + 2) + payload


def _with_segment(jpeg: bytes, segment: bytes) -> bytes:
    return jpeg[:2] + segment + jpeg[2:]


# =============================================================================
# 각도 ↔ 코드 변환
# =============================================================================

class TestOrientationCode:
    @pytest.mark.parametrize("degrees,code", [(0, 1), (90, 6), (180, 3), (270, 8)])
    def test_mapping(self, degrees, code):
        assert orientation_code(degrees) == code
        assert degrees_for_code(code) == degrees

    def test_negative_degrees_normalized(self):
        assert orientation_code(-90) == 8
        assert orientation_code(360) == 1

    def test_unsupported_degrees(self):
        assert orientation_code(45) is None
        assert degrees_for_code(2) is None


class TestQuantizeRotation:
    @pytest.mark.parametrize("angle,expected", [
        (0, 0), (44.9, 0), (45, 90), (134, 90), (135, 180),
        (224.5, 180), (225, 270), (314, 270), (315, 0), (359, 0),
        (-90, 270), (450, 90),
    ])
    def test_nearest_quarter_turn(self, angle, expected):
        assert quantize_rotation(angle) == expected


# =============================================================================
# stamp_orientation
# =============================================================================

class TestStampWithoutExif:
    @pytest.mark.parametrize("degrees,code", [(0, 1), (90, 6), (180, 3), (270, 8)])
    def test_round_trip(self, degrees, code):
        stamped = stamp_orientation(_make_jpeg(), degrees)
        assert read_orientation(stamped) == code

    def test_inserts_single_segment_after_soi(self):
        jpeg = _make_jpeg()
        assert count_exif_segments(jpeg) == 0

        stamped = stamp_orientation(jpeg, 90)

        assert stamped.startswith(SOI)
        assert count_exif_segments(stamped) == 1
        # SOI 바로 뒤가 APP1
        assert stamped[2:4] == b"\xff\xe1"
        # 원본 나머지 바이트는 그대로 뒤에 이어짐
        assert stamped.endswith(jpeg[2:])

    def test_restamp_rewrites_in_place(self):
        once = stamp_orientation(_make_jpeg(), 90)
        twice = stamp_orientation(once, 180)

        assert len(twice) == len(once)
        assert count_exif_segments(twice) == 1
        assert read_orientation(twice) == 3

    def test_build_exif_segment_layout(self):
        segment = build_exif_segment(6)
        assert segment[:2] == b"\xff\xe1"
        (length,) = struct.unpack(">H", segment[2:4])
        assert length == len(segment) - 2
        assert segment[4:10] == b"Exif\x00\x00"
        assert segment[10:12] == b"II"


class TestStampExistingExif:
    def test_big_endian_entry_rewritten(self):
        jpeg = _with_segment(_make_jpeg(), _big_endian_exif(1))
        assert read_orientation(jpeg) == 1

        stamped = stamp_orientation(jpeg, 270)

        assert len(stamped) == len(jpeg)
        assert read_orientation(stamped) == 8
        diff = [i for i, (a, b) in enumerate(zip(jpeg, stamped)) if a != b]
        # value 필드(2바이트) 중 하위 바이트만 바뀜
        assert len(diff) == 1

    def test_little_endian_entry_rewritten(self):
        jpeg = _with_segment(_make_jpeg(), build_exif_segment(1))
        stamped = stamp_orientation(jpeg, 180)

        assert len(stamped) == len(jpeg)
        assert count_exif_segments(stamped) == 1
        assert read_orientation(stamped) == 3

    def test_exif_without_orientation_tag_gets_new_segment(self):
        tiff = b"II" + struct.pack("<HI", 0x002A, 8)
        ifd = struct.pack("<H", 1) + struct.pack("<HHIHH", 0x0110, 2, 2, 0x41, 0)
        ifd += struct.pack("<I", 0)
        payload = b"Exif\x00\x00" + tiff + ifd
        segment = struct.pack(">BBH", 0xFF, 0xE1, len(payload) + 2) + payload
        jpeg = _with_segment(_make_jpeg(), segment)

        stamped = stamp_orientation(jpeg, 90)

        assert stamped.startswith(SOI)
        assert count_exif_segments(stamped) == 2
        assert read_orientation(stamped) == 6

    def test_corrupt_exif_recovers_by_synthesizing(self):
        payload = b"Exif\x00\x00" + b"XX" + b"\x00" * 10
        segment = struct.pack(">BBH", 0xFF, 0xE1, len(payload) + 2) + payload
        jpeg = _with_segment(_make_jpeg(), segment)

        stamped = stamp_orientation(jpeg, 90)

        assert read_orientation(stamped) == 6
        assert stamped.startswith(SOI)


class TestStampPassthrough:
    def test_non_jpeg_unmodified(self):
        data = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
        assert stamp_orientation(data, 90) == data
        assert read_orientation(data) is None

    def test_unsupported_rotation_unmodified(self):
        jpeg = _make_jpeg()
        assert stamp_orientation(jpeg, 45) == jpeg

    def test_too_short_unmodified(self):
        assert stamp_orientation(b"\xff\xd8", 90) == b"\xff\xd8"

    def test_read_orientation_absent(self):
        assert read_orientation(_make_jpeg()) is None
