"""
JPEG 방향(Orientation) 메타데이터 코덱 모듈입니다.

역할:
- 픽셀 데이터를 다시 압축하지 않고 JPEG의 EXIF Orientation 태그(0x0112)를 기록
- 기존 APP1(Exif) 세그먼트가 있으면 IFD0 엔트리를 제자리에서 수정
- 없으면 최소 APP1 세그먼트(리틀 엔디언, 엔트리 1개)를 만들어 SOI 바로 뒤에 삽입
- 회전 각도 ↔ Orientation 코드 변환 (0→1, 90→6, 180→3, 270→8)
- 장치 각도를 가장 가까운 90도 단위로 양자화

사용 예시:
    >>> stamped = stamp_orientation(jpeg_bytes, 90)
    >>> read_orientation(stamped)
    6
"""

from __future__ import annotations

import logging
import struct
from typing import Iterator, Optional

# 모듈 로거
logger = logging.getLogger(__name__)

# JPEG 마커
SOI = b"\xff\xd8"
MARKER_APP1 = 0xE1
MARKER_SOS = 0xDA
MARKER_EOI = 0xD9

# EXIF 식별자 / TIFF 상수
EXIF_HEADER = b"Exif\x00\x00"
TIFF_MAGIC = 0x002A
TAG_ORIENTATION = 0x0112
TYPE_SHORT = 3
IFD_ENTRY_SIZE = 12

# 회전 각도 → Orientation 코드
ORIENTATION_CODES = {0: 1, 90: 6, 180: 3, 270: 8}


class ExifParseError(Exception):
    """EXIF 구조를 해석할 수 없을 때 발생하는 예외 (내부에서 복구)"""
    pass


def orientation_code(degrees: int) -> Optional[int]:
    """회전 각도를 Orientation 코드로 변환합니다. 지원하지 않는 각도는 None."""
    return ORIENTATION_CODES.get((degrees + 360) % 360)


def quantize_rotation(angle: float) -> int:
    """
    장치 각도를 가장 가까운 90도 단위(0/90/180/270)로 양자화합니다.

    경계: [315, 45) → 0, [45, 135) → 90, [135, 225) → 180, [225, 315) → 270
    """
    normalized = angle % 360
    if normalized < 45 or normalized >= 315:
        return 0
    if normalized < 135:
        return 90
    if normalized < 225:
        return 180
    return 270


# =============================================================================
# 세그먼트 탐색
# =============================================================================

def _iter_segments(data: bytes) -> Iterator[tuple[int, int, int]]:
    """
    SOI 다음부터 (marker, payload_start, payload_length)를 차례로 반환합니다.

    마커가 아닌 바이트, SOS, EOI, 2 미만 크기를 만나면 멈춥니다.
    """
    offset = 2
    while offset + 4 < len(data):
        if data[offset] != 0xFF:
            return
        marker = data[offset + 1]
        if marker in (MARKER_SOS, MARKER_EOI):
            return
        (size,) = struct.unpack_from(">H", data, offset + 2)
        if size < 2:
            return
        yield marker, offset + 4, size - 2
        offset += 2 + size


def _is_exif(data: bytes, start: int) -> bool:
    return data[start:start + len(EXIF_HEADER)] == EXIF_HEADER


def _find_orientation_entry(data: bytes, start: int, length: int) -> tuple[int, str]:
    """
    EXIF 페이로드에서 Orientation 엔트리 오프셋과 바이트 순서를 찾습니다.

    반환값:
        (entry_offset, byte_order): byte_order는 "<" 또는 ">"

    예외:
        ExifParseError: TIFF 헤더 오류, 범위 초과, 태그 없음
    """
    tiff = start + len(EXIF_HEADER)
    end = min(start + length, len(data))
    if tiff + 8 > end:
        raise ExifParseError("TIFF 헤더가 잘려 있습니다")

    order_mark = data[tiff:tiff + 2]
    if order_mark == b"II":
        order = "<"
    elif order_mark == b"MM":
        order = ">"
    else:
        raise ExifParseError(f"알 수 없는 바이트 순서: {order_mark!r}")

    magic, ifd_offset = struct.unpack_from(order + "HI", data, tiff + 2)
    if magic != TIFF_MAGIC:
        raise ExifParseError(f"TIFF magic 불일치: 0x{magic:04x}")

    ifd = tiff + ifd_offset
    if ifd + 2 > end:
        raise ExifParseError("IFD0 오프셋이 세그먼트 범위를 벗어납니다")

    (count,) = struct.unpack_from(order + "H", data, ifd)
    entry = ifd + 2
    for _ in range(count):
        if entry + IFD_ENTRY_SIZE > end:
            break
        (tag,) = struct.unpack_from(order + "H", data, entry)
        if tag == TAG_ORIENTATION:
            return entry, order
        entry += IFD_ENTRY_SIZE
    raise ExifParseError("Orientation 태그가 없습니다")


# =============================================================================
# 공개 API
# =============================================================================

def build_exif_segment(code: int) -> bytes:
    """
    Orientation 엔트리 하나만 가진 최소 APP1(Exif) 세그먼트를 생성합니다.

    구성: FFE1 + 길이 + "Exif\\0\\0" + TIFF(II, 0x2A, IFD0=8) + IFD0(엔트리 1개, next=0)
    """
    tiff_header = b"II" + struct.pack("<HI", TIFF_MAGIC, 8)
    ifd0 = struct.pack("<H", 1)
    ifd0 += struct.pack("<HHIHH", TAG_ORIENTATION, TYPE_SHORT, 1, code, 0)
    ifd0 += struct.pack("<I", 0)
    payload = EXIF_HEADER + tiff_header + ifd0
    return struct.pack(">BBH", 0xFF, MARKER_APP1, len(payload) + 2) + payload


def stamp_orientation(image_bytes: bytes, rotation_degrees: int) -> bytes:
    """
    JPEG 바이트에 Orientation 코드를 기록합니다.

    - JPEG가 아니거나 지원하지 않는 각도면 입력을 그대로 반환
    - 기존 Orientation 엔트리가 있으면 그 12바이트만 수정 (type=3, count=1, value=code)
    - 없으면 최소 APP1 세그먼트를 SOI 바로 뒤에 삽입
    """
    code = orientation_code(rotation_degrees)
    if code is None or len(image_bytes) < 4 or not image_bytes.startswith(SOI):
        return image_bytes

    data = bytearray(image_bytes)
    for marker, start, length in _iter_segments(data):
        if marker != MARKER_APP1 or not _is_exif(data, start):
            continue
        try:
            entry, order = _find_orientation_entry(data, start, length)
        except (ExifParseError, struct.error) as exc:
            logger.debug(f"EXIF 세그먼트 해석 실패, 다음 세그먼트 탐색: {exc}")
            continue
        struct.pack_into(order + "HIHH", data, entry + 2, TYPE_SHORT, 1, code, 0)
        return bytes(data)

    return bytes(image_bytes[:2]) + build_exif_segment(code) + bytes(image_bytes[2:])


def read_orientation(image_bytes: bytes) -> Optional[int]:
    """
    JPEG의 Orientation 코드를 읽습니다. 없거나 해석할 수 없으면 None을 반환합니다.
    """
    if len(image_bytes) < 4 or not image_bytes.startswith(SOI):
        return None

    for marker, start, length in _iter_segments(image_bytes):
        if marker != MARKER_APP1 or not _is_exif(image_bytes, start):
            continue
        try:
            entry, order = _find_orientation_entry(image_bytes, start, length)
        except (ExifParseError, struct.error):
            continue
        (value,) = struct.unpack_from(order + "H", image_bytes, entry + 8)
        return value
    return None
