"""
캡처 오케스트레이터 모듈 패키지

공통 데이터 타입 정의:
- WhiteBalance / ManualControls: 수동 촬영 제어 값
- CaptureSettings: 현재 캡처 모드 및 설정
- ModeConfig: 모드별 표시 이름과 프레임 수 범위
- OrientationInfo / Provenance / OutputImage: 캡처 결과와 생성 과정 기록
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Optional

# provenance 알고리즘 이름 (합성 없는 단일 프레임)
ALGORITHM_SINGLE_FRAME = "single-frame"
ALGORITHM_NATIVE_PHOTO = "native-photo"


@dataclass
class WhiteBalance:
    """화이트 밸런스 (색온도 K, tint -1~1)"""
    temperature: float = 5500.0
    tint: float = 0.0


@dataclass
class ManualControls:
    """
    수동 촬영 제어 값입니다.

    필드:
        iso: 감도
        shutter_speed: 셔터 속도 (초)
        focus: 초점 (0~1)
        exposure_compensation: 노출 보정 (EV)
        white_balance: 화이트 밸런스
    """
    iso: int = 100
    shutter_speed: float = 1 / 60
    focus: float = 0.5
    exposure_compensation: float = 0.0
    white_balance: WhiteBalance = field(default_factory=WhiteBalance)


@dataclass
class CaptureSettings:
    """
    현재 캡처 설정입니다.

    frame_count는 photo / longExposure에서 1, night에서는 캡처 시점의 버퍼 프레임 수로 제한됩니다.
    """
    mode: str = "photo"
    frame_count: int = 1
    manual_controls: ManualControls = field(default_factory=ManualControls)
    hdr_enabled: bool = False
    quality_hint: Optional[str] = None
    exposure_seconds: float = 1.0


@dataclass(frozen=True)
class ModeConfig:
    """모드별 표시 정보와 프레임 수 범위"""
    name: str
    description: str
    max_frame_count: int
    default_frame_count: int


@dataclass
class OrientationInfo:
    """
    결과 이미지 방향 정보입니다.

    필드:
        device_orientation: 촬영 시 장치 회전 각도
        applied_rotation: 픽셀에 실제로 적용한 회전 각도
        deferred: True면 픽셀 회전 없이 메타데이터로만 방향을 기록
    """
    device_orientation: int = 0
    applied_rotation: int = 0
    deferred: bool = False


@dataclass
class Provenance:
    """
    결과 이미지 생성 과정 기록입니다.

    필드:
        algorithm: 사용한 알고리즘 이름
        frame_count: 실제 사용한 프레임 수
        hdr_applied: 누적 톤 매핑 적용 여부
        backend: 합성 백엔드 이름 (합성 없으면 None)
        notes: 부가 기록 (예: "no-buffered-frames", "fallback:parallel")
        quality: JPEG 품질 (0~1)
        width / height: 결과 이미지 크기
    """
    algorithm: str
    frame_count: int
    hdr_applied: bool = False
    backend: Optional[str] = None
    notes: list[str] = field(default_factory=list)
    quality: float = 0.0
    width: int = 0
    height: int = 0


@dataclass
class OutputImage:
    """
    캡처 결과입니다.

    필드:
        data: JPEG 바이트 (Orientation 기록 완료)
        orientation_code: 기록된 EXIF Orientation 코드 (1, 3, 6, 8)
        mode: 캡처 모드
        provenance: 생성 과정 기록
        orientation: 방향 정보
    """
    data: bytes
    orientation_code: int
    mode: str
    provenance: Provenance
    orientation: OrientationInfo = field(default_factory=OrientationInfo)

    def to_metadata(self) -> dict:
        """사이드카 저장용 메타데이터 dict를 반환합니다 (바이트 제외)."""
        return {
            "mode": self.mode,
            "orientation_code": self.orientation_code,
            "size_bytes": len(self.data),
            "provenance": asdict(self.provenance),
            "orientation": asdict(self.orientation),
        }


__all__ = [
    "ALGORITHM_NATIVE_PHOTO",
    "ALGORITHM_SINGLE_FRAME",
    "CaptureSettings",
    "ManualControls",
    "ModeConfig",
    "OrientationInfo",
    "OutputImage",
    "Provenance",
    "WhiteBalance",
]
