"""
장치 협상 모듈 패키지

공통 데이터 타입 정의:
- ConstraintValue / ConstraintSet: 장치에 요청하는 제약 조건
- CapabilityRange / TrackCapabilities / TrackSettings: 장치가 보고하는 범위와 현재 설정
- DeviceProfile: 프로필 캐시 엔트리
- NegotiationAttempt / NegotiationResult: 업그레이드 시도 기록
- DeviceTrack: 장치 트랙 프로토콜
- ConstraintApplyError: 장치가 제약 적용을 거부할 때 발생
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable


class ConstraintApplyError(Exception):
    """장치가 제약 조건 적용을 거부할 때 발생하는 예외"""

    def __init__(self, message: str, constraint: Optional[str] = None) -> None:
        super().__init__(message)
        # 거부 원인이 된 제약 이름 (예: "width", "aspect_ratio")
        self.constraint = constraint


@dataclass
class ConstraintValue:
    """
    단일 수치 제약입니다.

    필드:
        ideal: 가능한 한 가깝게 맞추길 원하는 값
        exact: 반드시 일치해야 하는 값
        min: 하한
        max: 상한
    """
    ideal: Optional[float] = None
    exact: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


@dataclass
class ConstraintSet:
    """
    장치에 한 번에 요청하는 제약 묶음입니다.

    device_id가 있으면 장치를 정확히 지정하고, 없으면 facing_mode를 선호값으로 사용합니다.
    advanced에는 focus_mode 등 수동 제어용 부가 제약이 들어갑니다.
    """
    width: Optional[ConstraintValue] = None
    height: Optional[ConstraintValue] = None
    aspect_ratio: Optional[ConstraintValue] = None
    frame_rate: Optional[ConstraintValue] = None
    device_id: Optional[str] = None
    facing_mode: Optional[str] = None
    advanced: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """로그/직렬화용 평탄한 dict로 변환합니다."""
        result: dict[str, Any] = {}
        for name in ("width", "height", "aspect_ratio", "frame_rate"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value.to_dict()
        if self.device_id is not None:
            result["device_id"] = {"exact": self.device_id}
        if self.facing_mode is not None:
            result["facing_mode"] = {"ideal": self.facing_mode}
        if self.advanced:
            result["advanced"] = dict(self.advanced)
        return result


@dataclass
class CapabilityRange:
    """장치가 지원하는 수치 범위"""
    min: float
    max: float


@dataclass
class TrackCapabilities:
    """
    장치 트랙이 보고하는 지원 범위입니다.

    extras에는 focus_mode / white_balance_mode / exposure_mode 지원 목록 등이 들어갑니다.
    """
    width: Optional[CapabilityRange] = None
    height: Optional[CapabilityRange] = None
    aspect_ratio: Optional[CapabilityRange] = None
    frame_rate: Optional[CapabilityRange] = None
    extras: dict[str, Any] = field(default_factory=dict)


@dataclass
class TrackSettings:
    """장치 트랙의 현재 적용 설정"""
    width: Optional[int] = None
    height: Optional[int] = None
    aspect_ratio: Optional[float] = None
    frame_rate: Optional[float] = None
    device_id: Optional[str] = None


@dataclass
class AppliedProfile:
    """마지막으로 성공한 제약 적용 결과"""
    width: int
    height: int
    aspect_ratio: Optional[float] = None
    frame_rate: Optional[float] = None


@dataclass
class DeviceProfile:
    """
    장치별 프로필 캐시 엔트리입니다.

    필드:
        last_applied: 마지막 성공 설정
        capabilities: 협상에 쓰는 범위만 복사한 capability 스냅샷
        timestamp_ms: 기록 시각 (밀리초)
    """
    timestamp_ms: int
    last_applied: Optional[AppliedProfile] = None
    capabilities: Optional[TrackCapabilities] = None


class FailureReason(str, Enum):
    """업그레이드 전략 실패 원인"""
    CONSTRAINT_REJECTED = "constraint_rejected"
    UNEXPECTED_ERROR = "unexpected_error"


@dataclass
class NegotiationAttempt:
    """업그레이드 전략 한 건의 시도 기록"""
    label: str
    constraints: ConstraintSet
    succeeded: bool
    reason: Optional[FailureReason] = None
    detail: str = ""
    affects_aspect: bool = False


@dataclass
class NegotiationResult:
    """
    업그레이드 결과입니다.

    status:
        "upgraded" - 어떤 전략이든 하나가 성공
        "skipped"  - 조건상 시도하지 않음 (skip_reason 참고)
        "exhausted" - 모든 전략 실패, 기존 설정 유지
    """
    status: str
    attempts: list[NegotiationAttempt] = field(default_factory=list)
    settings: Optional[TrackSettings] = None
    skip_reason: str = ""
    strategy: Optional[str] = None

    @property
    def upgraded(self) -> bool:
        return self.status == "upgraded"


@runtime_checkable
class DeviceTrack(Protocol):
    """제약을 적용할 수 있는 장치 트랙 인터페이스입니다."""

    def get_capabilities(self) -> Optional[TrackCapabilities]: ...

    def get_settings(self) -> TrackSettings: ...

    async def apply_constraints(self, constraints: ConstraintSet) -> None: ...


__all__ = [
    "AppliedProfile",
    "CapabilityRange",
    "ConstraintApplyError",
    "ConstraintSet",
    "ConstraintValue",
    "DeviceProfile",
    "DeviceTrack",
    "FailureReason",
    "NegotiationAttempt",
    "NegotiationResult",
    "TrackCapabilities",
    "TrackSettings",
]
