"""
Still-Fusion 설정 스키마 정의 모듈입니다.

역할:
- Pydantic v2 BaseModel 기반으로 config.yaml의 전체 구조를 타입 안전하게 정의
- 각 섹션(system, capture, negotiation, fusion, orchestrator, output)을
  독립적인 중첩 모델로 분리하여 유지보수성 확보
- 필드별 기본값, 허용 범위, 유효성 검증(validator)을 포함

사용 예시:
    >>> from src.config.schema import AppConfig
    >>> config = AppConfig(**yaml_data)
    >>> print(config.fusion.max_frames)
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator

# 모듈 로거 설정
logger = logging.getLogger(__name__)

# 캡처 모드 / 품질 힌트 허용값
CAPTURE_MODES = ("photo", "night", "longExposure")
QUALITY_HINTS = ("speed", "balanced", "quality")


# =============================================================================
# system 섹션: 시스템 전역 설정
# =============================================================================

class SystemConfig(BaseModel):
    """
    시스템 전역 설정을 정의하는 모델입니다.

    역할:
    - 프레임 소스 모드(file/synthetic) 결정
    - 로깅 레벨 및 포맷 지정
    - 세션 식별자 관리
    """
    # 프레임 소스 모드: "file"은 영상 파일, "synthetic"은 합성 프레임
    mode: str = Field(default="synthetic", description="프레임 소스 모드 (file | synthetic)")
    # 로그 출력 레벨
    log_level: str = Field(default="INFO", description="로그 레벨 (DEBUG | INFO | WARNING | ERROR)")
    # 로그 출력 포맷
    log_format: str = Field(default="json", description="로그 포맷 (json | text)")
    # 로그 파일 저장 디렉토리 경로
    log_dir: str = Field(default="output/logs", description="로그 저장 디렉토리")
    # 세션 고유 식별자 (빈 문자열이면 UUID로 자동 생성)
    session_id: str = Field(default="", description="세션 ID (비어있으면 UUID 자동생성)")

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, value: str) -> str:
        """실행 모드가 허용된 값인지 검증합니다."""
        allowed_modes = ("file", "synthetic")
        if value not in allowed_modes:
            error_message = f"mode는 {allowed_modes} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """로그 레벨이 유효한 Python 로깅 레벨인지 검증합니다."""
        allowed_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        upper_value = value.upper()
        if upper_value not in allowed_levels:
            error_message = f"log_level은 {allowed_levels} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return upper_value

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, value: str) -> str:
        """로그 포맷이 지원되는 형식인지 검증합니다."""
        allowed_formats = ("json", "text")
        if value not in allowed_formats:
            error_message = f"log_format은 {allowed_formats} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return value


# =============================================================================
# capture 섹션: 프레임 소스 및 링 버퍼 설정
# =============================================================================

class SourceFileConfig(BaseModel):
    """
    파일/합성 프레임 소스 설정입니다.

    역할:
    - 영상 파일 경로 및 반복 재생 여부 지정
    - 합성 소스의 해상도 상한(모의 장치 capability) 지정
    """
    # 테스트용 영상 파일 경로 (비어있으면 합성 프레임 사용)
    video_path: str = Field(default="", description="영상 파일 경로 (비어있으면 합성 프레임)")
    # 파일 끝 도달 시 처음부터 반복 여부
    loop: bool = Field(default=True, description="파일 반복 재생 여부")
    # 모의 장치가 보고하는 최대 가로 해상도
    max_width: int = Field(default=3840, gt=0, description="모의 장치 최대 가로 해상도")
    # 모의 장치가 보고하는 최대 세로 해상도
    max_height: int = Field(default=2160, gt=0, description="모의 장치 최대 세로 해상도")
    # 모의 장치가 보고하는 최대 프레임레이트
    max_frame_rate: float = Field(default=60.0, description="모의 장치 최대 fps")


class CaptureConfig(BaseModel):
    """
    프레임 수집(링 버퍼) 설정을 정의하는 모델입니다.

    역할:
    - 링 버퍼 용량 제한으로 메모리 사용량 제어
    - 디스플레이 틱 주기 지정
    - 장치 선택(device_id / facing) 기본값
    """
    # 링 버퍼 최대 프레임 수
    ring_buffer_capacity: int = Field(default=32, description="링 버퍼 최대 프레임 수")
    # 디스플레이 틱 주기 (밀리초, 약 60Hz)
    tick_interval_ms: int = Field(default=16, description="프레임 수집 틱 주기 (ms)")
    # 사용할 장치 ID (빈 문자열이면 facing 힌트 사용)
    device_id: str = Field(default="", description="장치 ID")
    # 카메라 방향 힌트
    facing: str = Field(default="environment", description="카메라 방향 (environment | user)")
    # 파일/합성 소스 설정
    source: SourceFileConfig = Field(default_factory=SourceFileConfig, description="파일 소스 설정")

    @field_validator("ring_buffer_capacity")
    @classmethod
    def validate_capacity(cls, value: int) -> int:
        """링 버퍼 용량이 1 이상인지 검증합니다."""
        if value < 1:
            error_message = f"ring_buffer_capacity는 1 이상이어야 합니다. 입력값: {value}"
            raise ValueError(error_message)
        return value

    @field_validator("facing")
    @classmethod
    def validate_facing(cls, value: str) -> str:
        """facing 값이 허용된 값인지 검증합니다."""
        allowed = ("environment", "user")
        if value not in allowed:
            error_message = f"facing은 {allowed} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return value


# =============================================================================
# negotiation 섹션: 장치 제약 협상 설정
# =============================================================================

class NegotiationConfig(BaseModel):
    """
    장치 제약 협상(fast start → upgrade) 설정입니다.

    역할:
    - 빠른 시작 프로필(1920x1080@30) 지정
    - 업그레이드 생략 허용 오차 및 해상도 사다리 정의
    - 종횡비 포기 임계값 및 프로필 캐시 유효기간 설정
    """
    # 빠른 시작 가로 해상도
    fast_start_width: int = Field(default=1920, description="빠른 시작 가로 해상도")
    # 빠른 시작 세로 해상도
    fast_start_height: int = Field(default=1080, description="빠른 시작 세로 해상도")
    # 빠른 시작 프레임레이트
    fast_start_frame_rate: int = Field(default=30, description="빠른 시작 fps")
    # 최대 해상도 근접 판정 허용 오차 (픽셀)
    max_tolerance_px: int = Field(default=16, description="업그레이드 생략 허용 오차 (px)")
    # 내림차순 해상도 사다리 (가로 픽셀)
    resolution_ladder: list[int] = Field(
        default=[4096, 3840, 2560, 1920, 1280],
        description="해상도 사다리 (가로 px, 내림차순)",
    )
    # 프레임레이트 축소 단계
    fallback_frame_rates: list[int] = Field(default=[24, 15], description="fps 축소 단계")
    # 종횡비 포기 임계값 (연속 실패 횟수)
    max_aspect_failures: int = Field(default=2, description="종횡비 포기 임계 실패 횟수")
    # 프로필 캐시 유효기간 (밀리초)
    profile_max_age_ms: int = Field(default=600_000, description="프로필 캐시 유효기간 (ms)")

    @field_validator("resolution_ladder")
    @classmethod
    def validate_ladder(cls, value: list[int]) -> list[int]:
        """해상도 사다리가 비어있지 않은 양수 목록인지 검증하고 내림차순으로 정렬합니다."""
        if not value or any(width <= 0 for width in value):
            error_message = f"resolution_ladder는 양수 목록이어야 합니다. 입력값: {value}"
            raise ValueError(error_message)
        return sorted(value, reverse=True)


# =============================================================================
# fusion 섹션: 프레임 합성 엔진 설정
# =============================================================================

class FusionConfig(BaseModel):
    """
    프레임 합성(FusionEngine) 설정입니다.

    역할:
    - 병렬 백엔드 사용 여부 및 작업자 수 지정
    - HDR 누적 최대 프레임 수 제한
    - 병렬 작업 단위(행 밴드) 크기 지정
    """
    # 병렬 백엔드 사용 여부 (False면 스칼라 백엔드만 사용)
    parallel_enabled: bool = Field(default=True, description="병렬 백엔드 사용 여부")
    # 병렬 계산 작업자 수 (0이면 CPU 수 기반 자동)
    workers: int = Field(default=0, description="병렬 작업자 수 (0=자동)")
    # 작업 항목 하나가 처리하는 행 수
    band_rows: int = Field(default=64, description="작업 항목당 행 수")
    # HDR 누적 최대 프레임 수
    max_frames: int = Field(default=64, description="HDR 누적 최대 프레임 수")

    @field_validator("band_rows", "max_frames")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """양수 값인지 검증합니다."""
        if value < 1:
            error_message = f"값은 1 이상이어야 합니다. 입력값: {value}"
            raise ValueError(error_message)
        return value


# =============================================================================
# orchestrator 섹션: 캡처 모드 기본값
# =============================================================================

class OrchestratorConfig(BaseModel):
    """
    캡처 오케스트레이터 기본 동작 설정입니다.

    역할:
    - 기본 캡처 모드 및 야간 모드 기본 프레임 수 지정
    - 장노출 샘플링 주기와 기본 노출 시간 지정
    - 품질 힌트 기본값 지정
    """
    # 기본 캡처 모드
    default_mode: str = Field(default="photo", description="기본 캡처 모드")
    # 야간 모드 기본 프레임 수
    night_frame_count: int = Field(default=8, description="야간 모드 기본 프레임 수")
    # 장노출 샘플링 주기 (밀리초)
    long_exposure_interval_ms: int = Field(default=100, description="장노출 샘플링 주기 (ms)")
    # 장노출 기본 노출 시간 (초)
    exposure_seconds: float = Field(default=1.0, description="장노출 노출 시간 (초)")
    # 품질 힌트 (None이면 힌트 없음)
    quality_hint: Optional[str] = Field(default=None, description="품질 힌트 (speed | balanced | quality)")

    @field_validator("default_mode")
    @classmethod
    def validate_default_mode(cls, value: str) -> str:
        """기본 캡처 모드가 허용된 값인지 검증합니다."""
        if value not in CAPTURE_MODES:
            error_message = f"default_mode는 {CAPTURE_MODES} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return value

    @field_validator("quality_hint")
    @classmethod
    def validate_quality_hint(cls, value: Optional[str]) -> Optional[str]:
        """품질 힌트가 허용된 값인지 검증합니다."""
        if value is not None and value not in QUALITY_HINTS:
            error_message = f"quality_hint는 {QUALITY_HINTS} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return value

    @field_validator("exposure_seconds")
    @classmethod
    def validate_exposure(cls, value: float) -> float:
        """노출 시간이 음수가 아닌지 검증합니다."""
        if value < 0:
            error_message = f"exposure_seconds는 0 이상이어야 합니다. 입력값: {value}"
            raise ValueError(error_message)
        return value


# =============================================================================
# output 섹션: 결과 이미지 출력 설정
# =============================================================================

class OutputConfig(BaseModel):
    """
    결과 이미지 저장 설정입니다.

    역할:
    - 결과 JPEG 저장 디렉토리 지정
    - provenance 사이드카(JSON) 저장 여부 지정
    """
    # 결과 이미지 저장 디렉토리
    output_dir: str = Field(default="output/captures", description="결과 이미지 저장 디렉토리")
    # provenance JSON 사이드카 저장 여부
    write_sidecar: bool = Field(default=True, description="provenance 사이드카 저장 여부")


# =============================================================================
# 최상위 AppConfig: 모든 섹션을 통합하는 루트 모델
# =============================================================================

class AppConfig(BaseModel):
    """
    애플리케이션 전체 설정을 통합하는 최상위 모델입니다.

    역할:
    - config.yaml의 모든 섹션을 하나의 타입 안전한 객체로 통합
    - Pydantic v2 유효성 검증을 통해 설정 무결성 보장
    - 각 섹션이 누락된 경우 기본값으로 자동 생성

    사용 예시:
        >>> import yaml
        >>> with open("config.yaml") as f:
        ...     raw = yaml.safe_load(f)
        >>> config = AppConfig(**raw)
        >>> print(config.capture.ring_buffer_capacity)
        32
    """
    # 시스템 전역 설정
    system: SystemConfig = Field(default_factory=SystemConfig, description="시스템 설정")
    # 프레임 수집 설정
    capture: CaptureConfig = Field(default_factory=CaptureConfig, description="캡처 설정")
    # 장치 협상 설정
    negotiation: NegotiationConfig = Field(default_factory=NegotiationConfig, description="협상 설정")
    # 프레임 합성 설정
    fusion: FusionConfig = Field(default_factory=FusionConfig, description="합성 설정")
    # 캡처 오케스트레이터 설정
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig, description="오케스트레이터 설정")
    # 결과 출력 설정
    output: OutputConfig = Field(default_factory=OutputConfig, description="출력 설정")
