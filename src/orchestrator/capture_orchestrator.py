"""
캡처 오케스트레이터 모듈입니다.

역할:
- 캡처 모드(photo / night / longExposure) 상태 관리 및 모드별 기본 프레임 수 설정
- 캡처 요청 시 모드에 따라 프레임을 모으고 합성 엔진 경로를 선택
    * photo: 라이브 프레임 1장, 또는 소스가 take_photo()를 제공하면 네이티브 촬영
    * night: 링 버퍼의 최근 min(frame_count, 보유 수, 32)장 평균 합성 / HDR 누적 톤 매핑
    * longExposure: 샘플링 주기마다 라이브 프레임을 모아 가중 합성
- 버스트 캡처: 세션 시작 시 한 번 선택한 프레임 리더로 N장을 모아 평균 합성
- JPEG 인코딩 후 EXIF Orientation 기록, provenance와 함께 OutputImage 반환

사용 예시:
    >>> orchestrator = CaptureOrchestrator(config, source, ring_buffer, engine)
    >>> orchestrator.set_mode("night")
    >>> output = await orchestrator.capture(rotation=90)
    >>> print(output.provenance.algorithm, output.provenance.frame_count)
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import fields, replace
from typing import Optional

import numpy as np

from src.capture.frame_source import FrameReader, FrameSource, grab_frame, probe_frame_reader
from src.capture.ring_buffer import FrameRingBuffer
from src.config.schema import CAPTURE_MODES, QUALITY_HINTS, AppConfig
from src.fusion import FusionResult
from src.fusion.fusion_engine import FusionEngine
from src.metadata.orientation_codec import orientation_code, stamp_orientation
from src.metrics.metrics_store import MetricsStore
from src.negotiation import DeviceTrack
from src.negotiation.device_negotiator import DeviceNegotiator
from src.orchestrator import (
    ALGORITHM_NATIVE_PHOTO,
    ALGORITHM_SINGLE_FRAME,
    CaptureSettings,
    ManualControls,
    ModeConfig,
    OrientationInfo,
    OutputImage,
    Provenance,
    WhiteBalance,
)
from src.orchestrator.image_encoder import encode_jpeg
from src.orchestrator.quality_policy import decide_jpeg_quality

# 모듈 로거
logger = logging.getLogger(__name__)

# 야간 모드 최대 합성 프레임 수
MAX_NIGHT_FRAMES = 32

# 버퍼가 비었을 때 provenance 기록
NOTE_NO_BUFFERED_FRAMES = "no-buffered-frames"

# 네이티브 촬영 결과 크기를 모를 때 가정하는 화소 수
_DEFAULT_MEGAPIXELS = 2.0

_MODE_CONFIGS = {
    "photo": ModeConfig(
        name="Photo",
        description="단일 프레임 즉시 촬영",
        max_frame_count=1,
        default_frame_count=1,
    ),
    "night": ModeConfig(
        name="Night",
        description="저조도용 다중 프레임 합성",
        max_frame_count=MAX_NIGHT_FRAMES,
        default_frame_count=8,
    ),
    "longExposure": ModeConfig(
        name="Long Exposure",
        description="움직임 잔상을 남기는 장노출 합성",
        max_frame_count=1,
        default_frame_count=1,
    ),
}


class CaptureError(Exception):
    """캡처를 진행할 수 없을 때 발생하는 예외의 기본 클래스"""
    pass


class CameraNotReadyError(CaptureError):
    """프레임 소스가 아직 유효한 프레임을 제공하지 않을 때 발생"""
    pass


class CaptureOrchestrator:
    """
    캡처 모드 상태 머신과 캡처 실행을 담당합니다.

    캡처 흐름:
        모드 확인 → 프레임 수집 → (합성) → (회전) → JPEG 인코딩 → Orientation 기록
    """

    def __init__(
        self,
        config: AppConfig,
        source: FrameSource,
        ring_buffer: FrameRingBuffer,
        engine: FusionEngine,
        metrics: Optional[MetricsStore] = None,
        negotiator: Optional[DeviceNegotiator] = None,
        track: Optional[DeviceTrack] = None,
        reader: Optional[FrameReader] = None,
    ) -> None:
        """
        CaptureOrchestrator를 초기화합니다.

        파라미터:
            config (AppConfig): 전체 애플리케이션 설정 객체
            source (FrameSource): 라이브 프레임 소스
            ring_buffer (FrameRingBuffer): 야간 모드용 최근 프레임 버퍼
            engine (FusionEngine): 합성 엔진
            metrics (MetricsStore): 캡처 통계 기록 대상 (선택)
            negotiator / track: 수동 제어 모드 제약 적용 대상 (선택)
            reader (FrameReader): 버스트 캡처용 리더. None이면 첫 버스트에서 한 번 선택
        """
        orch = config.orchestrator
        self._source = source
        self._ring_buffer = ring_buffer
        self._engine = engine
        self._metrics = metrics
        self._negotiator = negotiator
        self._track = track
        self._reader = reader
        self._tick_interval_ms = config.capture.tick_interval_ms

        self._night_frame_count = orch.night_frame_count
        self._interval_ms = orch.long_exposure_interval_ms
        self._manual_mode = False

        self._settings = CaptureSettings(
            quality_hint=orch.quality_hint,
            exposure_seconds=orch.exposure_seconds,
        )
        self.set_mode(orch.default_mode)

    # =========================================================================
    # 모드 / 설정
    # =========================================================================

    @property
    def settings(self) -> CaptureSettings:
        """현재 캡처 설정"""
        return self._settings

    @property
    def manual_mode(self) -> bool:
        return self._manual_mode

    @staticmethod
    def mode_config(mode: str) -> ModeConfig:
        """모드의 표시 이름, 설명, 프레임 수 범위를 반환합니다."""
        if mode not in _MODE_CONFIGS:
            raise ValueError(f"알 수 없는 캡처 모드: '{mode}'")
        return _MODE_CONFIGS[mode]

    def set_mode(self, mode: str) -> None:
        """
        캡처 모드를 바꾸고 frame_count를 모드 기본값으로 재설정합니다.

        night → 설정의 night_frame_count (기본 8), 그 외 → 1
        """
        if mode not in CAPTURE_MODES:
            raise ValueError(f"mode는 {CAPTURE_MODES} 중 하나여야 합니다. 입력값: '{mode}'")
        frame_count = self._night_frame_count if mode == "night" else 1
        self._settings = replace(
            self._settings,
            mode=mode,
            frame_count=min(frame_count, self.mode_config(mode).max_frame_count),
        )
        logger.info(f"캡처 모드 변경: {mode} (frame_count={self._settings.frame_count})")

    def update_settings(self, **changes) -> CaptureSettings:
        """
        캡처 설정 일부를 갱신합니다.

        mode가 포함되면 set_mode를 먼저 적용한 뒤 나머지 값을 덮어씁니다.
        frame_count는 모드의 최대 프레임 수로 제한됩니다.

        예외:
            ValueError: 알 수 없는 필드 또는 허용 범위 밖의 값
        """
        allowed = {f.name for f in fields(CaptureSettings)}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"알 수 없는 캡처 설정: {sorted(unknown)}")

        if "mode" in changes:
            self.set_mode(changes.pop("mode"))

        if "frame_count" in changes:
            frame_count = int(changes["frame_count"])
            if frame_count < 1:
                raise ValueError(f"frame_count는 1 이상이어야 합니다. 입력값: {frame_count}")
            changes["frame_count"] = min(
                frame_count, self.mode_config(self._settings.mode).max_frame_count
            )

        hint = changes.get("quality_hint")
        if hint is not None and hint not in QUALITY_HINTS:
            raise ValueError(f"quality_hint는 {QUALITY_HINTS} 중 하나여야 합니다. 입력값: '{hint}'")

        if "exposure_seconds" in changes:
            exposure = changes["exposure_seconds"]
            if exposure is None or exposure < 0:
                raise ValueError(f"exposure_seconds는 0 이상이어야 합니다. 입력값: {exposure}")

        self._settings = replace(self._settings, **changes)
        logger.debug(f"캡처 설정 갱신: {changes}")
        return self._settings

    def set_manual_mode(self, enabled: bool) -> None:
        """수동 제어 모드 여부를 설정합니다. 이후 제어 변경 시 장치 모드 제약에 반영됩니다."""
        self._manual_mode = enabled

    async def update_manual_controls(self, **changes) -> ManualControls:
        """
        수동 제어 값 일부를 갱신합니다.

        장치 트랙이 연결되어 있으면 변경 항목에 대응하는 모드 제약을 최선 노력으로 적용합니다.
        장치가 거부해도 값은 갱신됩니다.
        """
        allowed = {f.name for f in fields(ManualControls)}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"알 수 없는 수동 제어 항목: {sorted(unknown)}")

        white_balance = changes.get("white_balance")
        if isinstance(white_balance, dict):
            changes["white_balance"] = replace(
                self._settings.manual_controls.white_balance, **white_balance
            )
        elif white_balance is not None and not isinstance(white_balance, WhiteBalance):
            raise ValueError(f"white_balance 형식 오류: {white_balance!r}")

        controls = replace(self._settings.manual_controls, **changes)
        self._settings = replace(self._settings, manual_controls=controls)

        if self._negotiator is not None and self._track is not None:
            await self._negotiator.apply_manual_controls(
                self._track, changes.keys(), manual=self._manual_mode
            )
        return controls

    # =========================================================================
    # 캡처
    # =========================================================================

    async def capture(self, quality: Optional[float] = None, rotation: int = 0) -> OutputImage:
        """
        현재 모드로 한 장을 캡처합니다.

        파라미터:
            quality: JPEG 품질 (0~1). None이면 품질 정책으로 결정
            rotation: 장치 회전 각도 (0/90/180/270)

        예외:
            CameraNotReadyError: 라이브 프레임이 없음
            FusionError: 합성 실패 (스칼라 백엔드까지 실패)
            EncodingError: JPEG 인코딩 실패
        """
        rotation = _normalize_rotation(rotation)
        mode = self._settings.mode
        started = time.perf_counter()

        try:
            if mode == "photo":
                output = await self._capture_photo(quality, rotation)
            elif mode == "night":
                output = await self._capture_night(quality, rotation)
            else:
                output = await self._capture_long_exposure(quality, rotation)
        except Exception:
            if self._metrics is not None:
                self._metrics.record_capture_failure()
            logger.error(f"캡처 실패: mode={mode}", exc_info=True)
            raise

        self._record(output, started)
        return output

    async def burst_capture(
        self,
        count: int,
        quality: Optional[float] = None,
        rotation: int = 0,
    ) -> OutputImage:
        """
        연속 프레임 count장을 평균 합성합니다.

        프레임 리더는 첫 호출 시 소스 기능을 한 번 조사하여 정하고 이후 재사용합니다.
        """
        if count < 1:
            raise ValueError(f"count는 1 이상이어야 합니다. 입력값: {count}")
        rotation = _normalize_rotation(rotation)
        started = time.perf_counter()

        if self._reader is None:
            self._reader = probe_frame_reader(self._source, self._tick_interval_ms)

        try:
            frames = await self._reader.read(count)
            if not frames:
                raise CameraNotReadyError("버스트 캡처용 프레임을 받지 못했습니다")
            result = await self._timed_merge(self._engine.average_merge(frames))
            notes = ["burst", f"reader:{self._reader.kind}"] + _failure_notes(result)
            output = self._finish(
                result.pixels,
                mode="burst",
                algorithm=result.algorithm,
                frame_count=result.frame_count,
                quality=quality,
                rotation=rotation,
                backend=result.backend,
                notes=notes,
            )
        except Exception:
            if self._metrics is not None:
                self._metrics.record_capture_failure()
            logger.error(f"버스트 캡처 실패: count={count}", exc_info=True)
            raise

        self._record(output, started)
        return output

    async def close(self) -> None:
        """버스트 리더 자원을 해제합니다."""
        if self._reader is not None:
            await self._reader.close()

    # -------------------------------------------------------------------------
    # 모드별 경로
    # -------------------------------------------------------------------------

    async def _capture_photo(self, quality: Optional[float], rotation: int) -> OutputImage:
        take_photo = getattr(self._source, "take_photo", None)
        if callable(take_photo):
            return await self._capture_native(take_photo, quality, rotation)

        frame = self._grab_live()
        return self._finish(
            frame.pixels,
            mode="photo",
            algorithm=ALGORITHM_SINGLE_FRAME,
            frame_count=1,
            quality=quality,
            rotation=rotation,
        )

    async def _capture_native(self, take_photo, quality: Optional[float], rotation: int) -> OutputImage:
        """
        네이티브 단일 촬영 경로입니다.

        픽셀 회전 없이 Orientation 코드만 기록합니다 (deferred).
        """
        width, height = self._source.width, self._source.height
        megapixels = width * height / 1_000_000 if width and height else _DEFAULT_MEGAPIXELS
        effective_quality = quality if quality is not None else decide_jpeg_quality(
            megapixels, "photo", self._settings.quality_hint
        )

        data = await take_photo()
        code = orientation_code(rotation)
        stamped = stamp_orientation(data, rotation)
        logger.info(f"네이티브 촬영 완료: {len(stamped)} bytes, orientation={code}")

        return OutputImage(
            data=stamped,
            orientation_code=code,
            mode="photo",
            provenance=Provenance(
                algorithm=ALGORITHM_NATIVE_PHOTO,
                frame_count=1,
                quality=effective_quality,
                width=width,
                height=height,
            ),
            orientation=OrientationInfo(
                device_orientation=rotation,
                applied_rotation=0,
                deferred=True,
            ),
        )

    async def _capture_night(self, quality: Optional[float], rotation: int) -> OutputImage:
        available = len(self._ring_buffer)
        if available == 0:
            logger.warning("야간 모드: 버퍼에 프레임이 없어 라이브 프레임 1장으로 대체")
            frame = self._grab_live()
            return self._finish(
                frame.pixels,
                mode="night",
                algorithm=ALGORITHM_SINGLE_FRAME,
                frame_count=1,
                quality=quality,
                rotation=rotation,
                notes=[NOTE_NO_BUFFERED_FRAMES],
            )

        count = min(self._settings.frame_count, available, MAX_NIGHT_FRAMES)
        frames = self._ring_buffer.snapshot(count)
        hdr = self._settings.hdr_enabled

        if hdr:
            result = await self._timed_merge(self._engine.tone_map_merge(frames, rotation))
        else:
            result = await self._timed_merge(self._engine.average_merge(frames))

        algorithm = result.algorithm if hdr or result.frame_count > 1 else ALGORITHM_SINGLE_FRAME
        return self._finish(
            result.pixels,
            mode="night",
            algorithm=algorithm,
            frame_count=result.frame_count,
            quality=quality,
            rotation=rotation,
            hdr_applied=hdr,
            backend=result.backend,
            notes=_failure_notes(result),
            pre_rotated=hdr,
        )

    async def _capture_long_exposure(self, quality: Optional[float], rotation: int) -> OutputImage:
        interval_s = self._interval_ms / 1000.0
        samples = max(1, math.ceil(self._settings.exposure_seconds * 1000 / self._interval_ms))
        logger.info(
            f"장노출 샘플링 시작: {samples}장, 주기 {self._interval_ms}ms "
            f"(노출 {self._settings.exposure_seconds}s)"
        )

        frames = []
        for index in range(samples):
            frame = grab_frame(self._source)
            if frame is not None:
                frames.append(frame)
            if index < samples - 1:
                await asyncio.sleep(interval_s)

        if not frames:
            raise CameraNotReadyError("장노출 샘플링 중 프레임을 받지 못했습니다")

        result = await self._timed_merge(self._engine.weighted_merge(frames))
        return self._finish(
            result.pixels,
            mode="longExposure",
            algorithm=result.algorithm,
            frame_count=result.frame_count,
            quality=quality,
            rotation=rotation,
            backend=result.backend,
            notes=_failure_notes(result),
        )

    # -------------------------------------------------------------------------
    # 공통 처리
    # -------------------------------------------------------------------------

    def _grab_live(self):
        frame = grab_frame(self._source)
        if frame is None:
            raise CameraNotReadyError("프레임 소스가 준비되지 않았습니다")
        return frame

    async def _timed_merge(self, merge_coro) -> FusionResult:
        started = time.perf_counter()
        result = await merge_coro
        if self._metrics is not None:
            self._metrics.record_stage_latency("fusion", (time.perf_counter() - started) * 1000)
        return result

    def _finish(
        self,
        pixels: np.ndarray,
        mode: str,
        algorithm: str,
        frame_count: int,
        quality: Optional[float],
        rotation: int,
        hdr_applied: bool = False,
        backend: Optional[str] = None,
        notes: Optional[list[str]] = None,
        pre_rotated: bool = False,
    ) -> OutputImage:
        """
        회전 → 품질 결정 → JPEG 인코딩 → Orientation 기록을 수행합니다.

        픽셀을 회전했으므로 Orientation 코드는 항상 1(정방향)입니다.
        """
        if not pre_rotated:
            pixels = FusionEngine.rotate_frame(pixels, rotation)

        height, width = pixels.shape[:2]
        effective_quality = quality if quality is not None else decide_jpeg_quality(
            width * height / 1_000_000, self._settings.mode, self._settings.quality_hint
        )

        started = time.perf_counter()
        data = stamp_orientation(encode_jpeg(pixels, effective_quality), 0)
        if self._metrics is not None:
            self._metrics.record_stage_latency("encode", (time.perf_counter() - started) * 1000)

        logger.info(
            f"캡처 완료: mode={mode}, algorithm={algorithm}, frames={frame_count}, "
            f"{width}x{height}, quality={effective_quality:.2f}, backend={backend}"
        )
        return OutputImage(
            data=data,
            orientation_code=orientation_code(0),
            mode=mode,
            provenance=Provenance(
                algorithm=algorithm,
                frame_count=frame_count,
                hdr_applied=hdr_applied,
                backend=backend,
                notes=list(notes or []),
                quality=effective_quality,
                width=width,
                height=height,
            ),
            orientation=OrientationInfo(
                device_orientation=rotation,
                applied_rotation=rotation,
                deferred=False,
            ),
        )

    def _record(self, output: OutputImage, started: float) -> None:
        if self._metrics is None:
            return
        prov = output.provenance
        self._metrics.record_capture(
            mode=output.mode,
            algorithm=prov.algorithm,
            frame_count=prov.frame_count,
            backend=prov.backend,
            fell_back=any(note.startswith("fallback:") for note in prov.notes),
        )
        self._metrics.record_stage_latency(
            "capture_total", (time.perf_counter() - started) * 1000
        )


def _normalize_rotation(rotation: int) -> int:
    normalized = int(rotation) % 360
    if normalized not in (0, 90, 180, 270):
        raise ValueError(f"rotation은 0/90/180/270 중 하나여야 합니다. 입력값: {rotation}")
    return normalized


def _failure_notes(result: FusionResult) -> list[str]:
    return [f"fallback:{failure.backend}:{failure.reason}" for failure in result.failures]
