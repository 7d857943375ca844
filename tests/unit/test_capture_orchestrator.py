"""
CaptureOrchestrator 단위 테스트

검증 조건:
- night, frame_count=8, HDR 꺼짐, 버퍼 3장 → 3장 평균 합성, provenance frame_count=3 / "average-merge"
- night 버퍼 비어있음 → 라이브 1장 + "no-buffered-frames" 기록
- night HDR → 누적 톤 매핑, 회전은 합성 중 적용
- photo: 라이브 1장 회전 후 Orientation 1 기록, 네이티브 촬영은 회전 지연(코드만 기록)
- longExposure: ceil(노출·1000/주기)장 샘플링 후 가중 합성
- burst: 한 번 선택한 리더로 N장 평균 합성
- 백엔드 대체 기록, 품질 정책, 설정 검증, 메트릭 기록
"""

from __future__ import annotations

import numpy as np
import pytest

from src.capture import make_frame
from src.capture.file_frame_source import SyntheticFrameSource
from src.capture.ring_buffer import FrameRingBuffer
from src.config.schema import AppConfig
from src.fusion.backends import ComputeDevice
from src.fusion.fusion_engine import FusionEngine
from src.metadata.orientation_codec import read_orientation
from src.metrics.metrics_store import MetricsStore
from src.negotiation.device_negotiator import DeviceNegotiator
from src.negotiation.profile_cache import ProfileCache
from src.orchestrator.capture_orchestrator import (
    NOTE_NO_BUFFERED_FRAMES,
    CameraNotReadyError,
    CaptureOrchestrator,
)
from src.orchestrator.image_encoder import encode_jpeg

from image_helpers import decode_jpeg


# =============================================================================
# 테스트 헬퍼
# =============================================================================

def _make_config(parallel_enabled: bool = True, **orchestrator) -> AppConfig:
    """테스트용 AppConfig를 생성합니다."""
    return AppConfig(**{
        "capture": {"tick_interval_ms": 1},
        "fusion": {"workers": 2, "band_rows": 2, "parallel_enabled": parallel_enabled},
        "orchestrator": {"long_exposure_interval_ms": 25, **orchestrator},
    })


class _PatternSource:
    """draw_into 호출마다 밝기가 10씩 올라가는 8x6 소스"""

    def __init__(self, width: int = 8, height: int = 6) -> None:
        self.width = width
        self.height = height
        self.draws = 0

    def draw_into(self, buffer: np.ndarray) -> None:
        self.draws += 1
        buffer[..., :3] = (self.draws * 10) % 256
        buffer[..., 3] = 255


class _NativeSource(_PatternSource):
    """네이티브 단일 촬영을 제공하는 소스"""

    def __init__(self) -> None:
        super().__init__()
        self.photos = 0

    async def take_photo(self) -> bytes:
        self.photos += 1
        pixels = np.full((6, 8, 4), 90, dtype=np.uint8)
        return encode_jpeg(pixels, 0.9)


def _buffered_frame(value: int, width: int = 8, height: int = 6):
    pixels = np.full((height, width, 4), value, dtype=np.uint8)
    pixels[..., 3] = 255
    return make_frame(pixels)


@pytest.fixture
def device():
    compute = ComputeDevice(workers=2)
    yield compute
    compute.shutdown()


def _build(config, device, source=None, metrics=None, **kwargs):
    source = source if source is not None else _PatternSource()
    buffer = FrameRingBuffer(config)
    engine = FusionEngine(config, device)
    orchestrator = CaptureOrchestrator(
        config, source, buffer, engine, metrics=metrics, **kwargs
    )
    return orchestrator, buffer


# =============================================================================
# 모드 / 설정
# =============================================================================

class TestModeState:
    def test_default_mode_photo(self, device):
        orchestrator, _ = _build(_make_config(), device)
        assert orchestrator.settings.mode == "photo"
        assert orchestrator.settings.frame_count == 1

    def test_set_mode_resets_frame_count(self, device):
        orchestrator, _ = _build(_make_config(), device)

        orchestrator.set_mode("night")
        assert orchestrator.settings.frame_count == 8

        orchestrator.set_mode("longExposure")
        assert orchestrator.settings.frame_count == 1

    def test_default_mode_from_config(self, device):
        orchestrator, _ = _build(_make_config(default_mode="night", night_frame_count=4), device)
        assert orchestrator.settings.mode == "night"
        assert orchestrator.settings.frame_count == 4

    def test_invalid_mode(self, device):
        orchestrator, _ = _build(_make_config(), device)
        with pytest.raises(ValueError):
            orchestrator.set_mode("video")

    def test_frame_count_clamped_to_mode_max(self, device):
        orchestrator, _ = _build(_make_config(), device)

        orchestrator.update_settings(mode="night", frame_count=50)
        assert orchestrator.settings.frame_count == 32

        orchestrator.update_settings(mode="photo", frame_count=5)
        assert orchestrator.settings.frame_count == 1

    def test_update_settings_validation(self, device):
        orchestrator, _ = _build(_make_config(), device)
        with pytest.raises(ValueError):
            orchestrator.update_settings(unknown=1)
        with pytest.raises(ValueError):
            orchestrator.update_settings(frame_count=0)
        with pytest.raises(ValueError):
            orchestrator.update_settings(quality_hint="ultra")
        with pytest.raises(ValueError):
            orchestrator.update_settings(exposure_seconds=-1)

    def test_exposure_seconds_none_rejected(self, device):
        orchestrator, _ = _build(_make_config(), device)

        with pytest.raises(ValueError):
            orchestrator.update_settings(exposure_seconds=None)

        # 거부된 갱신은 이전 값을 유지
        assert orchestrator.settings.exposure_seconds == 1.0

    def test_mode_config(self):
        night = CaptureOrchestrator.mode_config("night")
        assert night.max_frame_count == 32
        assert night.default_frame_count == 8
        with pytest.raises(ValueError):
            CaptureOrchestrator.mode_config("burst")


# =============================================================================
# night
# =============================================================================

class TestNightCapture:
    @pytest.mark.asyncio
    async def test_three_buffered_frames_of_eight_requested(self, device):
        orchestrator, buffer = _build(_make_config(), device)
        orchestrator.update_settings(mode="night", frame_count=8, hdr_enabled=False)
        for value in (30, 60, 90):
            buffer.append(_buffered_frame(value))

        output = await orchestrator.capture()

        prov = output.provenance
        assert prov.frame_count == 3
        assert prov.algorithm == "average-merge"
        assert prov.backend == "parallel"
        assert not prov.hdr_applied
        assert prov.notes == []
        assert output.mode == "night"

        decoded = decode_jpeg(output.data)
        assert decoded.shape == (6, 8, 4)
        assert abs(int(decoded[3, 4, 0]) - 60) <= 3

    @pytest.mark.asyncio
    async def test_empty_buffer_uses_live_frame(self, device):
        source = _PatternSource()
        orchestrator, _ = _build(_make_config(), device, source=source)
        orchestrator.set_mode("night")

        output = await orchestrator.capture()

        assert output.provenance.algorithm == "single-frame"
        assert output.provenance.frame_count == 1
        assert output.provenance.notes == [NOTE_NO_BUFFERED_FRAMES]
        assert source.draws == 1

    @pytest.mark.asyncio
    async def test_single_buffered_frame_is_single_frame(self, device):
        orchestrator, buffer = _build(_make_config(), device)
        orchestrator.set_mode("night")
        buffer.append(_buffered_frame(100))

        output = await orchestrator.capture()

        assert output.provenance.algorithm == "single-frame"
        assert output.provenance.frame_count == 1

    @pytest.mark.asyncio
    async def test_uses_most_recent_frames(self, device):
        orchestrator, buffer = _build(_make_config(), device)
        orchestrator.update_settings(mode="night", frame_count=2)
        for value in (0, 0, 200, 200):
            buffer.append(_buffered_frame(value))

        output = await orchestrator.capture()

        assert output.provenance.frame_count == 2
        decoded = decode_jpeg(output.data)
        assert abs(int(decoded[3, 4, 0]) - 200) <= 3

    @pytest.mark.asyncio
    async def test_hdr_rotates_during_tone_map(self, device):
        orchestrator, buffer = _build(_make_config(), device)
        orchestrator.update_settings(mode="night", hdr_enabled=True)
        for _ in range(4):
            buffer.append(_buffered_frame(128))

        output = await orchestrator.capture(rotation=90)

        prov = output.provenance
        assert prov.algorithm == "accumulate-tone-map-v1"
        assert prov.hdr_applied
        assert (prov.width, prov.height) == (6, 8)
        assert output.orientation.applied_rotation == 90
        assert output.orientation_code == 1
        assert read_orientation(output.data) == 1

        decoded = decode_jpeg(output.data)
        assert decoded.shape == (8, 6, 4)
        assert abs(int(decoded[4, 3, 0]) - 117) <= 3

    @pytest.mark.asyncio
    async def test_night_quality(self, device):
        orchestrator, buffer = _build(_make_config(), device)
        orchestrator.set_mode("night")
        buffer.append(_buffered_frame(10))
        buffer.append(_buffered_frame(20))

        output = await orchestrator.capture()

        assert output.provenance.quality == pytest.approx(0.92)

    @pytest.mark.asyncio
    async def test_fallback_recorded_in_notes_and_metrics(self, device):
        metrics = MetricsStore()
        orchestrator, buffer = _build(_make_config(parallel_enabled=False), device, metrics=metrics)
        orchestrator.set_mode("night")
        buffer.append(_buffered_frame(10))
        buffer.append(_buffered_frame(20))

        output = await orchestrator.capture()

        assert output.provenance.backend == "scalar"
        assert output.provenance.notes == ["fallback:parallel:unavailable"]
        stats = metrics.get_capture_stats()
        assert stats.backend_fallbacks == 1
        assert stats.last_backend == "scalar"


# =============================================================================
# photo
# =============================================================================

class TestPhotoCapture:
    @pytest.mark.asyncio
    async def test_live_frame_rotated(self, device):
        orchestrator, _ = _build(_make_config(), device)

        output = await orchestrator.capture(rotation=270)

        prov = output.provenance
        assert prov.algorithm == "single-frame"
        assert prov.backend is None
        assert (prov.width, prov.height) == (6, 8)
        assert prov.quality == pytest.approx(0.88)
        assert output.orientation_code == 1
        assert output.orientation.device_orientation == 270
        assert output.orientation.applied_rotation == 270
        assert not output.orientation.deferred
        assert read_orientation(output.data) == 1

    @pytest.mark.asyncio
    async def test_explicit_quality(self, device):
        orchestrator, _ = _build(_make_config(), device)
        output = await orchestrator.capture(quality=0.5)
        assert output.provenance.quality == 0.5

    @pytest.mark.asyncio
    async def test_speed_hint(self, device):
        orchestrator, _ = _build(_make_config(quality_hint="speed"), device)
        output = await orchestrator.capture()
        assert output.provenance.quality == pytest.approx(0.85)

    @pytest.mark.asyncio
    async def test_not_ready_source(self, device):
        metrics = MetricsStore()
        orchestrator, _ = _build(
            _make_config(), device, source=_PatternSource(0, 0), metrics=metrics
        )

        with pytest.raises(CameraNotReadyError):
            await orchestrator.capture()

        assert metrics.get_capture_stats().failed_captures == 1

    @pytest.mark.asyncio
    async def test_native_photo_defers_rotation(self, device):
        source = _NativeSource()
        orchestrator, _ = _build(_make_config(), device, source=source)

        output = await orchestrator.capture(rotation=90)

        assert source.photos == 1
        assert source.draws == 0
        assert output.provenance.algorithm == "native-photo"
        assert output.orientation_code == 6
        assert output.orientation.deferred
        assert output.orientation.applied_rotation == 0
        assert read_orientation(output.data) == 6
        # 픽셀은 회전하지 않음
        assert decode_jpeg(output.data).shape == (6, 8, 4)

    @pytest.mark.asyncio
    async def test_invalid_rotation(self, device):
        orchestrator, _ = _build(_make_config(), device)
        with pytest.raises(ValueError):
            await orchestrator.capture(rotation=45)


# =============================================================================
# longExposure
# =============================================================================

class TestLongExposureCapture:
    @pytest.mark.asyncio
    async def test_sample_count_and_weighted_merge(self, device):
        source = _PatternSource()
        orchestrator, _ = _build(_make_config(), device, source=source)
        orchestrator.update_settings(mode="longExposure", exposure_seconds=0.125)

        output = await orchestrator.capture()

        # 125ms / 25ms = 5장
        assert source.draws == 5
        assert output.provenance.frame_count == 5
        assert output.provenance.algorithm == "weighted-long-exposure"
        assert output.mode == "longExposure"

    @pytest.mark.asyncio
    async def test_partial_interval_rounds_up(self, device):
        source = _PatternSource()
        orchestrator, _ = _build(_make_config(), device, source=source)
        orchestrator.update_settings(mode="longExposure", exposure_seconds=0.06)

        output = await orchestrator.capture()

        assert output.provenance.frame_count == 3

    @pytest.mark.asyncio
    async def test_zero_exposure_takes_one_sample(self, device):
        source = _PatternSource()
        orchestrator, _ = _build(_make_config(), device, source=source)
        orchestrator.update_settings(mode="longExposure", exposure_seconds=0)

        output = await orchestrator.capture()

        assert output.provenance.frame_count == 1
        decoded = decode_jpeg(output.data)
        assert abs(int(decoded[3, 4, 0]) - 10) <= 3

    @pytest.mark.asyncio
    async def test_no_frames_raises(self, device):
        orchestrator, _ = _build(_make_config(), device, source=_PatternSource(0, 0))
        orchestrator.update_settings(mode="longExposure", exposure_seconds=0)
        with pytest.raises(CameraNotReadyError):
            await orchestrator.capture()


# =============================================================================
# burst
# =============================================================================

class TestBurstCapture:
    @pytest.mark.asyncio
    async def test_burst_with_tick_reader(self, device):
        source = _PatternSource()
        orchestrator, _ = _build(_make_config(), device, source=source)

        output = await orchestrator.burst_capture(3, rotation=180)

        assert output.mode == "burst"
        assert output.provenance.frame_count == 3
        assert output.provenance.algorithm == "average-merge"
        assert output.provenance.notes == ["burst", "reader:tick"]
        assert output.orientation.applied_rotation == 180
        # 10, 20, 30의 평균
        decoded = decode_jpeg(output.data)
        assert abs(int(decoded[3, 4, 0]) - 20) <= 3
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_reader_probed_once(self, device):
        orchestrator, _ = _build(_make_config(), device)
        await orchestrator.burst_capture(1)
        reader = orchestrator._reader
        await orchestrator.burst_capture(1)
        assert orchestrator._reader is reader

    @pytest.mark.asyncio
    async def test_invalid_count(self, device):
        orchestrator, _ = _build(_make_config(), device)
        with pytest.raises(ValueError):
            await orchestrator.burst_capture(0)


# =============================================================================
# 수동 제어 / 메트릭
# =============================================================================

class TestManualControls:
    @pytest.mark.asyncio
    async def test_manual_controls_applied_to_track(self, device):
        track = SyntheticFrameSource(
            max_width=1920, max_height=1080,
            supported_modes=("focus_mode", "white_balance_mode"),
        )
        negotiator = DeviceNegotiator(_make_config(), ProfileCache())
        orchestrator, _ = _build(
            _make_config(), device, negotiator=negotiator, track=track
        )
        orchestrator.set_manual_mode(True)

        controls = await orchestrator.update_manual_controls(
            focus=0.8, white_balance={"temperature": 3200}
        )

        assert controls.focus == 0.8
        assert controls.white_balance.temperature == 3200
        assert controls.white_balance.tint == 0.0
        assert orchestrator.settings.manual_controls.focus == 0.8
        assert track.modes == {"focus_mode": "manual", "white_balance_mode": "manual"}

    @pytest.mark.asyncio
    async def test_unknown_control(self, device):
        orchestrator, _ = _build(_make_config(), device)
        with pytest.raises(ValueError):
            await orchestrator.update_manual_controls(aperture=2.8)


class TestMetrics:
    @pytest.mark.asyncio
    async def test_stage_latencies_recorded(self, device):
        metrics = MetricsStore()
        orchestrator, buffer = _build(_make_config(), device, metrics=metrics)
        orchestrator.set_mode("night")
        buffer.append(_buffered_frame(10))
        buffer.append(_buffered_frame(20))

        await orchestrator.capture()

        stages = metrics.get_all_latency_stats()
        assert {"fusion", "encode", "capture_total"} <= set(stages)
        stats = metrics.get_capture_stats()
        assert stats.total_captures == 1
        assert stats.captures_by_mode == {"night": 1}
        assert stats.last_algorithm == "average-merge"
        assert stats.last_frame_count == 2

    @pytest.mark.asyncio
    async def test_output_metadata(self, device):
        orchestrator, _ = _build(_make_config(), device)
        output = await orchestrator.capture()

        metadata = output.to_metadata()

        assert metadata["mode"] == "photo"
        assert metadata["size_bytes"] == len(output.data)
        assert metadata["provenance"]["algorithm"] == "single-frame"
        assert metadata["orientation"]["deferred"] is False
