"""
파일/합성 모의 장치 단위 테스트

검증 조건:
- 제약 적용 전에는 width/height가 0 (프레임 미준비)
- ideal은 capability 범위로 clamp, exact 범위 밖은 ConstraintApplyError
- aspect_ratio만 주어지면 height를 width/aspect로 계산
- draw_into는 적용 해상도로 리사이즈한 RGBA(alpha=255)를 기록
- FileFrameSource: 영상 파일 디코딩, 반복 재생, open_stream 스트림
- create_frame_source: 설정 모드별 소스 생성
"""

from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np
import pytest
from pydantic import ValidationError

from src.capture.file_frame_source import (
    FileFrameSource,
    FrameSourceError,
    SyntheticFrameSource,
    create_frame_source,
)
from src.config.schema import AppConfig
from src.negotiation import ConstraintApplyError, ConstraintSet, ConstraintValue


# =============================================================================
# 테스트 헬퍼
# =============================================================================

def _make_video(tmp_path: Path, frames: int = 5, width: int = 64, height: int = 48) -> Path:
    """단색 프레임으로 이루어진 MJPG AVI 파일을 생성합니다."""
    video_path = tmp_path / "sample.avi"
    writer = cv2.VideoWriter(
        str(video_path), cv2.VideoWriter_fourcc(*"MJPG"), 100.0, (width, height)
    )
    for index in range(frames):
        bgr = np.zeros((height, width, 3), dtype=np.uint8)
        bgr[..., 2] = 40 * (index + 1)  # R 채널 (BGR 순서)
        writer.write(bgr)
    writer.release()
    return video_path


def _size(width: int, height: int) -> ConstraintSet:
    return ConstraintSet(width=ConstraintValue(ideal=width), height=ConstraintValue(ideal=height))


def _make_config(**overrides) -> AppConfig:
    """테스트용 AppConfig를 생성합니다."""
    return AppConfig(**overrides)


# =============================================================================
# 모의 장치 제약 해석
# =============================================================================

class TestConstraintResolution:
    def test_not_ready_before_constraints(self):
        source = SyntheticFrameSource(max_width=1920, max_height=1080)
        assert (source.width, source.height) == (0, 0)

    @pytest.mark.asyncio
    async def test_ideal_clamped_to_capabilities(self):
        source = SyntheticFrameSource(max_width=1280, max_height=720)

        await source.apply_constraints(_size(4096, 2160))

        assert (source.width, source.height) == (1280, 720)
        settings = source.get_settings()
        assert settings.aspect_ratio == pytest.approx(16 / 9)
        assert settings.device_id == "sim-0"

    @pytest.mark.asyncio
    async def test_exact_out_of_range_rejected(self):
        source = SyntheticFrameSource(max_width=1280, max_height=720)
        constraints = ConstraintSet(width=ConstraintValue(exact=1920), height=ConstraintValue(ideal=720))

        with pytest.raises(ConstraintApplyError) as exc_info:
            await source.apply_constraints(constraints)

        assert exc_info.value.constraint == "width"
        assert source.apply_count == 0

    @pytest.mark.asyncio
    async def test_aspect_ratio_derives_height(self):
        source = SyntheticFrameSource(max_width=3840, max_height=2160)
        constraints = ConstraintSet(
            width=ConstraintValue(ideal=1280),
            aspect_ratio=ConstraintValue(ideal=4 / 3),
        )

        await source.apply_constraints(constraints)

        assert (source.width, source.height) == (1280, 960)

    @pytest.mark.asyncio
    async def test_unsatisfiable_range(self):
        source = SyntheticFrameSource(max_width=1280, max_height=720)
        constraints = ConstraintSet(
            width=ConstraintValue(min=2000),
            height=ConstraintValue(ideal=720),
        )
        with pytest.raises(ConstraintApplyError):
            await source.apply_constraints(constraints)

    @pytest.mark.asyncio
    async def test_frame_rate_range(self):
        source = SyntheticFrameSource(max_width=1280, max_height=720, max_frame_rate=30)
        constraints = _size(1280, 720)
        constraints.frame_rate = ConstraintValue(ideal=60, max=60)

        await source.apply_constraints(constraints)

        assert source.get_settings().frame_rate == 30.0

    @pytest.mark.asyncio
    async def test_small_device_capability_range(self):
        """최대 해상도가 기본 최소값(160x120)보다 작은 장치도 제약을 받아들인다."""
        source = SyntheticFrameSource(max_width=64, max_height=48)
        caps = source.get_capabilities()

        assert (caps.width.min, caps.width.max) == (64, 64)
        assert (caps.height.min, caps.height.max) == (48, 48)
        assert caps.aspect_ratio.min <= 64 / 48 <= caps.aspect_ratio.max

        await source.apply_constraints(_size(64, 48))

        assert (source.width, source.height) == (64, 48)

    @pytest.mark.asyncio
    async def test_small_device_clamps_larger_request(self):
        source = SyntheticFrameSource(max_width=100, max_height=80)

        await source.apply_constraints(_size(1920, 1080))

        assert (source.width, source.height) == (100, 80)
        # 기본 최소값보다 큰 축은 기존 최소값 유지
        assert source.get_capabilities().width.min == 100
        assert SyntheticFrameSource(max_width=640, max_height=80).get_capabilities().width.min == 160

    def test_non_positive_max_rejected_by_config(self):
        with pytest.raises(ValidationError):
            _make_config(capture={"source": {"max_width": 0}})
        with pytest.raises(ValidationError):
            _make_config(capture={"source": {"max_height": -1}})

    def test_get_settings_returns_copy(self):
        source = SyntheticFrameSource(max_width=1280, max_height=720)
        settings = source.get_settings()
        settings.width = 999
        assert source.width == 0


# =============================================================================
# 합성 소스
# =============================================================================

class TestSyntheticSource:
    @pytest.mark.asyncio
    async def test_draw_into_resizes(self):
        source = SyntheticFrameSource(max_width=1920, max_height=1080)
        await source.apply_constraints(_size(640, 360))

        buffer = np.zeros((source.height, source.width, 4), dtype=np.uint8)
        source.draw_into(buffer)

        assert np.all(buffer[..., 3] == 255)
        # R 채널은 가로 그라디언트
        assert buffer[180, 10, 0] < buffer[180, 630, 0]
        # G 채널은 세로 그라디언트
        assert buffer[10, 320, 1] < buffer[350, 320, 1]

    @pytest.mark.asyncio
    async def test_bar_moves_between_frames(self):
        source = SyntheticFrameSource(max_width=320, max_height=180)
        await source.apply_constraints(_size(320, 180))
        first = np.zeros((180, 320, 4), dtype=np.uint8)
        second = np.zeros_like(first)

        source.draw_into(first)
        source.draw_into(second)

        assert not np.array_equal(first[..., 2], second[..., 2])


# =============================================================================
# 파일 소스
# =============================================================================

class TestFileSource:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FrameSourceError):
            FileFrameSource(str(tmp_path / "none.avi"), max_width=64, max_height=48)

    @pytest.mark.asyncio
    async def test_draw_decoded_frame(self, tmp_path):
        video = _make_video(tmp_path)
        source = FileFrameSource(str(video), max_width=64, max_height=48)
        await source.apply_constraints(_size(64, 48))

        buffer = np.zeros((48, 64, 4), dtype=np.uint8)
        source.draw_into(buffer)
        source.close()

        # 첫 프레임 R=40 (MJPG 손실 허용)
        assert abs(int(buffer[24, 32, 0]) - 40) <= 6
        assert int(buffer[24, 32, 2]) <= 6
        assert np.all(buffer[..., 3] == 255)

    @pytest.mark.asyncio
    async def test_open_stream_loops(self, tmp_path):
        video = _make_video(tmp_path, frames=3)
        source = FileFrameSource(str(video), max_width=64, max_height=48, loop=True)
        await source.apply_constraints(_size(32, 24))

        stream = source.open_stream()
        frames = [await stream.__anext__() for _ in range(5)]
        await stream.aclose()
        source.close()

        assert all(f.pixels.shape == (24, 32, 4) for f in frames)
        reds = [int(f.pixels[12, 16, 0]) for f in frames]
        # 3장 이후 처음부터 다시 재생
        assert abs(reds[3] - reds[0]) <= 6
        assert reds[1] > reds[0]


# =============================================================================
# 팩토리
# =============================================================================

class TestCreateFrameSource:
    def test_synthetic_default(self):
        source = create_frame_source(_make_config())
        assert isinstance(source, SyntheticFrameSource)
        assert source.get_capabilities().width.max == 3840

    def test_file_mode_requires_path(self):
        config = _make_config(system={"mode": "file"})
        with pytest.raises(FrameSourceError):
            create_frame_source(config)

    def test_file_mode(self, tmp_path):
        video = _make_video(tmp_path)
        config = _make_config(
            system={"mode": "file"},
            capture={
                "device_id": "file-cam",
                "source": {"video_path": str(video), "max_width": 64, "max_height": 48},
            },
        )

        source = create_frame_source(config)

        assert isinstance(source, FileFrameSource)
        assert source.get_settings().device_id == "file-cam"
        source.close()
