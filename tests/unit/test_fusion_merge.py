"""
합성 커널 / 백엔드 단위 테스트

검증 조건:
- 동일 값 V 프레임 N장의 평균 합성과 누적+톤 매핑 결과는 상수 프레임
  (V ∈ {0, 128, 255}, 톤 매핑 상수 = round(255·(l/(1+l))^(1/2.2)), l=(V/255)^2.2)
- 가중 장노출 합성은 1장이면 입력을 그대로 반환
- 가중치 1/(i+1): 가장 오래된 프레임의 영향이 가장 큼
- 병렬 / 스칼라 백엔드 결과는 채널당 1 이내로 일치
- 톤 매핑 중 회전은 numpy.rot90과 같은 기하
"""

from __future__ import annotations

import numpy as np
import pytest

from src.capture import make_frame
from src.fusion import BackendUnavailableError, MergeKind, MergeRequest
from src.fusion import merge
from src.fusion.backends import ComputeDevice, ParallelBackend, ScalarBackend

from image_helpers import tone_map_constant


# =============================================================================
# 테스트 헬퍼
# =============================================================================

def _constant_frame(value: int, width: int = 6, height: int = 4):
    return make_frame(np.full((height, width, 4), value, dtype=np.uint8))


def _random_frames(count: int, width: int = 7, height: int = 5, seed: int = 3):
    rng = np.random.default_rng(seed)
    return [
        make_frame(rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8))
        for _ in range(count)
    ]


@pytest.fixture
def device():
    compute = ComputeDevice(workers=2)
    yield compute
    compute.shutdown()


# =============================================================================
# 상수 프레임 성질
# =============================================================================

class TestConstantFrames:
    @pytest.mark.parametrize("value", [0, 128, 255])
    @pytest.mark.parametrize("count", [1, 3, 8])
    def test_average_constant(self, value, count):
        frames = [_constant_frame(value) for _ in range(count)]
        result = merge.average_scalar(frames)
        assert np.all(result == value)

    @pytest.mark.parametrize("value,expected", [(0, 0), (128, 117), (255, 186)])
    def test_tone_map_constant_values(self, value, expected):
        assert tone_map_constant(value) == expected

    @pytest.mark.parametrize("value", [0, 128, 255])
    @pytest.mark.parametrize("count", [1, 4])
    def test_tone_map_scalar_constant(self, value, count):
        frames = [_constant_frame(value) for _ in range(count)]
        result = merge.tone_map_scalar(frames)

        expected = tone_map_constant(value)
        assert np.all(result[..., :3] == expected)
        assert np.all(result[..., 3] == 255)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [0, 128, 255])
    async def test_parallel_constant(self, device, value):
        backend = ParallelBackend(device, band_rows=2)
        frames = [_constant_frame(value) for _ in range(5)]

        averaged = await backend.merge(MergeRequest(MergeKind.AVERAGE, frames))
        tone_mapped = await backend.merge(MergeRequest(MergeKind.TONE_MAP, frames))

        assert np.all(averaged == value)
        assert np.all(tone_mapped[..., :3] == tone_map_constant(value))
        assert np.all(tone_mapped[..., 3] == 255)


# =============================================================================
# 가중 장노출 합성
# =============================================================================

class TestWeightedMerge:
    def test_single_frame_identity(self):
        frames = _random_frames(1)
        assert np.array_equal(merge.weighted_scalar(frames), frames[0].pixels)
        assert np.array_equal(
            merge.weighted_rows([frames[0].pixels]), frames[0].pixels
        )

    def test_oldest_frame_weighs_most(self):
        # w = [1, 1/2] → (0·1 + 255·0.5) / 1.5 = 85
        frames = [_constant_frame(0), _constant_frame(255)]
        result = merge.weighted_scalar(frames)
        assert np.all(result == 85)

    def test_three_frames(self):
        # w = [1, 1/2, 1/3], Σw = 11/6 → (30 + 30 + 30) / (11/6) ≈ 49.09
        frames = [_constant_frame(30), _constant_frame(60), _constant_frame(90)]
        assert np.all(merge.weighted_scalar(frames) == 49)
        assert np.all(merge.weighted_rows([f.pixels for f in frames]) == 49)


# =============================================================================
# 반올림 규칙
# =============================================================================

class TestRounding:
    def test_average_half_to_even(self):
        # (1 + 2) / 2 = 1.5 → 2, (2 + 3) / 2 = 2.5 → 2
        a = merge.average_scalar([_constant_frame(1), _constant_frame(2)])
        b = merge.average_scalar([_constant_frame(2), _constant_frame(3)])
        assert np.all(a == 2)
        assert np.all(b == 2)

        rows = merge.average_rows([_constant_frame(2).pixels, _constant_frame(3).pixels])
        assert np.all(rows == 2)


# =============================================================================
# 백엔드 일치
# =============================================================================

class TestBackendParity:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", list(MergeKind))
    async def test_parallel_matches_scalar(self, device, kind):
        frames = _random_frames(4)
        request = MergeRequest(kind, frames)

        parallel = await ParallelBackend(device, band_rows=2).merge(request)
        scalar = await ScalarBackend().merge(request)

        assert parallel.shape == scalar.shape
        diff = np.abs(parallel.astype(np.int16) - scalar.astype(np.int16))
        assert diff.max() <= 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rotation", [90, 180, 270])
    async def test_rotated_tone_map_parity(self, device, rotation):
        frames = _random_frames(3)
        request = MergeRequest(MergeKind.TONE_MAP, frames, rotation=rotation)

        parallel = await ParallelBackend(device, band_rows=3).merge(request)
        scalar = await ScalarBackend().merge(request)

        diff = np.abs(parallel.astype(np.int16) - scalar.astype(np.int16))
        assert diff.max() <= 1


# =============================================================================
# 회전
# =============================================================================

class TestRotation:
    @pytest.mark.parametrize("rotation", [0, 90, 180, 270])
    def test_tone_map_rotation_matches_rot90(self, rotation):
        frames = _random_frames(2, width=5, height=3)
        unrotated = merge.tone_map_scalar(frames, 0)
        rotated = merge.tone_map_scalar(frames, rotation)

        assert np.array_equal(rotated, np.rot90(unrotated, k=rotation // 90))

    def test_rotate_pixels_swaps_axes(self):
        pixels = np.zeros((3, 5, 4), dtype=np.uint8)
        assert merge.rotate_pixels(pixels, 90).shape == (5, 3, 4)
        assert merge.rotate_pixels(pixels, 180).shape == (3, 5, 4)
        assert merge.rotate_pixels(pixels, 0) is pixels

    def test_rotate_pixels_counter_clockwise(self):
        pixels = np.zeros((2, 3, 4), dtype=np.uint8)
        pixels[0, 2] = 255  # 오른쪽 위
        rotated = merge.rotate_pixels(pixels, 90)
        # 반시계 90도: 오른쪽 위 → 왼쪽 위
        assert rotated[0, 0, 0] == 255

    @pytest.mark.parametrize("degrees", [45, 100, -30])
    def test_invalid_rotation(self, degrees):
        with pytest.raises(ValueError):
            merge.quarter_turns(degrees)

    def test_negative_quarter_turn(self):
        assert merge.quarter_turns(-90) == 3


# =============================================================================
# ComputeDevice
# =============================================================================

class TestComputeDevice:
    def test_lazy_creation(self):
        compute = ComputeDevice(workers=3)
        assert compute.workers == 3
        assert not compute.is_started
        compute.shutdown()
        assert compute.is_closed

    def test_auto_workers(self):
        compute = ComputeDevice()
        assert 1 <= compute.workers <= 8

    @pytest.mark.asyncio
    async def test_run_bands_preserves_row_order(self, device):
        def kernel(start: int, end: int) -> np.ndarray:
            return np.arange(start, end).reshape(-1, 1)

        result = await device.run_bands(kernel, height=10, band_rows=3)

        assert device.is_started
        assert result.ravel().tolist() == list(range(10))

    @pytest.mark.asyncio
    async def test_closed_device_unavailable(self):
        compute = ComputeDevice(workers=1)
        compute.shutdown()
        backend = ParallelBackend(compute)

        assert backend.available() == "compute device closed"
        with pytest.raises(BackendUnavailableError):
            await compute.run_bands(lambda s, e: np.zeros((e - s, 1)), 4, 2)

    def test_disabled_backend_reports_reason(self, device):
        assert ParallelBackend(device, enabled=False).available() == "disabled by config"
