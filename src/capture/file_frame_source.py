"""
파일/합성 기반 모의 장치 모듈입니다.

역할:
- 실제 카메라 없이 전체 파이프라인을 실행하기 위한 모의 장치 제공
- FrameSource(width / height / draw_into)와 DeviceTrack(get_capabilities /
  get_settings / apply_constraints) 인터페이스를 한 객체로 구현
- 적용된 제약(해상도)에 맞춰 원본 프레임을 cv2.resize로 변환하여 출력
- FileFrameSource: cv2.VideoCapture로 영상 파일을 반복 재생, open_stream() 제공
- SyntheticFrameSource: numpy 그라디언트 패턴을 생성

사용 예시:
    >>> source = create_frame_source(config)
    >>> await source.apply_constraints(constraints)
    >>> buffer = np.zeros((source.height, source.width, 4), dtype=np.uint8)
    >>> source.draw_into(buffer)
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import AsyncIterator, Callable, Iterable, Optional

import cv2
import numpy as np

from src.capture import Frame, make_frame
from src.config.schema import AppConfig
from src.negotiation import (
    CapabilityRange,
    ConstraintApplyError,
    ConstraintSet,
    ConstraintValue,
    TrackCapabilities,
    TrackSettings,
)

# 모듈 로거
logger = logging.getLogger(__name__)

# 모의 장치 최소 해상도 / fps
_MIN_WIDTH = 160
_MIN_HEIGHT = 120
_MIN_FRAME_RATE = 1.0

# 합성 패턴 원본 해상도
_SYNTHETIC_NATIVE_WIDTH = 320
_SYNTHETIC_NATIVE_HEIGHT = 180


class FrameSourceError(Exception):
    """프레임 소스를 열거나 읽을 수 없을 때 발생하는 예외"""
    pass


class SimulatedDeviceSource(ABC):
    """
    제약 협상이 가능한 모의 장치의 공통 구현입니다.

    제약 적용 전에는 width/height가 0이므로 프레임이 준비되지 않은 상태입니다.

    파라미터:
        max_width / max_height / max_frame_rate: 장치가 보고하는 capability 상한
        device_id: 장치 식별자
        max_pixels: 지정 시 이 픽셀 수를 넘는 설정은 거부 (고해상도 거부 장치 흉내)
        reject: 제약을 받아 True를 반환하면 적용 거부 (테스트 주입용)
        supported_modes: 지원하는 수동 제어 모드 제약 이름 목록
    """

    def __init__(
        self,
        max_width: int,
        max_height: int,
        max_frame_rate: float = 60.0,
        device_id: str = "sim-0",
        max_pixels: Optional[int] = None,
        reject: Optional[Callable[[ConstraintSet], bool]] = None,
        supported_modes: Iterable[str] = (),
    ) -> None:
        # 최대값이 기본 최소 해상도보다 작은 장치는 최대값을 최소값으로 사용
        min_width = min(_MIN_WIDTH, max_width)
        min_height = min(_MIN_HEIGHT, max_height)
        self._capabilities = TrackCapabilities(
            width=CapabilityRange(min_width, max_width),
            height=CapabilityRange(min_height, max_height),
            aspect_ratio=CapabilityRange(min_width / max_height, max_width / min_height),
            frame_rate=CapabilityRange(_MIN_FRAME_RATE, max_frame_rate),
            extras={"modes": list(supported_modes)},
        )
        self._device_id = device_id
        self._max_pixels = max_pixels
        self._reject = reject
        self._supported_modes = set(supported_modes)

        self._settings = TrackSettings(device_id=device_id)
        self._modes: dict[str, str] = {}
        self._apply_count = 0

    # =========================================================================
    # DeviceTrack 인터페이스
    # =========================================================================

    def get_capabilities(self) -> TrackCapabilities:
        return self._capabilities

    def get_settings(self) -> TrackSettings:
        s = self._settings
        return TrackSettings(
            width=s.width,
            height=s.height,
            aspect_ratio=s.aspect_ratio,
            frame_rate=s.frame_rate,
            device_id=s.device_id,
        )

    @property
    def modes(self) -> dict[str, str]:
        """적용된 수동 제어 모드"""
        return dict(self._modes)

    @property
    def apply_count(self) -> int:
        """성공한 제약 적용 횟수"""
        return self._apply_count

    async def apply_constraints(self, constraints: ConstraintSet) -> None:
        """
        제약을 해석하여 새 설정을 적용합니다.

        예외:
            ConstraintApplyError: 장치 불일치, 범위 밖 exact/min, 모드 미지원, 주입된 거부 규칙
        """
        if constraints.device_id is not None and constraints.device_id != self._device_id:
            raise ConstraintApplyError(
                f"장치를 찾을 수 없습니다: {constraints.device_id}", constraint="device_id"
            )

        for name in constraints.advanced:
            if name not in self._supported_modes:
                raise ConstraintApplyError(f"지원하지 않는 제약: {name}", constraint=name)

        if self._reject is not None and self._reject(constraints):
            raise ConstraintApplyError("장치가 제약을 거부했습니다", constraint=None)

        caps = self._capabilities
        width = self._resolve(constraints.width, caps.width, self._settings.width, "width")
        height = self._resolve(constraints.height, caps.height, self._settings.height, "height")
        frame_rate = self._resolve(
            constraints.frame_rate, caps.frame_rate, self._settings.frame_rate, "frame_rate"
        )

        aspect = constraints.aspect_ratio
        if aspect is not None and constraints.height is None and width is not None:
            target = aspect.exact or aspect.ideal
            if target:
                height = _clamp(round(width / target), caps.height.min, caps.height.max)

        if width is not None and height is not None:
            if self._max_pixels is not None and width * height > self._max_pixels:
                raise ConstraintApplyError(
                    f"해상도 초과: {width}x{height} > {self._max_pixels}px", constraint="width"
                )
            self._settings = TrackSettings(
                width=int(width),
                height=int(height),
                aspect_ratio=width / height,
                frame_rate=float(frame_rate) if frame_rate is not None else None,
                device_id=self._device_id,
            )

        for name, mode in constraints.advanced.items():
            self._modes[name] = mode

        self._apply_count += 1
        logger.debug(
            f"모의 장치 설정 적용: {self._settings.width}x{self._settings.height} "
            f"@ {self._settings.frame_rate}fps"
        )

    @staticmethod
    def _resolve(
        requested: Optional[ConstraintValue],
        capability: CapabilityRange,
        current: Optional[float],
        name: str,
    ) -> Optional[float]:
        """수치 제약 하나를 capability 범위 안의 값으로 해석합니다."""
        if requested is None:
            return current

        if requested.exact is not None:
            if not capability.min <= requested.exact <= capability.max:
                raise ConstraintApplyError(
                    f"{name} exact={requested.exact} 범위 밖 "
                    f"[{capability.min}, {capability.max}]",
                    constraint=name,
                )
            return requested.exact

        low = capability.min if requested.min is None else max(capability.min, requested.min)
        high = capability.max if requested.max is None else min(capability.max, requested.max)
        if low > high:
            raise ConstraintApplyError(f"{name} 범위를 만족할 수 없습니다", constraint=name)

        wanted = requested.ideal if requested.ideal is not None else current
        if wanted is None:
            wanted = high
        return _clamp(wanted, low, high)

    # =========================================================================
    # FrameSource 인터페이스
    # =========================================================================

    @property
    def width(self) -> int:
        return self._settings.width or 0

    @property
    def height(self) -> int:
        return self._settings.height or 0

    def draw_into(self, buffer: np.ndarray) -> None:
        """현재 프레임을 버퍼 크기로 리사이즈하여 RGBA로 기록합니다."""
        _write_rgba(self._next_native_rgb(), buffer)

    def close(self) -> None:
        """점유한 자원을 해제합니다."""

    @abstractmethod
    def _next_native_rgb(self) -> np.ndarray:
        """원본 해상도의 RGB uint8 프레임을 반환합니다."""


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _write_rgba(native: np.ndarray, buffer: np.ndarray) -> None:
    """RGB 원본 프레임을 버퍼 크기로 변환하여 RGBA로 기록합니다."""
    out_h, out_w = buffer.shape[:2]
    if native.shape[:2] != (out_h, out_w):
        native = cv2.resize(native, (out_w, out_h), interpolation=cv2.INTER_AREA)
    buffer[..., :3] = native
    buffer[..., 3] = 255


class SyntheticFrameSource(SimulatedDeviceSource):
    """
    시간에 따라 움직이는 그라디언트 패턴을 생성하는 모의 장치입니다.

    R은 가로 그라디언트, G는 세로 그라디언트, B는 프레임마다 이동하는 세로 막대입니다.
    noise_level > 0이면 가우시안 노이즈를 더해 저조도 센서를 흉내냅니다.
    """

    def __init__(self, *args, noise_level: float = 0.0, seed: int = 0, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._noise_level = noise_level
        self._rng = np.random.default_rng(seed)
        self._tick = 0

        xs = np.linspace(0, 255, _SYNTHETIC_NATIVE_WIDTH, dtype=np.float32)
        ys = np.linspace(0, 255, _SYNTHETIC_NATIVE_HEIGHT, dtype=np.float32)
        self._base = np.zeros((_SYNTHETIC_NATIVE_HEIGHT, _SYNTHETIC_NATIVE_WIDTH, 3), dtype=np.float32)
        self._base[..., 0] = xs[np.newaxis, :]
        self._base[..., 1] = ys[:, np.newaxis]

    def _next_native_rgb(self) -> np.ndarray:
        frame = self._base.copy()
        bar_x = (self._tick * 4) % _SYNTHETIC_NATIVE_WIDTH
        frame[:, bar_x:bar_x + 16, 2] = 255.0
        self._tick += 1

        if self._noise_level > 0:
            frame += self._rng.normal(0.0, self._noise_level, frame.shape).astype(np.float32)
        return np.clip(np.rint(frame), 0, 255).astype(np.uint8)


class FileFrameSource(SimulatedDeviceSource):
    """
    영상 파일을 cv2.VideoCapture로 재생하는 모의 장치입니다.

    파일 fps에 맞춰 새 프레임을 디코딩하며, 그 사이의 draw_into 호출은 직전 프레임을 재사용합니다.
    파일 끝에 도달하면 loop 설정에 따라 처음부터 다시 재생하거나 마지막 프레임을 유지합니다.
    open_stream()으로 파일 프레임을 순서대로 받는 스트림도 제공합니다.
    """

    def __init__(self, video_path: str, *args, loop: bool = True, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        path = Path(video_path)
        if not path.exists():
            raise FrameSourceError(f"영상 파일을 찾을 수 없습니다: {path}")

        self._path = path
        self._loop = loop
        self._capture = cv2.VideoCapture(str(path))
        if not self._capture.isOpened():
            raise FrameSourceError(f"영상 파일을 열 수 없습니다: {path}")

        file_fps = self._capture.get(cv2.CAP_PROP_FPS) or 30.0
        self._frame_period_s = 1.0 / file_fps if file_fps > 0 else 1.0 / 30.0
        self._last_decode_at: float = 0.0
        self._current: Optional[np.ndarray] = None
        self._decoded_count = 0

        logger.info(f"FileFrameSource 초기화 완료: path={path}, fps={file_fps:.2f}, loop={loop}")

    def _decode_next(self) -> np.ndarray:
        ok, bgr = self._capture.read()
        if not ok and self._loop:
            self._capture.set(cv2.CAP_PROP_POS_FRAMES, 0)
            ok, bgr = self._capture.read()
        if not ok:
            if self._current is None:
                raise FrameSourceError(f"영상 프레임을 읽을 수 없습니다: {self._path}")
            return self._current

        self._decoded_count += 1
        return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)

    def _next_native_rgb(self) -> np.ndarray:
        now = time.monotonic()
        if self._current is None or now - self._last_decode_at >= self._frame_period_s:
            self._current = self._decode_next()
            self._last_decode_at = now
        return self._current

    async def open_stream(self) -> AsyncIterator[Frame]:
        """파일 프레임을 파일 fps 속도로 하나씩 내보내는 비동기 스트림입니다."""
        while True:
            if self.width <= 0 or self.height <= 0:
                await asyncio.sleep(self._frame_period_s)
                continue
            native = self._decode_next()
            self._current = native
            buffer = np.zeros((self.height, self.width, 4), dtype=np.uint8)
            _write_rgba(native, buffer)
            yield make_frame(buffer, copy=False)
            await asyncio.sleep(self._frame_period_s)

    def close(self) -> None:
        if self._capture is not None:
            self._capture.release()
        logger.info(f"FileFrameSource 종료: decoded={self._decoded_count}")


def create_frame_source(config: AppConfig, **kwargs) -> SimulatedDeviceSource:
    """
    설정에 맞는 모의 장치를 생성합니다.

    system.mode가 "file"이면 FileFrameSource, 아니면 SyntheticFrameSource를 반환합니다.
    추가 키워드 인자는 SimulatedDeviceSource 생성자로 전달됩니다.
    """
    src_cfg = config.capture.source
    kwargs.setdefault("device_id", config.capture.device_id or "sim-0")
    common = dict(
        max_width=src_cfg.max_width,
        max_height=src_cfg.max_height,
        max_frame_rate=src_cfg.max_frame_rate,
        **kwargs,
    )

    if config.system.mode == "file":
        if not src_cfg.video_path:
            raise FrameSourceError("file 모드에는 capture.source.video_path가 필요합니다")
        return FileFrameSource(src_cfg.video_path, loop=src_cfg.loop, **common)
    return SyntheticFrameSource(**common)
