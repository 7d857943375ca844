"""
프레임 소스 인터페이스 및 프레임 리더 모듈입니다.

역할:
- FrameSource 프로토콜 정의 (width / height / draw_into, 선택적으로 open_stream / take_photo)
- grab_frame: 소스의 현재 라이브 프레임을 Frame으로 복사
- 프레임 리더 두 가지 구현 제공
    * StreamFrameReader: 소스가 프레임 스트림을 직접 제공하는 경우 (무복사 경로)
    * TickFrameReader: 틱 주기마다 라이브 프레임을 샘플링하는 대체 경로
- probe_frame_reader: 세션 시작 시 한 번만 소스 기능을 조사하여 리더를 선택

사용 예시:
    >>> reader = probe_frame_reader(source, tick_interval_ms=16)
    >>> frames = await reader.read(5)
    >>> await reader.close()
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional, Protocol, runtime_checkable

import numpy as np

from src.capture import Frame, make_frame

# 모듈 로거
logger = logging.getLogger(__name__)


@runtime_checkable
class FrameSource(Protocol):
    """
    라이브 프레임을 제공하는 소스의 최소 인터페이스입니다.

    width/height가 0 이하이면 아직 프레임이 준비되지 않은 상태로 간주합니다.
    draw_into는 shape=(height, width, 4)의 쓰기 가능한 uint8 버퍼에 현재 프레임을 그립니다.

    선택 기능 (있을 때만 사용):
        open_stream() -> AsyncIterator[Frame]
        async take_photo() -> bytes  (네이티브 단일 촬영 JPEG)
    """

    @property
    def width(self) -> int: ...

    @property
    def height(self) -> int: ...

    def draw_into(self, buffer: np.ndarray) -> None: ...


def has_valid_dimensions(source: FrameSource) -> bool:
    """소스가 유효한 프레임 크기를 보고하는지 확인합니다."""
    return source.width > 0 and source.height > 0


def grab_frame(source: FrameSource) -> Optional[Frame]:
    """
    소스의 현재 라이브 프레임을 새 버퍼에 그려 Frame으로 반환합니다.

    반환값:
        Frame | None: 소스 크기가 유효하지 않으면 None
    """
    if not has_valid_dimensions(source):
        return None
    buffer = np.zeros((source.height, source.width, 4), dtype=np.uint8)
    source.draw_into(buffer)
    return make_frame(buffer, copy=False)


# =============================================================================
# 프레임 리더
# =============================================================================

class FrameReader(ABC):
    """연속 프레임 N장을 읽어오는 리더의 공통 인터페이스입니다."""

    # 리더 종류 이름 (로그/provenance 표기용)
    kind: str = "abstract"

    @abstractmethod
    async def read(self, count: int) -> list[Frame]:
        """
        최대 count장의 프레임을 시간 순서대로 읽습니다.

        스트림이 먼저 끝나면 그때까지 읽은 프레임만 반환합니다.
        """

    async def close(self) -> None:
        """리더가 점유한 자원을 해제합니다."""


class StreamFrameReader(FrameReader):
    """
    소스의 open_stream() 비동기 이터레이터에서 프레임을 직접 읽는 리더입니다.

    스트림은 첫 read() 호출 시 한 번 열고 close()까지 재사용합니다.
    """

    kind = "stream"

    def __init__(self, source: FrameSource) -> None:
        self._source = source
        self._stream: Optional[AsyncIterator[Frame]] = None

    async def read(self, count: int) -> list[Frame]:
        if self._stream is None:
            self._stream = self._source.open_stream()  # type: ignore[attr-defined]

        frames: list[Frame] = []
        for _ in range(max(0, count)):
            try:
                frame = await self._stream.__anext__()
            except StopAsyncIteration:
                logger.debug(f"프레임 스트림 종료: {len(frames)}/{count}장 수신")
                break
            frames.append(frame)
        return frames

    async def close(self) -> None:
        stream, self._stream = self._stream, None
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()


class TickFrameReader(FrameReader):
    """
    틱 주기마다 소스의 라이브 프레임을 복사하는 대체 리더입니다.

    각 프레임 앞에 한 틱을 대기합니다. 크기가 유효하지 않은 틱은 건너뜁니다.
    """

    kind = "tick"

    def __init__(self, source: FrameSource, tick_interval_ms: int = 16) -> None:
        self._source = source
        self._interval_s = max(0, tick_interval_ms) / 1000.0

    async def read(self, count: int) -> list[Frame]:
        frames: list[Frame] = []
        # 소스가 끝내 준비되지 않을 때를 대비한 상한
        attempts_left = max(0, count) * 4
        while len(frames) < count and attempts_left > 0:
            attempts_left -= 1
            await asyncio.sleep(self._interval_s)
            frame = grab_frame(self._source)
            if frame is not None:
                frames.append(frame)
        return frames


def probe_frame_reader(source: FrameSource, tick_interval_ms: int = 16) -> FrameReader:
    """
    소스 기능을 한 번 조사하여 사용할 프레임 리더를 선택합니다.

    open_stream()을 제공하면 StreamFrameReader, 아니면 TickFrameReader를 반환합니다.
    """
    if callable(getattr(source, "open_stream", None)):
        reader: FrameReader = StreamFrameReader(source)
    else:
        reader = TickFrameReader(source, tick_interval_ms)
    logger.info(f"프레임 리더 선택: {reader.kind}")
    return reader
