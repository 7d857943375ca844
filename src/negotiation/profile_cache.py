"""
장치 프로필 캐시 모듈입니다.

역할:
- 장치별 마지막 성공 제약 설정과 capability 스냅샷을 메모리에 보관
- 유효기간(기본 10분) 초과 엔트리는 조회 시 또는 sweep()으로 제거
- 기존 엔트리와 병합하는 방식으로 갱신
- threading.RLock으로 동시 접근 보호

재시작 간 영속화는 하지 않습니다.

사용 예시:
    >>> cache = ProfileCache()
    >>> cache.set("cam-0", last_applied=AppliedProfile(1920, 1080))
    >>> profile = cache.get("cam-0")
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from typing import Callable, Optional

from src.negotiation import (
    AppliedProfile,
    DeviceProfile,
    TrackCapabilities,
)

# 모듈 로거
logger = logging.getLogger(__name__)

# 기본 유효기간: 10분
DEFAULT_MAX_AGE_MS = 10 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def snapshot_capabilities(caps: Optional[TrackCapabilities]) -> Optional[TrackCapabilities]:
    """협상에 쓰는 범위(width/height/aspect_ratio/frame_rate)만 복사합니다."""
    if caps is None:
        return None
    return TrackCapabilities(
        width=copy.copy(caps.width),
        height=copy.copy(caps.height),
        aspect_ratio=copy.copy(caps.aspect_ratio),
        frame_rate=copy.copy(caps.frame_rate),
    )


class ProfileCache:
    """
    장치 ID를 키로 하는 DeviceProfile 캐시입니다.

    프로세스당 하나를 만들어 협상기에 전달하고, 종료 시 clear()합니다.
    clock은 밀리초 단위 현재 시각을 반환하는 함수이며 테스트에서 주입합니다.
    """

    def __init__(
        self,
        max_age_ms: int = DEFAULT_MAX_AGE_MS,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._max_age_ms = max_age_ms
        self._clock = clock or _now_ms
        self._entries: dict[str, DeviceProfile] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def _is_stale(self, entry: DeviceProfile, now: int, max_age_ms: int) -> bool:
        return now - entry.timestamp_ms > max_age_ms

    def get(self, key: str, max_age_ms: Optional[int] = None) -> Optional[DeviceProfile]:
        """
        유효기간 내의 프로필을 반환합니다. 오래된 엔트리는 제거 후 None을 반환합니다.
        """
        max_age = self._max_age_ms if max_age_ms is None else max_age_ms
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._is_stale(entry, self._clock(), max_age):
                del self._entries[key]
                logger.debug(f"오래된 프로필 제거: device={key}")
                return None
            return entry

    def set(
        self,
        key: str,
        last_applied: Optional[AppliedProfile] = None,
        capabilities: Optional[TrackCapabilities] = None,
        timestamp_ms: Optional[int] = None,
    ) -> DeviceProfile:
        """
        프로필을 기록합니다. None인 필드는 기존 엔트리 값을 유지합니다.

        timestamp_ms를 생략하면 현재 시각으로 갱신됩니다.
        """
        with self._lock:
            existing = self._entries.get(key)
            merged = DeviceProfile(
                timestamp_ms=self._clock() if timestamp_ms is None else timestamp_ms,
                last_applied=last_applied if last_applied is not None
                else (existing.last_applied if existing else None),
                capabilities=capabilities if capabilities is not None
                else (existing.capabilities if existing else None),
            )
            self._entries[key] = merged
            return merged

    def sweep(self, max_age_ms: Optional[int] = None) -> int:
        """
        오래된 엔트리를 모두 제거합니다.

        반환값:
            int: 제거된 엔트리 수
        """
        max_age = self._max_age_ms if max_age_ms is None else max_age_ms
        with self._lock:
            now = self._clock()
            stale = [k for k, v in self._entries.items() if self._is_stale(v, now, max_age)]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug(f"프로필 캐시 정리: {len(stale)}건 제거")
        return len(stale)

    def clear(self) -> None:
        """모든 엔트리를 제거합니다."""
        with self._lock:
            self._entries.clear()
