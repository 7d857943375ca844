"""
장치 제약 협상 모듈입니다.

역할:
- 세션 시작 시 빠른 시작(1920x1080@30) 또는 캐시된 프로필로 초기 제약 생성
- 초기 적용 직후 실제 설정을 프로필 캐시에 기록
- 세션당 한 번, 장치 최대 해상도로의 업그레이드를 순서가 정해진 전략 목록으로 시도
    1) max-with-aspect  2) max-no-aspect  3) fps 축소(24, 15)  4) 해상도 사다리
- 종횡비 유지 시도가 임계 횟수만큼 실패하면 세션 동안 종횡비를 포기
- 수동 제어(focus / white balance / exposure) 모드 제약을 최선 노력으로 적용

업그레이드는 실패해도 예외를 올리지 않고 빠른 시작 설정을 유지합니다.

사용 예시:
    >>> negotiator = DeviceNegotiator(config, cache)
    >>> constraints = negotiator.build_initial_constraints("cam-0", "environment")
    >>> await track.apply_constraints(constraints)
    >>> negotiator.record_initial(track, "cam-0")
    >>> result = await negotiator.upgrade(track)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from src.config.schema import AppConfig
from src.negotiation import (
    AppliedProfile,
    ConstraintApplyError,
    ConstraintSet,
    ConstraintValue,
    DeviceTrack,
    FailureReason,
    NegotiationAttempt,
    NegotiationResult,
    TrackCapabilities,
)
from src.negotiation.profile_cache import ProfileCache, snapshot_capabilities

# 모듈 로거
logger = logging.getLogger(__name__)

# 빠른 시작 종횡비
FAST_START_ASPECT = 16 / 9
# 업그레이드 시 fps 선호값/상한
UPGRADE_FRAME_RATE_IDEAL = 30
UPGRADE_FRAME_RATE_MAX = 60
# prefer_max 요청 시 해상도
PREFER_MAX_WIDTH = 4096
PREFER_MAX_HEIGHT = 2160

# 수동 제어 필드 → 장치 모드 제약 이름
_MANUAL_MODE_CONSTRAINTS = {
    "focus": "focus_mode",
    "white_balance": "white_balance_mode",
    "exposure_compensation": "exposure_mode",
}


@dataclass
class _Strategy:
    """업그레이드 전략 한 건"""
    label: str
    constraints: ConstraintSet
    affects_aspect: bool = False


class DeviceNegotiator:
    """
    장치 트랙 하나에 대한 해상도/프레임레이트 협상 상태 머신입니다.

    세션 상태:
        _upgrade_attempted: 업그레이드는 세션당 한 번
        _aspect_failures: 종횡비 유지 전략 실패 횟수 (reset_session 전까지 감소하지 않음)
    """

    def __init__(self, config: AppConfig, cache: ProfileCache) -> None:
        """
        DeviceNegotiator를 초기화합니다.

        파라미터:
            config (AppConfig): 전체 애플리케이션 설정 객체
            cache (ProfileCache): 프로세스 공용 프로필 캐시
        """
        neg = config.negotiation
        self._cache = cache
        self._fast_width = neg.fast_start_width
        self._fast_height = neg.fast_start_height
        self._fast_frame_rate = neg.fast_start_frame_rate
        self._tolerance_px = neg.max_tolerance_px
        self._ladder = list(neg.resolution_ladder)
        self._fallback_frame_rates = list(neg.fallback_frame_rates)
        self._max_aspect_failures = neg.max_aspect_failures
        self._max_age_ms = neg.profile_max_age_ms

        self._device_id: Optional[str] = config.capture.device_id or None
        self._upgrade_attempted: bool = False
        self._aspect_failures: int = 0

    # =========================================================================
    # 상태 조회
    # =========================================================================

    @property
    def device_id(self) -> Optional[str]:
        return self._device_id

    @property
    def aspect_failures(self) -> int:
        return self._aspect_failures

    @property
    def aspect_abandoned(self) -> bool:
        """세션 동안 종횡비 유지를 포기했는지 여부"""
        return self._aspect_failures >= self._max_aspect_failures

    @property
    def upgrade_attempted(self) -> bool:
        return self._upgrade_attempted

    def reset_session(self) -> None:
        """장치 정지 시 호출합니다. 업그레이드 재시도와 종횡비 유지를 다시 허용합니다."""
        self._upgrade_attempted = False
        self._aspect_failures = 0

    # =========================================================================
    # 초기 제약
    # =========================================================================

    def build_initial_constraints(
        self,
        device_id: Optional[str] = None,
        facing_hint: str = "environment",
        prefer_max: bool = False,
    ) -> ConstraintSet:
        """
        세션 시작용 초기 제약을 생성합니다.

        캐시에 유효한 프로필이 있으면 그 값을 ideal로 요청하고,
        없으면 빠른 시작 프로필을 요청합니다.
        """
        # 최선 노력 정리
        self._cache.sweep(self._max_age_ms)

        if device_id:
            self._device_id = device_id

        constraints = ConstraintSet()
        if device_id:
            constraints.device_id = device_id
        else:
            constraints.facing_mode = facing_hint

        cached = self._cache.get(device_id, self._max_age_ms) if device_id else None
        if cached is not None and cached.last_applied is not None:
            applied = cached.last_applied
            constraints.width = ConstraintValue(ideal=applied.width)
            constraints.height = ConstraintValue(ideal=applied.height)
            if applied.aspect_ratio:
                constraints.aspect_ratio = ConstraintValue(ideal=applied.aspect_ratio)
            constraints.frame_rate = ConstraintValue(
                ideal=applied.frame_rate if applied.frame_rate is not None else self._fast_frame_rate
            )
            source = "cached"
        else:
            constraints.width = ConstraintValue(ideal=self._fast_width)
            constraints.height = ConstraintValue(ideal=self._fast_height)
            constraints.aspect_ratio = ConstraintValue(ideal=FAST_START_ASPECT)
            constraints.frame_rate = ConstraintValue(
                ideal=self._fast_frame_rate, max=UPGRADE_FRAME_RATE_MAX
            )
            source = "fast-start"

        if prefer_max:
            constraints.width = ConstraintValue(ideal=PREFER_MAX_WIDTH, max=PREFER_MAX_WIDTH)
            constraints.height = ConstraintValue(ideal=PREFER_MAX_HEIGHT, max=PREFER_MAX_WIDTH)

        logger.info(
            f"초기 제약 생성: source={source}, prefer_max={prefer_max}, "
            f"constraints={constraints.to_dict()}"
        )
        return constraints

    def record_initial(self, track: DeviceTrack, device_id: Optional[str] = None) -> None:
        """
        초기 적용 직후의 실제 설정을 업그레이드 전에 캐시에 기록합니다.

        재시작 시 같은 장치가 빠른 시작 대신 이 값을 재사용합니다.
        """
        settings = track.get_settings()
        effective_id = settings.device_id or device_id or self._device_id
        if settings.device_id:
            self._device_id = settings.device_id
        if not effective_id or settings.width is None or settings.height is None:
            return

        self._cache.set(
            effective_id,
            last_applied=AppliedProfile(
                width=settings.width,
                height=settings.height,
                aspect_ratio=settings.width / settings.height if settings.height else None,
                frame_rate=settings.frame_rate,
            ),
            capabilities=snapshot_capabilities(_safe_capabilities(track)),
        )
        logger.debug(f"초기 프로필 캐시: device={effective_id}, {settings.width}x{settings.height}")

    # =========================================================================
    # 업그레이드
    # =========================================================================

    async def upgrade(self, track: DeviceTrack) -> NegotiationResult:
        """
        장치 최대 해상도로의 업그레이드를 시도합니다 (세션당 한 번).

        반환값:
            NegotiationResult: 시도한 모든 전략과 실패 원인 목록
        """
        if self._upgrade_attempted:
            return NegotiationResult(status="skipped", skip_reason="already-attempted")
        self._upgrade_attempted = True

        caps = _safe_capabilities(track)
        if caps is None or caps.width is None or caps.height is None:
            logger.info("업그레이드 생략: 해상도 capability 없음")
            return NegotiationResult(status="skipped", skip_reason="no-capabilities")

        settings = track.get_settings()
        current_w, current_h = settings.width, settings.height
        max_w, max_h = int(caps.width.max), int(caps.height.max)

        if (
            current_w is not None
            and current_h is not None
            and abs(max_w - current_w) <= self._tolerance_px
            and abs(max_h - current_h) <= self._tolerance_px
        ):
            logger.info(f"업그레이드 생략: 이미 최대 해상도 근접 ({current_w}x{current_h})")
            return NegotiationResult(status="skipped", skip_reason="near-max", settings=settings)

        base_aspect: Optional[float] = None
        if current_w and current_h:
            base_aspect = current_w / current_h
        elif caps.aspect_ratio is not None:
            base_aspect = caps.aspect_ratio.max

        # 전략 실패로 카운터가 늘어나도 이번 시도의 종횡비 유지 여부는 고정
        keep_aspect = self._keep_aspect(base_aspect)
        strategies = self._build_strategies(caps, base_aspect, current_w, current_h)
        result = NegotiationResult(status="exhausted")

        for strategy in strategies:
            try:
                await track.apply_constraints(strategy.constraints)
            except ConstraintApplyError as exc:
                self._record_failure(result, strategy, FailureReason.CONSTRAINT_REJECTED, exc)
                continue
            except Exception as exc:
                self._record_failure(result, strategy, FailureReason.UNEXPECTED_ERROR, exc)
                continue

            result.attempts.append(NegotiationAttempt(
                label=strategy.label,
                constraints=strategy.constraints,
                succeeded=True,
                affects_aspect=strategy.affects_aspect,
            ))
            result.status = "upgraded"
            result.strategy = strategy.label
            result.settings = track.get_settings()
            self._store_upgrade(track, strategy, caps, base_aspect, keep_aspect)
            logger.info(
                f"업그레이드 성공: {result.settings.width}x{result.settings.height} "
                f"@ ~{result.settings.frame_rate}fps via {strategy.label}"
            )
            return result

        result.settings = track.get_settings()
        if self.aspect_abandoned:
            logger.debug("종횡비 유지 시도 반복 실패: 세션 동안 종횡비 포기")
        logger.warning(
            f"업그레이드 전략 모두 실패 ({len(result.attempts)}건): 빠른 시작 설정 유지"
        )
        return result

    def _keep_aspect(self, base_aspect: Optional[float]) -> bool:
        return bool(base_aspect) and not self.aspect_abandoned

    def _clamp_to_capabilities(
        self,
        width: int,
        height: int,
        caps: TrackCapabilities,
        base_aspect: Optional[float],
    ) -> tuple[int, int]:
        """capability 최대값으로 자르고, 종횡비 유지 시 다른 축을 다시 계산합니다."""
        keep_aspect = self._keep_aspect(base_aspect)
        max_w, max_h = int(caps.width.max), int(caps.height.max)
        w, h = width, height
        if w > max_w:
            w = max_w
            if keep_aspect:
                h = round(w / base_aspect)
        if h > max_h:
            h = max_h
            if keep_aspect:
                w = round(h * base_aspect)
        return w, h

    def _build_strategies(
        self,
        caps: TrackCapabilities,
        base_aspect: Optional[float],
        current_w: Optional[int],
        current_h: Optional[int],
    ) -> list[_Strategy]:
        """순서가 정해진 업그레이드 전략 목록을 생성합니다."""
        max_w, max_h = int(caps.width.max), int(caps.height.max)
        target_w, target_h = self._clamp_to_capabilities(max_w, max_h, caps, base_aspect)

        def fps(ideal: float, maximum: Optional[float] = None) -> ConstraintValue:
            return ConstraintValue(ideal=ideal, max=maximum)

        strategies: list[_Strategy] = []

        if self._keep_aspect(base_aspect):
            strategies.append(_Strategy(
                label="max-with-aspect",
                affects_aspect=True,
                constraints=ConstraintSet(
                    width=ConstraintValue(ideal=target_w),
                    height=ConstraintValue(ideal=target_h),
                    aspect_ratio=ConstraintValue(ideal=base_aspect),
                    frame_rate=fps(UPGRADE_FRAME_RATE_IDEAL, UPGRADE_FRAME_RATE_MAX),
                ),
            ))

        strategies.append(_Strategy(
            label="max-no-aspect",
            constraints=ConstraintSet(
                width=ConstraintValue(ideal=target_w),
                height=ConstraintValue(ideal=target_h),
                frame_rate=fps(UPGRADE_FRAME_RATE_IDEAL, UPGRADE_FRAME_RATE_MAX),
            ),
        ))

        for rate in self._fallback_frame_rates:
            strategies.append(_Strategy(
                label=f"max-no-aspect-fr-{rate}",
                constraints=ConstraintSet(
                    width=ConstraintValue(ideal=target_w),
                    height=ConstraintValue(ideal=target_h),
                    frame_rate=fps(rate, rate),
                ),
            ))

        for width in self._ladder:
            if width > max_w or width == target_w:
                continue
            height = round(width / base_aspect) if base_aspect else None
            strategies.append(_Strategy(
                label=f"ladder-{width}",
                constraints=ConstraintSet(
                    width=ConstraintValue(ideal=width),
                    height=ConstraintValue(ideal=height) if height is not None else None,
                    frame_rate=fps(UPGRADE_FRAME_RATE_IDEAL),
                ),
            ))

        logger.debug(
            f"업그레이드 전략 {len(strategies)}건: "
            f"target={target_w}x{target_h}, aspect={base_aspect}, "
            f"current={current_w}x{current_h}"
        )
        return strategies

    def _record_failure(
        self,
        result: NegotiationResult,
        strategy: _Strategy,
        reason: FailureReason,
        exc: Exception,
    ) -> None:
        if strategy.affects_aspect:
            self._aspect_failures += 1
        result.attempts.append(NegotiationAttempt(
            label=strategy.label,
            constraints=strategy.constraints,
            succeeded=False,
            reason=reason,
            detail=str(exc),
            affects_aspect=strategy.affects_aspect,
        ))
        logger.debug(f"업그레이드 전략 실패: {strategy.label} ({reason.value}: {exc})")

    def _store_upgrade(
        self,
        track: DeviceTrack,
        strategy: _Strategy,
        caps: TrackCapabilities,
        base_aspect: Optional[float],
        keep_aspect: bool,
    ) -> None:
        """성공한 전략의 실제 설정을 캐시에 기록합니다."""
        settings = track.get_settings()
        device_id = settings.device_id or self._device_id
        if not device_id:
            return

        requested = strategy.constraints
        width = settings.width or int(requested.width.ideal)
        height = settings.height
        if height is None and requested.height is not None:
            height = int(requested.height.ideal)
        if height is None:
            return

        frame_rate = settings.frame_rate
        if frame_rate is None and requested.frame_rate is not None:
            frame_rate = requested.frame_rate.ideal

        self._cache.set(
            device_id,
            last_applied=AppliedProfile(
                width=width,
                height=height,
                aspect_ratio=base_aspect if keep_aspect else None,
                frame_rate=frame_rate,
            ),
            capabilities=snapshot_capabilities(caps),
        )

    # =========================================================================
    # 세션 시작 / 수동 제어
    # =========================================================================

    async def start_session(
        self,
        track: DeviceTrack,
        device_id: Optional[str] = None,
        facing_hint: str = "environment",
        prefer_max: bool = False,
    ) -> NegotiationResult:
        """
        초기 제약 적용 → 초기 프로필 기록 → 업그레이드를 차례로 수행합니다.

        초기 제약 적용 실패는 세션 시작 실패이므로 ConstraintApplyError를 그대로 올립니다.
        업그레이드 중 오류는 기록만 하고 초기 설정을 유지합니다.
        세션 상태는 장치 정지 시 reset_session()으로만 초기화됩니다.
        """
        constraints = self.build_initial_constraints(device_id, facing_hint, prefer_max)
        await track.apply_constraints(constraints)
        self.record_initial(track, device_id)
        return await self.upgrade(track)

    async def apply_manual_controls(
        self,
        track: DeviceTrack,
        changed: Iterable[str],
        manual: bool,
    ) -> bool:
        """
        변경된 수동 제어 항목에 대응하는 모드 제약을 적용합니다.

        파라미터:
            changed: 변경된 필드 이름 (focus / white_balance / exposure_compensation 등)
            manual: True면 "manual", False면 "continuous" 모드 요청

        반환값:
            bool: 장치가 제약을 받아들였는지 여부. 거부는 로그만 남깁니다.
        """
        mode = "manual" if manual else "continuous"
        advanced = {
            _MANUAL_MODE_CONSTRAINTS[name]: mode
            for name in changed
            if name in _MANUAL_MODE_CONSTRAINTS
        }
        if not advanced:
            return False

        try:
            await track.apply_constraints(ConstraintSet(advanced=advanced))
        except ConstraintApplyError as exc:
            logger.info(f"장치가 수동 제어 제약을 지원하지 않음: {advanced} ({exc})")
            return False
        logger.debug(f"수동 제어 모드 제약 적용: {advanced}")
        return True


def _safe_capabilities(track: DeviceTrack) -> Optional[TrackCapabilities]:
    """capability 조회 실패를 None으로 취급합니다."""
    getter = getattr(track, "get_capabilities", None)
    if getter is None:
        return None
    try:
        return getter()
    except Exception as exc:
        logger.debug(f"capability 조회 실패: {exc}")
        return None
