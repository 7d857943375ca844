"""
Still-Fusion 캡처 세션 실행기

역할:
- 모든 모듈을 초기화하고 한 번의 캡처 세션을 실행
- 세션 흐름: 장치 협상 → 링 버퍼 채우기 → 모드별 캡처(또는 버스트) → JPEG / provenance 저장
- SIGINT/SIGTERM 핸들러로 graceful shutdown
- 설정 파일 변경 시 캡처 설정 핫스왑 (--watch)

실행 예시:
    합성 프레임으로 야간 모드 촬영:
        python main.py --capture-mode night --frames 8

    영상 파일에서 장노출 촬영 (90도 회전):
        python main.py --source-mode file --video tests/fixtures/sample.mp4 \\
            --capture-mode longExposure --exposure 2.0 --rotation 90

    버스트 5장 평균:
        python main.py --burst 5
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import time
from pathlib import Path
from typing import Optional

from src.capture.file_frame_source import create_frame_source
from src.capture.ring_buffer import FrameRingBuffer
from src.config.config_manager import ConfigLoadError, ConfigManager
from src.config.schema import CAPTURE_MODES, AppConfig
from src.fusion.backends import ComputeDevice
from src.fusion.fusion_engine import FusionEngine
from src.logging.structured_logger import setup_logging
from src.metadata.orientation_codec import quantize_rotation
from src.metrics.metrics_store import MetricsStore
from src.negotiation.device_negotiator import DeviceNegotiator
from src.negotiation.profile_cache import ProfileCache
from src.orchestrator import OutputImage
from src.orchestrator.capture_orchestrator import CaptureOrchestrator

logger = logging.getLogger(__name__)

# 링 버퍼 채우기 최대 대기 시간 (초)
_FILL_TIMEOUT_S = 5.0


class CaptureSession:
    """
    캡처 세션 하나의 수명 주기를 관리하는 클래스입니다.

    세션 구조:
        [FrameSource + DeviceTrack (모의 장치)]
              │ apply_constraints           │ draw_into (틱마다)
              ▼                             ▼
        [DeviceNegotiator]           [FrameRingBuffer]
                                            │ snapshot
                                            ▼
                    [CaptureOrchestrator] → [FusionEngine] → JPEG + Orientation
    """

    def __init__(self, config: AppConfig, config_manager: Optional[ConfigManager] = None) -> None:
        self._config = config
        self._config_manager = config_manager

        # 프로세스 공용 자원
        self._metrics_store = MetricsStore()
        self._profile_cache = ProfileCache(max_age_ms=config.negotiation.profile_max_age_ms)
        self._device = ComputeDevice(workers=config.fusion.workers)

        self._source = None
        self._ring_buffer = FrameRingBuffer(config)
        self._negotiator = DeviceNegotiator(config, self._profile_cache)
        self._engine = FusionEngine(config, self._device)
        self._orchestrator: Optional[CaptureOrchestrator] = None

        # 세션 상태
        self._status: str = "idle"  # "idle" | "running" | "stopping" | "error"
        self._shutdown_event = asyncio.Event()

    @property
    def metrics_store(self) -> MetricsStore:
        return self._metrics_store

    def get_status(self) -> str:
        """세션의 현재 상태를 반환합니다."""
        return self._status

    async def start(self, prefer_max: bool = False) -> None:
        """모의 장치를 열고 협상한 뒤 링 버퍼 수집을 시작합니다."""
        self._status = "running"
        capture_cfg = self._config.capture

        self._source = create_frame_source(self._config)
        result = await self._negotiator.start_session(
            self._source,
            device_id=capture_cfg.device_id or None,
            facing_hint=capture_cfg.facing,
            prefer_max=prefer_max,
        )
        settings = self._source.get_settings()
        self._metrics_store.update_negotiation(
            status=result.status,
            device_id=settings.device_id,
            width=settings.width or 0,
            height=settings.height or 0,
            frame_rate=settings.frame_rate,
            strategy=result.strategy,
            attempts=len(result.attempts),
            aspect_abandoned=self._negotiator.aspect_abandoned,
        )
        logger.info(
            f"장치 협상 완료: status={result.status}, "
            f"{settings.width}x{settings.height} @ {settings.frame_rate}fps"
        )

        await self._ring_buffer.start(self._source)
        self._orchestrator = CaptureOrchestrator(
            self._config,
            self._source,
            self._ring_buffer,
            self._engine,
            metrics=self._metrics_store,
            negotiator=self._negotiator,
            track=self._source,
        )

    async def wait_for_frames(self, count: int, timeout_s: float = _FILL_TIMEOUT_S) -> int:
        """링 버퍼에 count장이 쌓이거나 timeout이 지날 때까지 대기합니다."""
        deadline = time.monotonic() + timeout_s
        target = min(count, self._ring_buffer.capacity)
        while (
            len(self._ring_buffer) < target
            and time.monotonic() < deadline
            and not self._shutdown_event.is_set()
        ):
            await asyncio.sleep(self._config.capture.tick_interval_ms / 1000.0)
        self._update_buffer_stats()
        return len(self._ring_buffer)

    async def capture(
        self,
        mode: str,
        frame_count: Optional[int] = None,
        hdr: bool = False,
        exposure_seconds: Optional[float] = None,
        burst: int = 0,
        rotation: int = 0,
        quality: Optional[float] = None,
    ) -> OutputImage:
        """설정을 반영하고 캡처 한 번을 실행합니다."""
        orchestrator = self._orchestrator
        changes: dict = {"mode": mode, "hdr_enabled": hdr}
        if frame_count is not None:
            changes["frame_count"] = frame_count
        if exposure_seconds is not None:
            changes["exposure_seconds"] = exposure_seconds
        orchestrator.update_settings(**changes)

        if burst > 0:
            return await orchestrator.burst_capture(burst, quality=quality, rotation=rotation)

        if mode == "night":
            await self.wait_for_frames(orchestrator.settings.frame_count)
        return await orchestrator.capture(quality=quality, rotation=rotation)

    def save_output(self, output: OutputImage) -> Path:
        """결과 JPEG와 provenance 사이드카(JSON)를 저장합니다."""
        output_dir = Path(self._config.output.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        stem = f"{output.mode}_{time.strftime('%Y%m%d_%H%M%S')}_{time.time_ns() % 1_000_000:06d}"

        image_path = output_dir / f"{stem}.jpg"
        image_path.write_bytes(output.data)

        if self._config.output.write_sidecar:
            sidecar_path = output_dir / f"{stem}.json"
            sidecar_path.write_text(
                json.dumps(output.to_metadata(), ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
        logger.info(f"결과 저장 완료: {image_path} ({len(output.data)} bytes)")
        return image_path

    def apply_config(self, old_config: AppConfig, new_config: AppConfig) -> None:
        """
        설정 변경을 캡처 설정에 적용합니다 (핫스왑).

        적용 범위: 품질 힌트, 장노출 노출 시간.
        링 버퍼 용량과 협상 설정은 다음 세션부터 반영됩니다.
        """
        self._config = new_config
        if self._orchestrator is not None:
            orch = new_config.orchestrator
            self._orchestrator.update_settings(
                quality_hint=orch.quality_hint,
                exposure_seconds=orch.exposure_seconds,
            )
        logger.info("캡처 설정 핫스왑 완료")

    def request_shutdown(self) -> None:
        """외부(시그널 핸들러 등)에서 종료를 요청합니다."""
        self._shutdown_event.set()

    async def shutdown(self) -> None:
        """세션 자원을 순서대로 해제합니다."""
        self._status = "stopping"
        logger.info("캡처 세션 종료 시작")

        self._update_buffer_stats()
        await self._ring_buffer.stop()

        if self._orchestrator is not None:
            await self._orchestrator.close()

        if self._source is not None:
            self._source.close()

        self._negotiator.reset_session()
        self._device.shutdown()
        self._profile_cache.clear()

        if self._config_manager is not None:
            self._config_manager.stop_watch()

        self._status = "idle"
        logger.info("캡처 세션 종료 완료")

    def log_summary(self) -> None:
        """세션 통계를 로그로 출력합니다."""
        stats = self._metrics_store.get_capture_stats()
        logger.info(
            f"캡처 통계: total={stats.total_captures}, failed={stats.failed_captures}, "
            f"fallbacks={stats.backend_fallbacks}, by_mode={stats.captures_by_mode}"
        )
        for stage, latency in self._metrics_store.get_all_latency_stats().items():
            logger.info(
                f"단계 소요 시간: {stage} mean={latency.mean_ms:.1f}ms "
                f"p95={latency.p95_ms:.1f}ms (n={latency.count})"
            )

    def _update_buffer_stats(self) -> None:
        stats = self._ring_buffer.get_stats()
        self._metrics_store.update_buffer_stats(
            length=stats["length"],
            capacity=stats["capacity"],
            dropped_total=stats["dropped_total"],
            appended_total=stats["appended_total"],
        )


# =============================================================================
# 진입점
# =============================================================================

def _parse_args() -> argparse.Namespace:
    """커맨드라인 인자를 파싱합니다."""
    parser = argparse.ArgumentParser(
        description="Still-Fusion: 다중 프레임 합성 스틸 캡처"
    )
    parser.add_argument(
        "--config", default="config.yaml", help="설정 파일 경로 (없으면 기본값 사용)"
    )
    parser.add_argument(
        "--source-mode", choices=["file", "synthetic"], help="프레임 소스 모드 (config.yaml 오버라이드)"
    )
    parser.add_argument("--video", help="영상 파일 경로 (file 모드 전용)")
    parser.add_argument(
        "--capture-mode", choices=list(CAPTURE_MODES), help="캡처 모드 (기본: 설정값)"
    )
    parser.add_argument("--frames", type=int, help="야간 모드 합성 프레임 수")
    parser.add_argument("--hdr", action="store_true", help="야간 모드 누적 톤 매핑 사용")
    parser.add_argument("--exposure", type=float, help="장노출 노출 시간 (초)")
    parser.add_argument("--burst", type=int, default=0, help="버스트 캡처 프레임 수 (0=사용 안 함)")
    parser.add_argument(
        "--rotation", type=float, default=0.0, help="장치 회전 각도 (가장 가까운 90도 단위로 양자화)"
    )
    parser.add_argument("--quality", type=float, help="JPEG 품질 0~1 (기본: 품질 정책)")
    parser.add_argument("--prefer-max", action="store_true", help="초기 제약부터 최대 해상도 요청")
    parser.add_argument("--watch", action="store_true", help="설정 파일 변경 감시 (핫스왑)")
    return parser.parse_args()


def _load_config(manager: ConfigManager, args: argparse.Namespace) -> AppConfig:
    """설정 파일(없으면 기본값)을 로드하고 커맨드라인 오버라이드를 적용합니다."""
    if Path(args.config).exists():
        config = manager.load(args.config)
    else:
        config = manager.load_defaults()

    if args.source_mode or args.video:
        # Pydantic 모델을 dict로 재구성하여 검증을 다시 거침
        config_dict = config.model_dump()
        if args.source_mode:
            config_dict["system"]["mode"] = args.source_mode
        if args.video:
            config_dict["capture"]["source"]["video_path"] = args.video
        config = AppConfig(**config_dict)
    return config


async def _main() -> int:
    """비동기 메인 함수입니다."""
    args = _parse_args()

    manager = ConfigManager()
    try:
        config = _load_config(manager, args)
    except ConfigLoadError as exc:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"설정 로드 실패: {exc}")
        return 2

    session_id = setup_logging(config)
    logger.info(
        f"Still-Fusion 시작: session_id={session_id}, source={config.system.mode}"
    )

    session = CaptureSession(config, config_manager=manager)
    if args.watch:
        manager.subscribe(session.apply_config)
        manager.watch()

    loop = asyncio.get_running_loop()

    def _signal_handler():
        logger.info("종료 시그널 수신")
        session.request_shutdown()

    loop.add_signal_handler(signal.SIGINT, _signal_handler)
    loop.add_signal_handler(signal.SIGTERM, _signal_handler)

    exit_code = 0
    try:
        await session.start(prefer_max=args.prefer_max)
        output = await session.capture(
            mode=args.capture_mode or config.orchestrator.default_mode,
            frame_count=args.frames,
            hdr=args.hdr,
            exposure_seconds=args.exposure,
            burst=args.burst,
            rotation=quantize_rotation(args.rotation),
            quality=args.quality,
        )
        session.save_output(output)
    except Exception as exc:
        logger.error(f"캡처 세션 오류: {exc}", exc_info=True)
        exit_code = 1
    finally:
        await session.shutdown()
        session.log_summary()

    logger.info("Still-Fusion 종료")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
