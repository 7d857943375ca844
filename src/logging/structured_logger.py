"""
구조화 JSON 로깅 모듈입니다.

역할:
- python-json-logger를 사용한 JSON 포맷 로그 출력
- RotatingFileHandler로 로그 파일 자동 순환 (10MB, 5개 보존)
- 로그 레코드 필터로 session_id 필드를 모든 로그에 주입
- 로그 레벨 및 포맷(json/text)을 설정에서 제어

사용 예시:
    >>> setup_logging(config)
    >>> logger = StructuredLogger.get("src.fusion")
    >>> logger.info("합성 시작", extra={"frame_count": 8})
"""

from __future__ import annotations

import logging
import logging.handlers
import uuid
from pathlib import Path
from typing import Optional

from pythonjsonlogger import jsonlogger

from src.config.schema import AppConfig

# 로그 파일 이름
LOG_FILENAME = "still_fusion.log"

_SESSION_ID: str = ""


def setup_logging(config: AppConfig, session_id: Optional[str] = None) -> str:
    """
    애플리케이션 전체 로깅 설정을 초기화합니다.

    파라미터:
        config: AppConfig 인스턴스
        session_id: 세션 식별자. None이면 config.system.session_id 또는 UUID 사용

    반환값:
        str: 적용된 세션 ID
    """
    global _SESSION_ID

    _SESSION_ID = session_id or config.system.session_id or str(uuid.uuid4())

    log_level = getattr(logging, config.system.log_level, logging.INFO)
    log_dir = Path(config.system.log_dir)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # 기존 핸들러 제거 (중복 방지)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                filename=log_dir / LOG_FILENAME,
                maxBytes=10 * 1024 * 1024,   # 10MB
                backupCount=5,
                encoding="utf-8",
            )
        )
    except OSError as exc:
        logging.warning(f"로그 파일 핸들러 생성 실패: {exc}")

    session_filter = _SessionContextFilter(_SESSION_ID)
    for handler in handlers:
        handler.setLevel(log_level)
        handler.addFilter(session_filter)
        handler.setFormatter(_build_formatter(config.system.log_format))
        root_logger.addHandler(handler)

    logging.getLogger(__name__).info(
        f"로깅 초기화: level={config.system.log_level}, "
        f"format={config.system.log_format}, session={_SESSION_ID}"
    )
    return _SESSION_ID


def _build_formatter(log_format: str) -> logging.Formatter:
    """로그 포맷 이름에 맞는 포맷터를 생성합니다."""
    if log_format == "json":
        return _JsonFormatter()
    return logging.Formatter(
        fmt="%(asctime)s [%(session_short)s] %(levelname)-8s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


class _SessionContextFilter(logging.Filter):
    """모든 로그 레코드에 session_id / session_short 속성을 추가하는 필터입니다."""

    def __init__(self, session_id: str) -> None:
        super().__init__()
        self._session_id = session_id
        self._session_short = session_id[:8] if session_id else "no-sid"

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = self._session_id
        record.session_short = self._session_short
        return True


class _JsonFormatter(jsonlogger.JsonFormatter):
    """
    session_id, module, level 필드를 자동 추가하는 JSON 포맷터입니다.
    """

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict,
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["session_id"] = getattr(record, "session_id", _SESSION_ID)
        log_record["module"] = record.name
        log_record["level"] = record.levelname
        # 필터가 넣은 보조 필드는 JSON 출력에서 제외
        log_record.pop("session_short", None)


class StructuredLogger:
    """
    모듈별 로거를 반환하는 팩토리 클래스입니다.

    표준 logging.Logger를 그대로 반환하여 기존 logging API와 호환됩니다.
    """

    @staticmethod
    def get(name: str) -> logging.Logger:
        """지정된 이름의 로거를 반환합니다."""
        return logging.getLogger(name)

    @staticmethod
    def get_session_id() -> str:
        """현재 세션 ID를 반환합니다."""
        return _SESSION_ID
