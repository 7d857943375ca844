"""
메트릭 모듈 패키지

공통 데이터 타입:
- LatencyStats: 캡처 단계별 소요 시간 통계 컨테이너
"""

from dataclasses import dataclass


@dataclass
class LatencyStats:
    """
    캡처 단계별 소요 시간 통계입니다.

    필드:
        stage: 단계 이름 (예: "fusion", "encode", "capture_total")
        count: 측정 샘플 수
        mean_ms: 평균 (밀리초)
        min_ms: 최소 (밀리초)
        max_ms: 최대 (밀리초)
        p95_ms: 95th percentile (밀리초)
        p99_ms: 99th percentile (밀리초)
    """
    stage: str
    count: int
    mean_ms: float
    min_ms: float
    max_ms: float
    p95_ms: float
    p99_ms: float
