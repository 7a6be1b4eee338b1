"""
Order Service — サーキットブレーカー

依存サービスごとに 1 インスタンスを生成し、外部呼び出しをすべて経由させる。
障害が続くサービスへの呼び出しを一定時間止めて、障害の連鎖を防ぐ。

  状態遷移:
  ┌──────────┐  ウィンドウ内の呼び出し数 >= volume_threshold  ┌──────┐
  │  CLOSED  │──かつ 失敗率 >= error_threshold_percentage ──▶│ OPEN │
  └──────────┘                                               └──────┘
       ▲                                                       │  ▲
       │ 試行成功 (ウィンドウをリセット)     reset_timeout 経過 │  │ 試行失敗
       │                                                       ▼  │ (クールダウン再開始)
       │                                                ┌───────────┐
       └────────────────────────────────────────────────│ HALF_OPEN │
                                                        └───────────┘

OPEN の間は operation を一切呼ばずに fallback 値を返す。
HALF_OPEN では 1 件だけ試行を通し、同時に来た呼び出しは fallback を返す。
timeout を超えた呼び出しは打ち切って失敗として数える。

状態とカウンタの更新はすべて内部ロックの中で行う (インスタンスごとに単一の書き手)。
operation の実行自体はロックの外で行う。
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from .config import BreakerOptions

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class Fallback:
    """遮断中に operation の代わりに返される値。"""

    breaker: str
    message: str


class CallTimeoutError(Exception):
    def __init__(self, breaker: str, timeout: float) -> None:
        super().__init__(f"{breaker} call timed out after {timeout:g}s")
        self.breaker = breaker
        self.timeout = timeout


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        timeout: float = 5.0,
        error_threshold_percentage: float = 50.0,
        reset_timeout: float = 30.0,
        rolling_window: float = 10.0,
        volume_threshold: int = 5,
        is_failure: Callable[[Exception], bool] | None = None,
        fallback: Callable[[], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.timeout = timeout
        self.error_threshold_percentage = error_threshold_percentage
        self.reset_timeout = reset_timeout
        self.rolling_window = rolling_window
        self.volume_threshold = volume_threshold
        self._is_failure = is_failure or (lambda exc: True)
        self._fallback = fallback or self._default_fallback
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._window: deque[tuple[float, Outcome]] = deque()
        self._opened_at: float | None = None
        self._trial_in_flight = False

        self._requests = 0
        self._successes = 0
        self._failures = 0
        self._timeouts = 0
        self._fallbacks = 0

    @classmethod
    def from_options(cls, name: str, options: BreakerOptions, **kwargs) -> "CircuitBreaker":
        return cls(name, **options.model_dump(), **kwargs)

    # ── 状態 ─────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._refresh_state(self._clock())

    def _refresh_state(self, now: float) -> CircuitState:
        """クールダウンが明けていれば OPEN → HALF_OPEN に進める。ロック内で呼ぶ。"""
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and now - self._opened_at >= self.reset_timeout
        ):
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        logger.warning(
            "CircuitBreaker '%s' state changed: '%s' -> '%s'",
            self.name,
            old_state.value,
            new_state.value,
        )

    def _open(self, now: float) -> None:
        self._opened_at = now
        self._transition(CircuitState.OPEN)

    def _close(self) -> None:
        self._opened_at = None
        self._window.clear()
        self._transition(CircuitState.CLOSED)

    # ── 実行 ─────────────────────────────────────

    async def execute(self, operation: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        operation(*args, **kwargs) を実行して結果を返す。

        遮断中は operation を呼ばずに fallback 値を返す。
        operation の例外はカウント後にそのまま再送出する。
        timeout 超過は CallTimeoutError になる。
        """
        with self._lock:
            self._requests += 1
            state = self._refresh_state(self._clock())
            short_circuit = state is CircuitState.OPEN or (
                state is CircuitState.HALF_OPEN and self._trial_in_flight
            )
            trial = state is CircuitState.HALF_OPEN and not short_circuit
            if short_circuit:
                self._fallbacks += 1
            elif trial:
                self._trial_in_flight = True

        if short_circuit:
            logger.info("CircuitBreaker '%s' fallback triggered", self.name)
            return self._fallback()

        outcome = Outcome.FAILURE
        try:
            result = await asyncio.wait_for(operation(*args, **kwargs), timeout=self.timeout)
            outcome = Outcome.SUCCESS
            return result
        except asyncio.TimeoutError:
            outcome = Outcome.TIMEOUT
            raise CallTimeoutError(self.name, self.timeout) from None
        except Exception as exc:
            if not self._is_failure(exc):
                outcome = Outcome.SUCCESS
            raise
        finally:
            self._record(outcome, trial)

    def _record(self, outcome: Outcome, trial: bool) -> None:
        with self._lock:
            now = self._clock()
            if outcome is Outcome.SUCCESS:
                self._successes += 1
            else:
                self._failures += 1
                if outcome is Outcome.TIMEOUT:
                    self._timeouts += 1

            if trial:
                self._trial_in_flight = False
                if outcome is Outcome.SUCCESS:
                    self._close()
                else:
                    self._open(now)
                return

            # OPEN 移行前に始まった呼び出しは、ウィンドウには含めない
            if self._state is not CircuitState.CLOSED:
                return

            self._window.append((now, outcome))
            self._prune(now)
            if outcome is not Outcome.SUCCESS and self._should_open():
                self._open(now)

    def _prune(self, now: float) -> None:
        while self._window and now - self._window[0][0] > self.rolling_window:
            self._window.popleft()

    def _window_counts(self) -> tuple[int, int]:
        total = len(self._window)
        failed = sum(1 for _, outcome in self._window if outcome is not Outcome.SUCCESS)
        return total, failed

    def _should_open(self) -> bool:
        total, failed = self._window_counts()
        if total < self.volume_threshold:
            return False
        return failed * 100 / total >= self.error_threshold_percentage

    def _default_fallback(self) -> Fallback:
        return Fallback(
            breaker=self.name,
            message=f"{self.name} is temporarily unavailable. Please try again later.",
        )

    # ── 監視 ─────────────────────────────────────

    def stats(self) -> dict:
        with self._lock:
            now = self._clock()
            state = self._refresh_state(now)
            self._prune(now)
            total, failed = self._window_counts()
            return {
                "name": self.name,
                "state": state.value,
                "is_open": state is CircuitState.OPEN,
                "is_half_open": state is CircuitState.HALF_OPEN,
                "requests": self._requests,
                "successes": self._successes,
                "failures": self._failures,
                "timeouts": self._timeouts,
                "fallbacks": self._fallbacks,
                "window_requests": total,
                "window_failures": failed,
                "error_rate": round(failed * 100 / total, 2) if total else 0.0,
            }
