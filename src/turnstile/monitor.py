"""Verification metrics, threshold alerts and Prometheus text exposition."""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

logger = logging.getLogger(__name__)

AlertSink = Callable[[dict[str, Any]], None]


@dataclass
class PaymentMetrics:
    total_verifications: int = 0
    successful_verifications: int = 0
    failed_verifications: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    average_verification_ms: float = 0.0
    cache_hit_rate: float = 0.0
    success_rate: float = 1.0
    rpc_errors: int = 0
    total_amount: Decimal = Decimal(0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_verifications": self.total_verifications,
            "successful_verifications": self.successful_verifications,
            "failed_verifications": self.failed_verifications,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "average_verification_ms": round(self.average_verification_ms, 3),
            "cache_hit_rate": self.cache_hit_rate,
            "success_rate": self.success_rate,
            "rpc_errors": self.rpc_errors,
            "total_amount": str(self.total_amount),
        }


@dataclass(frozen=True)
class VerificationEvent:
    timestamp: float
    success: bool
    duration_ms: float
    from_cache: bool
    amount: Decimal | None = None
    error_code: str | None = None


class PaymentMonitor:
    """Running counters plus a bounded window of recent events.

    After each recorded event the alert predicates are evaluated; alerts are
    logged and forwarded to ``alert_sink``. Alerting never raises into the
    caller.
    """

    def __init__(
        self,
        failure_threshold: float = 0.1,
        rpc_error_threshold: int = 10,
        slow_verification_ms: float = 5000.0,
        min_samples: int = 10,
        max_events: int = 1000,
        alert_sink: AlertSink | None = None,
        alerts_enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._rpc_error_threshold = rpc_error_threshold
        self._slow_ms = slow_verification_ms
        self._min_samples = min_samples
        self._alert_sink = alert_sink
        self._alerts_enabled = alerts_enabled
        self._clock = clock
        self._metrics = PaymentMetrics()
        self._events: deque[VerificationEvent] = deque(maxlen=max_events)
        self._alerts: deque[dict[str, Any]] = deque(maxlen=100)
        self._registry = CollectorRegistry()
        self._registry.register(_PaymentMetricsCollector(self))

    # -- recording ------------------------------------------------------------

    def record_verification(
        self,
        success: bool,
        duration_ms: float,
        from_cache: bool,
        amount: Decimal | None = None,
        error_code: str | None = None,
    ) -> None:
        m = self._metrics
        m.total_verifications += 1
        if success:
            m.successful_verifications += 1
            if amount:
                m.total_amount += amount
        else:
            m.failed_verifications += 1
        if from_cache:
            m.cache_hits += 1
        else:
            m.cache_misses += 1

        self._events.append(VerificationEvent(
            timestamp=self._clock(),
            success=success,
            duration_ms=duration_ms,
            from_cache=from_cache,
            amount=amount,
            error_code=error_code,
        ))
        self._update_derived()
        self._check_alerts()

    def record_rpc_error(self) -> None:
        self._metrics.rpc_errors += 1
        count = self._metrics.rpc_errors
        # Alert each time the count crosses another multiple of the threshold
        if self._rpc_error_threshold > 0 and count % self._rpc_error_threshold == 0:
            self._send_alert(
                "HIGH_RPC_ERRORS",
                f"High number of RPC errors detected: {count}",
                {
                    "rpc_errors": count,
                    "threshold": self._rpc_error_threshold,
                    "suggestion": "Check RPC endpoint health and connectivity",
                },
            )

    def _update_derived(self) -> None:
        m = self._metrics
        if m.total_verifications:
            m.success_rate = m.successful_verifications / m.total_verifications
            m.cache_hit_rate = m.cache_hits / m.total_verifications
        if self._events:
            m.average_verification_ms = (
                sum(e.duration_ms for e in self._events) / len(self._events)
            )

    # -- alerts ---------------------------------------------------------------

    def _check_alerts(self) -> None:
        m = self._metrics
        failure_rate = 1 - m.success_rate
        if m.total_verifications >= self._min_samples and failure_rate > self._failure_threshold:
            self._send_alert(
                "HIGH_FAILURE_RATE",
                f"Payment verification failure rate is {failure_rate * 100:.1f}%",
                {
                    "failure_rate": failure_rate,
                    "threshold": self._failure_threshold,
                    "total_verifications": m.total_verifications,
                    "failed_verifications": m.failed_verifications,
                    "error_breakdown": self.get_error_breakdown(),
                },
            )
        if m.average_verification_ms > self._slow_ms:
            self._send_alert(
                "SLOW_VERIFICATION",
                f"Average verification time is {m.average_verification_ms / 1000:.2f}s",
                {
                    "average_ms": m.average_verification_ms,
                    "threshold_ms": self._slow_ms,
                    "suggestion": "Check RPC endpoint performance and network conditions",
                },
            )

    def _send_alert(self, code: str, message: str, details: dict[str, Any]) -> None:
        if not self._alerts_enabled:
            return
        alert = {
            "code": code,
            "message": message,
            "details": details,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metrics": self._metrics.to_dict(),
        }
        self._alerts.append(alert)
        logger.error("[PAYMENT ALERT] %s", json.dumps(alert, default=str))
        if self._alert_sink is not None:
            try:
                self._alert_sink(alert)
            except Exception:
                logger.warning("Alert sink failed for %s.", code, exc_info=True)

    def set_alert_threshold(self, threshold: float) -> None:
        self._failure_threshold = threshold

    # -- queries --------------------------------------------------------------

    def get_metrics(self) -> PaymentMetrics:
        m = self._metrics
        return PaymentMetrics(**{k: getattr(m, k) for k in m.__dataclass_fields__})

    def get_recent_events(self, count: int | None = None) -> list[VerificationEvent]:
        events = list(self._events)
        return events[-count:] if count else events

    def get_recent_alerts(self) -> list[dict[str, Any]]:
        return list(self._alerts)

    def get_windowed_metrics(self, window_ms: float = 3_600_000) -> PaymentMetrics:
        """Metrics over events recorded within the last *window_ms*."""
        cutoff = self._clock() - window_ms / 1000
        events = [e for e in self._events if e.timestamp >= cutoff]
        windowed = PaymentMetrics(
            total_verifications=len(events),
            successful_verifications=sum(1 for e in events if e.success),
            failed_verifications=sum(1 for e in events if not e.success),
            cache_hits=sum(1 for e in events if e.from_cache),
            cache_misses=sum(1 for e in events if not e.from_cache),
            total_amount=sum((e.amount for e in events if e.success and e.amount), Decimal(0)),
        )
        if events:
            windowed.success_rate = windowed.successful_verifications / len(events)
            windowed.cache_hit_rate = windowed.cache_hits / len(events)
            windowed.average_verification_ms = sum(e.duration_ms for e in events) / len(events)
        return windowed

    def get_error_breakdown(self) -> dict[str, int]:
        breakdown: dict[str, int] = {}
        for event in self._events:
            if not event.success and event.error_code:
                breakdown[event.error_code] = breakdown.get(event.error_code, 0) + 1
        return breakdown

    def reset(self) -> None:
        self._metrics = PaymentMetrics()
        self._events.clear()
        self._alerts.clear()

    # -- export ---------------------------------------------------------------

    @property
    def registry(self) -> CollectorRegistry:
        """Per-monitor registry, mountable on any Prometheus exporter."""
        return self._registry

    def export_metrics_text(self) -> str:
        """Render the registry in the Prometheus text exposition format."""
        return generate_latest(self._registry).decode("utf-8")


class _PaymentMetricsCollector:
    """Custom collector reading the monitor's counters at scrape time."""

    def __init__(self, monitor: PaymentMonitor) -> None:
        self._monitor = monitor

    def describe(self) -> list[Any]:
        return []

    def collect(self) -> Iterator[CounterMetricFamily | GaugeMetricFamily]:
        m = self._monitor.get_metrics()
        yield CounterMetricFamily(
            "payment_verifications_total",
            "Total number of payment verifications",
            value=m.total_verifications,
        )
        yield CounterMetricFamily(
            "payment_verifications_success_total",
            "Successful payment verifications",
            value=m.successful_verifications,
        )
        yield CounterMetricFamily(
            "payment_verifications_failed_total",
            "Failed payment verifications",
            value=m.failed_verifications,
        )
        yield CounterMetricFamily("payment_cache_hits_total", "Cache hits", value=m.cache_hits)
        yield CounterMetricFamily("payment_cache_misses_total", "Cache misses", value=m.cache_misses)
        yield GaugeMetricFamily(
            "payment_verification_duration_seconds",
            "Average verification duration",
            value=m.average_verification_ms / 1000,
        )
        yield GaugeMetricFamily(
            "payment_success_rate", "Payment verification success rate", value=m.success_rate,
        )
        yield GaugeMetricFamily("payment_cache_hit_rate", "Cache hit rate", value=m.cache_hit_rate)
        yield CounterMetricFamily("payment_rpc_errors_total", "RPC errors", value=m.rpc_errors)
        yield CounterMetricFamily(
            "payment_amount_usdc_total", "Total USDC processed", value=float(m.total_amount),
        )
