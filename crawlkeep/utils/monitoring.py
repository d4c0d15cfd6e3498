"""
Monitoring, metrics collection and progress reporting for the crawler.
"""

import time
import logging
from typing import Dict, Optional, Any, List
from dataclasses import dataclass, field

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, start_http_server


@dataclass
class MetricPoint:
    """Individual metric data point."""
    timestamp: float
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class Metric:
    """Metric container with history."""
    name: str
    description: str
    metric_type: str  # counter, gauge, histogram
    points: List[MetricPoint] = field(default_factory=list)
    current_value: float = 0.0


class MetricsCollector:
    """Collects crawler metrics and optionally mirrors them to Prometheus."""

    def __init__(self, enable_prometheus: bool = False, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.metrics: Dict[str, Metric] = {}
        self.enable_prometheus = enable_prometheus
        self.prometheus_port = prometheus_port

        self.prometheus_registry: Optional[CollectorRegistry] = None
        self.prometheus_metrics: Dict[str, Any] = {}

        if self.enable_prometheus:
            self._setup_prometheus()

    def _setup_prometheus(self):
        """Set up Prometheus metrics."""
        self.prometheus_registry = CollectorRegistry()

        self.prometheus_metrics = {
            'pages_scraped_total': Counter(
                'crawler_pages_scraped_total',
                'Total number of pages fetched successfully',
                registry=self.prometheus_registry
            ),
            'pages_failed_total': Counter(
                'crawler_pages_failed_total',
                'Total number of pages recorded as failed',
                registry=self.prometheus_registry
            ),
            'snapshots_written_total': Counter(
                'crawler_snapshots_written_total',
                'Total number of snapshot files written',
                registry=self.prometheus_registry
            ),
            'errors_total': Counter(
                'crawler_errors_total',
                'Total number of crawl errors',
                ['error_type'],
                registry=self.prometheus_registry
            ),
            'fetch_time_seconds': Histogram(
                'crawler_fetch_time_seconds',
                'Time spent fetching a single page',
                registry=self.prometheus_registry
            ),
            'frontier_size': Gauge(
                'crawler_frontier_size',
                'Number of URLs still to crawl',
                registry=self.prometheus_registry
            ),
            'active_workers': Gauge(
                'crawler_active_workers',
                'Number of active crawler workers',
                registry=self.prometheus_registry
            ),
        }

        self.logger.info("Prometheus metrics initialized")

    def start_prometheus_server(self):
        """Start the Prometheus metrics HTTP server."""
        if not self.enable_prometheus:
            return

        try:
            start_http_server(self.prometheus_port, registry=self.prometheus_registry)
            self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")

    def record_metric(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                      description: str = "", metric_type: str = "gauge"):
        """Record a metric value.

        For counters ``value`` is the increment, for gauges the new level and
        for histograms a single observation.
        """
        labels = labels or {}

        if name not in self.metrics:
            self.metrics[name] = Metric(
                name=name,
                description=description,
                metric_type=metric_type
            )

        metric = self.metrics[name]
        if metric_type == "counter":
            metric.current_value += value
        else:
            metric.current_value = value
        metric.points.append(MetricPoint(timestamp=time.time(), value=metric.current_value,
                                         labels=labels))

        # Keep only recent points
        if len(metric.points) > 1000:
            metric.points = metric.points[-1000:]

        if self.enable_prometheus and name in self.prometheus_metrics:
            prom_metric = self.prometheus_metrics[name]
            if labels:
                prom_metric = prom_metric.labels(**labels)

            if metric_type == "counter":
                prom_metric.inc(value)
            elif metric_type == "histogram":
                prom_metric.observe(value)
            else:
                prom_metric.set(value)

    def increment_counter(self, name: str, amount: float = 1,
                          labels: Optional[Dict[str, str]] = None, description: str = ""):
        """Increment a counter metric."""
        self.record_metric(name, amount, labels, description, "counter")

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                  description: str = ""):
        """Set a gauge metric value."""
        self.record_metric(name, value, labels, description, "gauge")

    def observe_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                          description: str = ""):
        """Record a histogram observation."""
        self.record_metric(name, value, labels, description, "histogram")

    def get_current_values(self) -> Dict[str, float]:
        """Get current values of all metrics."""
        return {name: metric.current_value for name, metric in self.metrics.items()}


class CrawlerMonitor:
    """High-level monitoring interface for the crawler."""

    def __init__(self, metrics_collector: MetricsCollector):
        self.metrics = metrics_collector
        self.start_time = time.time()

    def record_page(self, success: bool, fetch_time: float = 0.0):
        """Record the outcome of a single page attempt."""
        if success:
            self.metrics.increment_counter('pages_scraped_total', description='Pages scraped')
        else:
            self.metrics.increment_counter('pages_failed_total', description='Pages failed')
        self.metrics.observe_histogram('fetch_time_seconds', fetch_time,
                                       description='Page fetch time')

    def record_snapshot(self, pages: int):
        """Record a snapshot flush."""
        self.metrics.increment_counter('snapshots_written_total', description='Snapshots written')

    def record_error(self, error_type: str):
        """Record an error event."""
        self.metrics.increment_counter('errors_total', labels={'error_type': error_type},
                                       description='Crawl errors')

    def update_frontier_size(self, size: int):
        self.metrics.set_gauge('frontier_size', size, description='URLs still to crawl')

    def update_active_workers(self, count: int):
        self.metrics.set_gauge('active_workers', count, description='Active workers')

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        current_values = self.metrics.get_current_values()
        runtime = time.time() - self.start_time
        scraped = current_values.get('pages_scraped_total', 0) + current_values.get('pages_failed_total', 0)

        return {
            'runtime_seconds': runtime,
            'metrics': current_values,
            'pages_per_minute': scraped / (runtime / 60) if runtime > 0 else 0,
        }


class ProgressTracker:
    """
    Shared progress counter for one crawl run.

    Workers advance it by the number of pages they flushed in a snapshot, so
    its granularity is the snapshot interval rather than single URLs.
    """

    def __init__(self, total: int, already_done: int = 0, monitor: Optional[CrawlerMonitor] = None):
        self.total = total
        self.already_done = already_done
        self.done = 0
        self.monitor = monitor
        self.start_time = time.time()
        self.logger = logging.getLogger(__name__)

    @property
    def percent(self) -> float:
        overall = self.already_done + self.done
        grand_total = self.already_done + self.total
        return 100.0 * overall / grand_total if grand_total else 100.0

    def advance(self, amount: int, message: str = ""):
        """Advance the counter by ``amount`` processed URLs."""
        self.done += amount
        if self.monitor:
            self.monitor.update_frontier_size(max(self.total - self.done, 0))
        suffix = f" - {message}" if message else ""
        self.logger.info(
            f"Progress: {self.done}/{self.total} this run "
            f"({self.percent:.1f}% overall){suffix}"
        )

    def finish(self):
        elapsed = time.time() - self.start_time
        self.logger.info(f"Progress finished: {self.done}/{self.total} in {elapsed:.1f}s")


def create_monitor(enable_prometheus: bool = False, prometheus_port: int = 8000) -> CrawlerMonitor:
    """Create a monitor and start the Prometheus exporter if enabled."""
    metrics_collector = MetricsCollector(enable_prometheus, prometheus_port)
    metrics_collector.start_prometheus_server()
    return CrawlerMonitor(metrics_collector)
