"""
Prometheus metrics for aggregator clients.

Each Monitor owns its own CollectorRegistry; the HTTP endpoint is optional
and only started on request.
"""
import errno
import logging
import threading
import time
from socketserver import ThreadingMixIn
from wsgiref.simple_server import WSGIServer, make_server

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client.exposition import make_wsgi_app

logger = logging.getLogger(__name__)


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """Serves each metrics scrape on its own thread."""
    allow_reuse_address = True
    daemon_threads = True


class Monitor:
    def __init__(self, host="127.0.0.1", port=9090, start_server=False, bind_attempts=5, bind_delay=2.0):
        self.host = host
        self.port = port
        self.bind_attempts = bind_attempts
        self.bind_delay = bind_delay
        self.server = None
        self.thread = None

        # Isolated registry so several clients can live in one process
        self.registry = CollectorRegistry()

        self.operation_counter = Counter(
            'aggregator_operations_total', 'Client operations by outcome',
            ['operation', 'status'], registry=self.registry)
        self.operation_latency = Histogram(
            'aggregator_operation_latency_seconds', 'Submit-to-confirmation latency',
            ['operation'], registry=self.registry)
        self.total_deposits = Gauge(
            'aggregator_total_deposits', 'GlobalState.total_deposits in base units', registry=self.registry)
        self.total_yield_earned = Gauge(
            'aggregator_total_yield_earned', 'GlobalState.total_yield_earned in base units', registry=self.registry)
        self.pending_cross_chain = Gauge(
            'aggregator_pending_cross_chain_amount', 'Amount earmarked by open bridge requests', registry=self.registry)
        self.cross_chain_deposits = Gauge(
            'aggregator_total_cross_chain_deposits', 'Amount delivered by completed bridge requests',
            registry=self.registry)
        self.bridge_requests = Counter(
            'aggregator_bridge_requests_total', 'Bridge request status changes',
            ['status'], registry=self.registry)

        if start_server:
            self.start_server()

    @classmethod
    def from_config(cls, monitoring_config):
        """Monitor for a MonitoringConfig, or None when monitoring is disabled."""
        if not monitoring_config.enabled:
            return None
        return cls(monitoring_config.host, monitoring_config.port, start_server=True)

    def start_server(self):
        """Expose the registry over HTTP on a daemon thread; port 0 picks a free port."""
        app = make_wsgi_app(self.registry)
        for attempt in range(1, self.bind_attempts + 1):
            try:
                self.server = make_server(self.host, self.port, app, ThreadingWSGIServer)
                break
            except OSError as e:
                if e.errno != errno.EADDRINUSE or attempt == self.bind_attempts:
                    logger.error(f"Could not bind metrics endpoint to {self.host}:{self.port}: {e}")
                    raise
                logger.warning(f"Metrics port {self.port} busy, attempt {attempt}/{self.bind_attempts}")
                time.sleep(self.bind_delay)

        self.thread = threading.Thread(target=self.server.serve_forever, name="metrics", daemon=True)
        self.thread.start()
        logger.info(f"Metrics available at http://{self.host}:{self.server.server_port}/metrics")

    def stop_server(self):
        if self.server is None:
            return
        self.server.shutdown()
        self.server.server_close()
        self.thread.join(timeout=5)
        self.server = None
        self.thread = None
        logger.info("Metrics endpoint stopped")

    def update(self, global_state):
        """Mirror the program-wide totals."""
        self.total_deposits.set(global_state.total_deposits)
        self.total_yield_earned.set(global_state.total_yield_earned)
        self.pending_cross_chain.set(global_state.pending_cross_chain_amount)
        self.cross_chain_deposits.set(global_state.total_cross_chain_deposits)

    def record_operation(self, operation: str, status: str, latency: float):
        self.operation_counter.labels(operation=operation, status=status).inc()
        self.operation_latency.labels(operation=operation).observe(latency)

    def record_bridge_status(self, status):
        self.bridge_requests.labels(status=getattr(status, 'name', str(status))).inc()

    def sample(self, name: str, labels: dict = None) -> float:
        """Current value of a metric sample, 0.0 if it has not been recorded."""
        value = self.registry.get_sample_value(name, labels or {})
        return value if value is not None else 0.0
