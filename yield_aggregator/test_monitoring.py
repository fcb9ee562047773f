"""
Tests for the Prometheus monitor.
"""
import unittest
import urllib.request

from yield_aggregator.bridge import BridgeStatus
from yield_aggregator.config import MonitoringConfig
from yield_aggregator.crypto import Keypair
from yield_aggregator.monitoring import Monitor
from yield_aggregator.state import GlobalState


class TestMonitor(unittest.TestCase):
    def setUp(self):
        self.monitor = Monitor()

    def test_registries_are_isolated(self):
        other = Monitor()
        self.monitor.record_operation("deposit", "confirmed", 0.1)
        self.assertEqual(other.sample('aggregator_operations_total', {'operation': 'deposit', 'status': 'confirmed'}), 0.0)

    def test_record_operation(self):
        self.monitor.record_operation("withdraw", "failed", 0.2)
        self.monitor.record_operation("withdraw", "failed", 0.3)
        self.assertEqual(
            self.monitor.sample('aggregator_operations_total', {'operation': 'withdraw', 'status': 'failed'}), 2.0)
        self.assertEqual(
            self.monitor.sample('aggregator_operation_latency_seconds_count', {'operation': 'withdraw'}), 2.0)

    def test_update_totals(self):
        state = GlobalState(
            authority=Keypair.from_seed(b'\x61' * 32).pubkey,
            total_deposits=10,
            total_yield_earned=2,
            pending_cross_chain_amount=3,
            total_cross_chain_deposits=4,
            is_initialized=True,
        )
        self.monitor.update(state)
        self.assertEqual(self.monitor.sample('aggregator_total_deposits'), 10)
        self.assertEqual(self.monitor.sample('aggregator_total_yield_earned'), 2)
        self.assertEqual(self.monitor.sample('aggregator_pending_cross_chain_amount'), 3)
        self.assertEqual(self.monitor.sample('aggregator_total_cross_chain_deposits'), 4)

    def test_bridge_status(self):
        self.monitor.record_bridge_status(BridgeStatus.FAILED)
        self.assertEqual(self.monitor.sample('aggregator_bridge_requests_total', {'status': 'FAILED'}), 1)

    def test_from_config(self):
        self.assertIsNone(Monitor.from_config(MonitoringConfig(enabled=False)))
        monitor = Monitor.from_config(MonitoringConfig(enabled=True, port=0))
        try:
            self.assertIsNotNone(monitor.server)
            self.assertNotEqual(monitor.server.server_port, 0)
        finally:
            monitor.stop_server()
        self.assertIsNone(monitor.server)

    def test_http_exposition(self):
        monitor = Monitor(port=0, start_server=True)
        try:
            port = monitor.server.server_port
            monitor.record_operation("deposit", "confirmed", 0.01)
            body = urllib.request.urlopen(f"http://127.0.0.1:{port}/metrics", timeout=5).read().decode()
            self.assertIn('aggregator_operations_total{operation="deposit",status="confirmed"} 1.0', body)
        finally:
            monitor.stop_server()


if __name__ == '__main__':
    unittest.main()
