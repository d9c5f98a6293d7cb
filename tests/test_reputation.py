"""Tests for server/reputation.py -- caller trust gate and protocol stats."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import unittest
from server.reputation import ProtocolStats, can_auto_refund


class TestAutoRefundGate(unittest.TestCase):
    def test_default_threshold(self):
        self.assertTrue(can_auto_refund(100))
        self.assertTrue(can_auto_refund(50))
        self.assertFalse(can_auto_refund(49))
        self.assertFalse(can_auto_refund(0))

    def test_custom_threshold(self):
        self.assertTrue(can_auto_refund(10, threshold=10))
        self.assertFalse(can_auto_refund(150, threshold=151))


class TestProtocolStats(unittest.TestCase):
    def test_from_protocol_row(self):
        s = ProtocolStats.from_protocol({
            "id": "p1", "invocation_count": 10, "success_count": 8,
            "failure_count": 2, "refund_count": 1,
        })
        self.assertEqual(s.invocation_count, 10)
        self.assertEqual(s.completed(), 10)

    def test_missing_counters_default_to_zero(self):
        s = ProtocolStats.from_protocol({})
        self.assertEqual(s.completed(), 0)

    def test_no_history(self):
        s = ProtocolStats()
        self.assertIsNone(s.success_rate())
        self.assertIsNone(s.refund_rate())
        d = s.to_dict()
        self.assertEqual(d["successRate"], "N/A")
        self.assertEqual(d["refundRate"], "N/A")

    def test_success_rate(self):
        s = ProtocolStats(invocation_count=4, success_count=3, failure_count=1)
        self.assertAlmostEqual(s.success_rate(), 0.75)
        self.assertEqual(s.to_dict()["successRate"], "75.0%")

    def test_refund_rate_over_successes(self):
        s = ProtocolStats(invocation_count=3, success_count=3, refund_count=1)
        self.assertEqual(s.to_dict()["refundRate"], "33.3%")

    def test_all_failures(self):
        s = ProtocolStats(invocation_count=2, failure_count=2)
        self.assertEqual(s.success_rate(), 0.0)
        self.assertEqual(s.to_dict()["successRate"], "0.0%")
        self.assertEqual(s.to_dict()["refundRate"], "N/A")

    def test_to_dict_keys(self):
        d = ProtocolStats(1, 1, 0, 0).to_dict()
        self.assertEqual(set(d), {
            "invocationCount", "successCount", "failureCount", "refundCount",
            "successRate", "refundRate",
        })


if __name__ == "__main__":
    unittest.main()
