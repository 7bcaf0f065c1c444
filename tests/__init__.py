"""PyramidTrend Test Suite
=========================

Unit tests for all modules:
- test_signal_evaluator: Trend bias, pullback and continuation signals
- test_pyramid_group: Admission rules and position ledger tracking
- test_risk_sizer: Volume sizing and stop/target placement
- test_protection_engine: Break-even, trailing, partial TP and lock
- test_reversal_guard / test_reconciler: Forced closure and restore
- test_entry_orchestrator / test_strategy_runtime: End-to-end flow
- test_indicators / test_config / test_mt5_connector: Data, settings and broker adapter

Usage:
    pytest tests/ -v
    pytest tests/test_protection_engine.py -v

Author: PyramidTrend Team
"""
