"""PyramidTrend - Pyramiding Trend-Following Position Engine

Layers:
1. Analysis - Trend bias, pullback and momentum signals
2. Sizing - Risk-percent volume with margin cap
3. Pyramid admission - Max steps, break-even gate, step distance
4. Protection - Break-even, coordinated trailing, partial TP, step lock
5. Reversal - Forced closure when the trend turns
6. Runtime - Per-instrument event loop with startup reconciliation
"""

__version__ = "1.0.0"
__author__ = "PyramidTrend Team"
