"""
Tradebook: reconstructs round-trip trades from raw broker order history.
"""
__version__ = "0.4.0"
