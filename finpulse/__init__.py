"""
finpulse: recurring-bill detection, anomaly alerts and cash-flow forecasting.
"""

__version__ = "1.0.0"
