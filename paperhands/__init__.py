"""Disbursement API for the Paperhands BTC-collateralised lending platform."""

__version__ = "1.0.0"
